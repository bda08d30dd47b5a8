import uuid

import pytest

from generation_queue.credits import CreditLedger
from generation_queue.exceptions import CreditsRejectedError, RequestNotFoundError
from generation_queue.models import RequestStatus
from generation_queue.schemas import EnqueueRequest, GenerationParams
from generation_queue.service import GenerationService


def _request(**overrides):
    values = {"prompt_tags": "1girl, solo", "model_name": "animagine-xl-3.1", "seed": 9, "user_id": "user-1"}
    values.update(overrides)
    return EnqueueRequest(**values)


#-------------TEST FOR enqueue -------------#
def test_enqueue_charges_and_starts_processor(service, store, ledger, make_user, mock_processor):
    make_user(credits_free=5)

    db_request = service.enqueue(_request())

    stored = store.get(db_request.request_id)
    params = GenerationParams.model_validate_json(stored.params)
    assert stored.status == RequestStatus.PENDING
    assert stored.credits_charged == 1
    assert params.credit_cost == 1
    assert params.is_unlimited is False
    assert params.user_id == "user-1"
    assert ledger.get_balance("user-1") == 4
    mock_processor.start.assert_called_once()
    mock_processor.notify.assert_called_once()


def test_enqueue_insufficient_credits_creates_nothing(service, store, ledger, make_user, mock_processor):
    make_user(credits_free=0)

    with pytest.raises(CreditsRejectedError) as exc_info:
        service.enqueue(_request())

    assert exc_info.value.reason == CreditsRejectedError.INSUFFICIENT_CREDITS
    assert store.claim_oldest_pending() is None
    assert ledger.get_balance("user-1") == 0
    mock_processor.start.assert_not_called()


def test_enqueue_unknown_user(service, store):
    with pytest.raises(CreditsRejectedError) as exc_info:
        service.enqueue(_request(user_id="ghost"))

    assert exc_info.value.reason == CreditsRejectedError.USER_NOT_FOUND
    assert store.claim_oldest_pending() is None


def test_enqueue_without_user_when_credits_required(service):
    with pytest.raises(CreditsRejectedError) as exc_info:
        service.enqueue(_request(user_id=None))

    assert exc_info.value.reason == CreditsRejectedError.USER_NOT_FOUND


def test_enqueue_admin_is_not_charged(service, store, ledger, make_user):
    make_user(credits_free=0, is_admin=True)

    db_request = service.enqueue(_request())

    params = GenerationParams.model_validate_json(store.get(db_request.request_id).params)
    assert params.is_unlimited is True
    assert params.credit_cost == 0
    assert db_request.credits_charged == 0
    assert ledger.get_balance("user-1") == 0


def test_enqueue_without_consumption(service, ledger, make_user):
    make_user(credits_free=2)

    db_request = service.enqueue(_request(consume_credits=False))

    assert db_request.credits_charged == 0
    assert ledger.get_balance("user-1") == 2


def test_enqueue_with_credits_disabled(store, session_factory, mock_processor):
    service = GenerationService(store, CreditLedger(session_factory, enabled=False), mock_processor)

    db_request = service.enqueue(_request(user_id=None))

    assert store.get(db_request.request_id).status == RequestStatus.PENDING


def test_enqueue_picks_seed_when_missing(service, store, make_user):
    make_user(credits_free=5)

    db_request = service.enqueue(_request(seed=None))

    params = GenerationParams.model_validate_json(store.get(db_request.request_id).params)
    assert isinstance(params.seed, int)


def test_enqueue_rolls_back_debit_when_insert_fails(service, store, ledger, make_user, monkeypatch):
    make_user(credits_free=5)

    def broken_create(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(store, "create", broken_create)

    with pytest.raises(RuntimeError):
        service.enqueue(_request())

    assert ledger.get_balance("user-1") == 5


#-------------TEST FOR status -------------#
def test_status_pending_reports_position(service, make_user):
    make_user(credits_free=5)
    service.enqueue(_request())
    second = service.enqueue(_request())

    status = service.status(second.request_id)

    assert status.status == RequestStatus.PENDING
    assert status.position == 2
    assert status.estimated_seconds == 20.0


def test_status_processing_has_no_position(service, store, make_user):
    make_user(credits_free=5)
    db_request = service.enqueue(_request())
    store.mark_processing(db_request.request_id)

    status = service.status(db_request.request_id)

    assert status.status == RequestStatus.PROCESSING
    assert status.position is None


def test_status_completed_and_failed(service, store, make_user):
    make_user(credits_free=5)
    done = service.enqueue(_request())
    broken = service.enqueue(_request())
    store.mark_processing(done.request_id)
    store.mark_completed(done.request_id, '{"image": "aW1n", "content_type": "image/png"}')
    store.mark_processing(broken.request_id)
    store.mark_failed(broken.request_id, "ComfyUI API error: 502 - bad gateway")

    completed = service.status(done.request_id)
    failed = service.status(broken.request_id)

    assert completed.result.image == "aW1n"
    assert completed.error is None
    assert failed.error == "ComfyUI API error: 502 - bad gateway"
    assert failed.result is None


def test_status_not_found(service):
    with pytest.raises(RequestNotFoundError):
        service.status(uuid.uuid4())
