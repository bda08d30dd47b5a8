import json
import logging
import random

from generation_queue.database import session_scope
from generation_queue.exceptions import CreditsRejectedError
from generation_queue.metrics import REQUESTS_ENQUEUED, REQUESTS_REJECTED
from generation_queue.models import RequestStatus
from generation_queue.schemas import GenerationParams, GenerationResult, StatusResponse

logger = logging.getLogger(__name__)

DEFAULT_SECONDS_PER_REQUEST = 10.0
MAX_SEED = 2**32 - 1


class GenerationService:
    """Intake and status surface of the generation queue."""

    def __init__(self, store, ledger, processor, seconds_per_request=DEFAULT_SECONDS_PER_REQUEST):
        self.store = store
        self.ledger = ledger
        self.processor = processor
        self.seconds_per_request = seconds_per_request

    def enqueue(self, request):
        """Charge the caller (when applicable) and queue the request.

        The debit and the insert share one transaction, so a rejected charge
        never leaves a pending request behind and a failed insert never keeps
        the debit.

        Raises:
            CreditsRejectedError: the user is unknown or cannot afford the cost.
        """
        seed = request.seed if request.seed is not None else random.randint(0, MAX_SEED)

        with session_scope(self.store.session_factory) as db:
            charge, is_unlimited = self._charge(request, db)
            params = GenerationParams(
                prompt_tags=request.prompt_tags,
                model_name=request.model_name,
                lora_names=request.lora_names,
                lora_weights=request.lora_weights,
                aspect=request.aspect,
                seed=seed,
                cfg=request.cfg,
                user_id=request.user_id,
                credit_cost=charge,
                is_unlimited=is_unlimited,
            )
            db_request = self.store.create(
                request.user_id, params, credits_charged=charge, session=db
            )

        REQUESTS_ENQUEUED.inc()
        self.processor.start()
        self.processor.notify()
        return db_request

    def _charge(self, request, db):
        if not (self.ledger.is_enabled() and request.consume_credits):
            return 0, False

        if request.user_id is None:
            self._reject(CreditsRejectedError.USER_NOT_FOUND, request.user_id)

        if self.ledger.is_admin(request.user_id, session=db):
            return 0, True

        cost = self.ledger.get_config(session=db).credit_cost
        outcome = self.ledger.try_consume(request.user_id, cost, session=db)
        if not outcome.ok:
            self._reject(outcome.reason, request.user_id)
        return cost, False

    def _reject(self, reason, user_id):
        REQUESTS_REJECTED.labels(reason=reason).inc()
        logger.info("Rejected generation request", extra={"user_id": user_id, "reason": reason})
        raise CreditsRejectedError(reason)

    def status(self, request_id):
        db_request = self.store.get(request_id)
        response = StatusResponse(request_id=str(db_request.request_id), status=db_request.status)

        if db_request.status == RequestStatus.COMPLETED:
            response.result = GenerationResult(**json.loads(db_request.result))
        elif db_request.status == RequestStatus.FAILED:
            response.error = db_request.error
        elif db_request.status == RequestStatus.PENDING:
            # Rough estimate from a fixed per-request duration, not measured throughput.
            position = 1 + self.store.count_pending_before(
                db_request.created_at, db_request.request_id
            )
            response.position = position
            response.estimated_seconds = position * self.seconds_per_request

        return response
