import logging
import uuid

from sqlalchemy import and_, func, or_, select, update

from generation_queue.database import session_scope, utcnow
from generation_queue.exceptions import InvalidTransitionError, RequestNotFoundError
from generation_queue.models import GenerationRequest, RequestStatus

logger = logging.getLogger(__name__)


def _as_uuid(request_id):
    if isinstance(request_id, uuid.UUID):
        return request_id
    return uuid.UUID(str(request_id))


class GenerationRequestStore:
    """Durable record of generation requests and their lifecycle.

    Each ``mark_*`` method is one conditional UPDATE guarded on the expected
    prior status, so a request can only ever move forward along
    pending -> processing -> completed/failed.
    """

    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    def create(self, user_id, params, credits_charged=0, session=None):
        now = self.clock()
        db_request = GenerationRequest(
            request_id=uuid.uuid4(),
            user_id=user_id,
            params=params.model_dump_json(),
            credits_charged=credits_charged,
            status=RequestStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

        with session_scope(self.session_factory, session) as db:
            db.add(db_request)
            db.flush()
            db.expunge(db_request)

        logger.info(
            "Saved request to database",
            extra={"request_id": str(db_request.request_id), "user_id": user_id},
        )
        return db_request

    def get(self, request_id, session=None):
        request_uuid = _as_uuid(request_id)
        with session_scope(self.session_factory, session) as db:
            db_request = db.execute(
                select(GenerationRequest).where(GenerationRequest.request_id == request_uuid)
            ).scalar_one_or_none()
            if db_request is None:
                raise RequestNotFoundError(request_id)
            if session is None:
                db.expunge(db_request)
            return db_request

    def claim_oldest_pending(self):
        with session_scope(self.session_factory) as db:
            db_request = db.execute(
                select(GenerationRequest)
                .where(GenerationRequest.status == RequestStatus.PENDING)
                .order_by(GenerationRequest.created_at.asc(), GenerationRequest.request_id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if db_request is not None:
                db.expunge(db_request)
            return db_request

    def count_pending_before(self, created_at, request_id=None):
        earlier = GenerationRequest.created_at < created_at
        if request_id is not None:
            earlier = or_(
                earlier,
                and_(
                    GenerationRequest.created_at == created_at,
                    GenerationRequest.request_id < _as_uuid(request_id),
                ),
            )

        with session_scope(self.session_factory) as db:
            return db.execute(
                select(func.count())
                .select_from(GenerationRequest)
                .where(GenerationRequest.status == RequestStatus.PENDING, earlier)
            ).scalar_one()

    def list_in_status(self, status):
        with session_scope(self.session_factory) as db:
            rows = db.execute(
                select(GenerationRequest)
                .where(GenerationRequest.status == status)
                .order_by(GenerationRequest.created_at.asc(), GenerationRequest.request_id.asc())
            ).scalars().all()
            for row in rows:
                db.expunge(row)
            return rows

    def mark_processing(self, request_id, session=None):
        self._transition(request_id, RequestStatus.PENDING, RequestStatus.PROCESSING, {}, session)

    def mark_completed(self, request_id, result, session=None):
        self._transition(
            request_id, RequestStatus.PROCESSING, RequestStatus.COMPLETED, {"result": result}, session
        )

    def mark_failed(self, request_id, error, session=None):
        self._transition(
            request_id, RequestStatus.PROCESSING, RequestStatus.FAILED, {"error": error}, session
        )

    def _transition(self, request_id, expected, target, values, session):
        request_uuid = _as_uuid(request_id)
        with session_scope(self.session_factory, session) as db:
            result = db.execute(
                update(GenerationRequest)
                .where(
                    GenerationRequest.request_id == request_uuid,
                    GenerationRequest.status == expected,
                )
                .values(status=target, updated_at=self.clock(), **values)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                exists = db.execute(
                    select(GenerationRequest.request_id).where(
                        GenerationRequest.request_id == request_uuid
                    )
                ).first()
                if exists is None:
                    raise RequestNotFoundError(request_id)
                raise InvalidTransitionError(request_id, expected, target)

        logger.info(
            "Updated status for request",
            extra={"request_id": str(request_uuid), "status": target},
        )
