"""Single background worker for the generation queue.

The worker polls the request store on a fixed interval and processes at most
one request per tick, strictly oldest first. Requests never go back to
``pending``: a failure is terminal and refunds the credits charged for it in
the same transaction that marks it failed.
"""
import base64
import json
import logging
import threading
from datetime import datetime, timezone

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.interval import IntervalTrigger
from opentelemetry import trace

from generation_queue.database import session_scope
from generation_queue.exceptions import InvalidTransitionError
from generation_queue.metrics import BACKEND_DURATION, CREDITS_REFUNDED, REQUESTS_FINISHED
from generation_queue.models import RequestStatus
from generation_queue.schemas import GenerationParams

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

DEFAULT_INTERVAL_SECONDS = 2.0
INTERRUPTED_ERROR = "Interrupted by service restart"
JOB_ID = "process_generation_queue"


class QueueProcessor:
    def __init__(self, store, ledger, backend, interval=DEFAULT_INTERVAL_SECONDS):
        self.store = store
        self.ledger = ledger
        self.backend = backend
        self.interval = interval
        self._scheduler = None
        self._job = None
        self._lifecycle_lock = threading.Lock()

    def is_running(self):
        return self._scheduler is not None and self._scheduler.running

    def start(self):
        with self._lifecycle_lock:
            if self._scheduler is not None:
                logger.debug("QueueProcessor is already running.")
                return False

            logger.info("Starting QueueProcessor...")
            # A shut down scheduler cannot be restarted, so every start gets a fresh one.
            scheduler = BackgroundScheduler(timezone=timezone.utc)
            self._job = scheduler.add_job(
                self.tick,
                trigger=IntervalTrigger(seconds=self.interval),
                id=JOB_ID,
                name="Process the oldest pending generation request",
                next_run_time=datetime.now(timezone.utc),
                max_instances=1,  # a tick never overlaps the previous one
                coalesce=True,
            )
            scheduler.start()
            self._scheduler = scheduler
            return True

    def stop(self, wait=True):
        with self._lifecycle_lock:
            if self._scheduler is None:
                return
            logger.info("Stopping QueueProcessor...")
            scheduler = self._scheduler
            self._scheduler = None
            self._job = None

        scheduler.shutdown(wait=wait)
        logger.info("QueueProcessor stopped.")

    def notify(self):
        """Wake the worker before its next scheduled tick."""
        with self._lifecycle_lock:
            if self._job is not None:
                self._job.modify(next_run_time=datetime.now(timezone.utc))

    def tick(self):
        try:
            return self.process_next()
        except Exception:
            # Keep the scheduled job alive for the next tick.
            logger.error("Queue processing error", exc_info=True)
            return None

    def process_next(self):
        db_request = self.store.claim_oldest_pending()
        if db_request is None:
            return None

        request_id = str(db_request.request_id)
        try:
            self.store.mark_processing(db_request.request_id)
        except InvalidTransitionError:
            logger.warning("Request is no longer pending, skipping", extra={"request_id": request_id})
            return None

        logger.info("Processing generation request", extra={"request_id": request_id})

        with tracer.start_as_current_span("process_generation_request") as span:
            span.set_attribute("generation.request_id", request_id)
            try:
                params = GenerationParams.model_validate_json(db_request.params)
                with BACKEND_DURATION.time():
                    image = self.backend.generate(params)
                result = json.dumps({
                    "image": base64.b64encode(image.data).decode("ascii"),
                    "content_type": image.content_type,
                })
            except Exception as e:
                span.record_exception(e)
                logger.error(
                    "Generation failed for request",
                    extra={"request_id": request_id},
                    exc_info=True,
                )
                self._fail(db_request, str(e) or "Unknown error")
                return request_id

            self.store.mark_completed(db_request.request_id, result)

        REQUESTS_FINISHED.labels(status=RequestStatus.COMPLETED).inc()
        logger.info("Generation request completed", extra={"request_id": request_id})
        return request_id

    def _fail(self, db_request, error):
        amount = db_request.credits_charged or 0
        with session_scope(self.store.session_factory) as db:
            self.store.mark_failed(db_request.request_id, error, session=db)
            self.ledger.refund(db_request.user_id, amount, session=db)

        REQUESTS_FINISHED.labels(status=RequestStatus.FAILED).inc()
        if amount > 0 and db_request.user_id is not None:
            CREDITS_REFUNDED.inc(amount)

    def recover_interrupted(self):
        """Fail requests left in ``processing`` by a previous process.

        Only valid while a single worker process owns the queue.
        """
        recovered = 0
        for db_request in self.store.list_in_status(RequestStatus.PROCESSING):
            try:
                self._fail(db_request, INTERRUPTED_ERROR)
            except InvalidTransitionError:
                continue
            recovered += 1
            logger.warning(
                "Marked interrupted request as failed",
                extra={"request_id": str(db_request.request_id)},
            )
        return recovered
