from fastapi import APIRouter, FastAPI, Depends, HTTPException, Request
import uuid
from contextlib import asynccontextmanager
import logging

import uvicorn

from generation_queue.backend_client import ComfyUIClient
from generation_queue.config import Settings
from generation_queue.credits import CreditLedger
from generation_queue.database import create_db_engine, create_session_factory, init_db
from generation_queue.exceptions import CreditsRejectedError, RequestNotFoundError
from generation_queue.logging_config import build_logging_config
from generation_queue.processor import QueueProcessor
from generation_queue.schemas import (
    CreditsConfigUpdate,
    CreditsResponse,
    DailyGrantResponse,
    EnqueueRequest,
    EnqueueResponse,
    StatusResponse,
)
from generation_queue.service import GenerationService
from generation_queue.store import GenerationRequestStore
from generation_queue.tracing import setup_tracing

from prometheus_fastapi_instrumentator import Instrumentator


logger = logging.getLogger(__name__)

REJECTION_STATUS_CODES = {
    CreditsRejectedError.INSUFFICIENT_CREDITS: 402,
    CreditsRejectedError.USER_NOT_FOUND: 404,
}


class Components:
    """Everything the HTTP layer needs, wired once per application."""

    def __init__(self, settings, engine, backend=None):
        self.settings = settings
        self.engine = engine
        self.session_factory = create_session_factory(engine)
        self.store = GenerationRequestStore(self.session_factory)
        self.ledger = CreditLedger(self.session_factory, enabled=settings.credits_enabled)
        self.backend = backend or ComfyUIClient(
            settings.comfyui_api_url,
            timeout=settings.comfyui_timeout_seconds,
        )
        self.processor = QueueProcessor(
            self.store,
            self.ledger,
            self.backend,
            interval=settings.poll_interval_seconds,
        )
        self.service = GenerationService(
            self.store,
            self.ledger,
            self.processor,
            seconds_per_request=settings.estimated_seconds_per_request,
        )


@asynccontextmanager
async def lifespan(app: FastAPI):
    components = app.state.components
    init_db(components.engine)

    recovered = components.processor.recover_interrupted()
    if recovered:
        logger.warning("Recovered interrupted requests", extra={"count": recovered})
    if components.store.claim_oldest_pending() is not None:
        components.processor.start()

    yield

    components.processor.stop()
    if isinstance(components.backend, ComfyUIClient):
        components.backend.close()


def get_components(request: Request) -> Components:
    return request.app.state.components


def get_service(components: Components = Depends(get_components)) -> GenerationService:
    return components.service


def get_ledger(components: Components = Depends(get_components)) -> CreditLedger:
    return components.ledger


router = APIRouter()


# charge credits, save request to db as pending, return request id to user
@router.post("/generate", status_code=202, response_model=EnqueueResponse)
def generate_task(request: EnqueueRequest, service: GenerationService = Depends(get_service)):
    """
    Accepts a generation request, charges the user's free credits and queues it
    Returns a request_id for status polling
    """
    try:
        db_request = service.enqueue(request)
    except CreditsRejectedError as e:
        raise HTTPException(status_code=REJECTION_STATUS_CODES[e.reason], detail=e.reason)

    return EnqueueResponse(request_id=str(db_request.request_id), status=db_request.status)


# user send request_id to check status, if completed, return the image
@router.get("/status/{request_id}", response_model=StatusResponse, response_model_exclude_none=True)
def get_status(request_id: str, service: GenerationService = Depends(get_service)):
    logger.info(
        "Checking status for request",
        extra={"request_id": request_id}
    )

    try:
        request_uuid = uuid.UUID(request_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid request_id format")

    try:
        return service.status(request_uuid)
    except RequestNotFoundError:
        raise HTTPException(status_code=404, detail="request_id not found")


@router.get("/credits", response_model=CreditsResponse, response_model_exclude_none=True)
def get_credits(user_id: str | None = None, ledger: CreditLedger = Depends(get_ledger)):
    if not ledger.is_enabled():
        return CreditsResponse(enabled=False)

    config = ledger.get_config()
    if user_id is None:
        return CreditsResponse(enabled=True, config=config)

    credits_free = ledger.get_balance(user_id)
    if credits_free is None:
        raise HTTPException(status_code=404, detail="User not found")

    return CreditsResponse(enabled=True, config=config, credits_free=credits_free)


# Auth service calls this on login and registration
@router.post("/credits/{user_id}/daily-grant", response_model=DailyGrantResponse)
def grant_daily_credits(user_id: str, ledger: CreditLedger = Depends(get_ledger)):
    credits_free = ledger.grant_daily_if_needed(user_id)
    if credits_free is None and ledger.is_enabled():
        raise HTTPException(status_code=404, detail="User not found")

    return DailyGrantResponse(user_id=user_id, credits_free=credits_free)


@router.put("/credits/config")
def update_credits_config(update: CreditsConfigUpdate, ledger: CreditLedger = Depends(get_ledger)):
    if not ledger.is_admin(update.user_id):
        raise HTTPException(status_code=403, detail="Unauthorized: Admin access required")

    ledger.update_config(update)
    logger.info(
        "Credits configuration changed by admin",
        extra={"user_id": update.user_id},
    )
    return {"config": ledger.get_config().model_dump()}


@router.get("/health")
def health(components: Components = Depends(get_components)):
    return {"status": "ok", "queue_processor_running": components.processor.is_running()}


def create_app(settings=None, engine=None, backend=None):
    settings = settings or Settings.from_env()
    engine = engine or create_db_engine(settings.database_url, instrument=settings.tracing_enabled)

    app = FastAPI(
        title="Image Generation Queue",
        description="Accepts generation requests, charges free credits and processes them one at a time",
        version="1.0.0",
        lifespan = lifespan
    )
    app.state.components = Components(settings, engine, backend=backend)
    app.include_router(router)

    if settings.metrics_enabled:
        Instrumentator().instrument(app).expose(app)
    if settings.tracing_enabled:
        setup_tracing(app)

    return app


def main():
    settings = Settings.from_env()
    uvicorn.run(
        create_app(settings),
        host="0.0.0.0",
        port=8000,
        log_config=build_logging_config(settings.log_level),
    )


if __name__ == "__main__":
    main()
