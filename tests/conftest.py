import pytest
from unittest.mock import MagicMock
from datetime import datetime, timedelta
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool
import os
import sys

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

os.environ.setdefault("DATABASE_URL", "sqlite://")

from generation_queue.api_gateway import create_app
from generation_queue.backend_client import ComfyUIClient, GeneratedImage
from generation_queue.config import Settings
from generation_queue.credits import CreditLedger
from generation_queue.database import create_session_factory, init_db
from generation_queue.models import User
from generation_queue.processor import QueueProcessor
from generation_queue.service import GenerationService
from generation_queue.store import GenerationRequestStore


class FakeClock:
    """Returns a strictly increasing timestamp on every call."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0), step=timedelta(seconds=1)):
        self.now = start
        self.step = step

    def __call__(self):
        value = self.now
        self.now += self.step
        return value


@pytest.fixture()
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def file_engine(tmp_path):
    # Separate connections per thread, for tests that really run concurrently.
    engine = create_engine(
        f"sqlite:///{tmp_path / 'queue.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture()
def make_user(session_factory):
    def _make_user(user_id="user-1", credits_free=5, is_admin=False, last_grant_at=None):
        with session_factory() as db:
            db.add(User(
                id=user_id,
                username=user_id,
                is_admin=is_admin,
                credits_free=credits_free,
                credits_free_last_grant_at=last_grant_at,
            ))
            db.commit()
        return user_id

    return _make_user


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def ledger(session_factory):
    return CreditLedger(session_factory, enabled=True)


@pytest.fixture()
def store(session_factory, clock):
    return GenerationRequestStore(session_factory, clock=clock)


@pytest.fixture()
def mock_backend():
    backend = MagicMock(spec=ComfyUIClient)
    backend.generate.return_value = GeneratedImage(data=b"png-bytes", content_type="image/png")
    return backend


@pytest.fixture()
def processor(store, ledger, mock_backend):
    return QueueProcessor(store, ledger, mock_backend, interval=0.01)


@pytest.fixture()
def mock_processor():
    processor = MagicMock(spec=QueueProcessor)
    processor.is_running.return_value = False
    return processor


@pytest.fixture()
def service(store, ledger, mock_processor):
    return GenerationService(store, ledger, mock_processor, seconds_per_request=10.0)


@pytest.fixture()
def sample_request():
    return {
        "prompt_tags": "1girl, solo, smiling, looking at viewer, outdoors, masterpiece",
        "model_name": "animagine-xl-3.1",
        "lora_names": ["add-detail-xl", "pastel-style"],
        "lora_weights": [0.8, 0.6],
        "aspect": 2,
        "seed": 50,
        "cfg": 6.5,
        "user_id": "user-1",
    }


@pytest.fixture()
def settings():
    return Settings(
        database_url="sqlite://",
        credits_enabled=True,
        poll_interval_seconds=0.01,
        estimated_seconds_per_request=10.0,
        tracing_enabled=False,
        metrics_enabled=False,
    )


@pytest.fixture()
def app(settings, engine, mock_backend, mock_processor):
    app = create_app(settings, engine=engine, backend=mock_backend)
    # Requests are processed explicitly in tests instead of by the worker thread.
    components = app.state.components
    components.processor = mock_processor
    components.service.processor = mock_processor
    return app


@pytest.fixture()
def client(app):
    test_client = TestClient(app)

    yield test_client

    app.dependency_overrides.clear()
