import logging
from contextlib import contextmanager
from datetime import datetime, timezone

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.orm import sessionmaker
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor

logger = logging.getLogger(__name__)

Base = declarative_base()


def utcnow():
    # Timestamps are stored as naive UTC so SQLite and PostgreSQL compare alike.
    return datetime.now(timezone.utc).replace(tzinfo=None)


def create_db_engine(database_url, instrument=True):
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["check_same_thread"] = False

    engine = create_engine(database_url, connect_args=connect_args)

    if instrument:
        SQLAlchemyInstrumentor().instrument(
            engine=engine,
            enable_commenter=True,
            commenter_options={},
        )
        logger.info("SQLAlchemy engine is instrumented for tracing.")

    return engine


def create_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@contextmanager
def session_scope(session_factory, session=None):
    """Yield ``session`` as-is, or a fresh session committed on exit.

    A caller that passes its own session owns the transaction and commits it.
    """
    if session is not None:
        yield session
        return

    db = session_factory()
    try:
        yield db
        db.commit()
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


def init_db(engine):
    # Importing models registers their tables on Base.metadata.
    from generation_queue import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
