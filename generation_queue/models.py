import uuid
from sqlalchemy import Column, String, Text, Integer, Boolean, DateTime, Index, Uuid
from .database import Base, utcnow


class RequestStatus:
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    TERMINAL = (COMPLETED, FAILED)


class GenerationRequest(Base):
    __tablename__ = "generation_requests"
    request_id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id = Column(String(64), index=True)
    params = Column(Text, nullable=False)
    credits_charged = Column(Integer, nullable=False, default=0)
    status = Column(String(20), nullable=False, default=RequestStatus.PENDING)
    result = Column(Text)
    error = Column(Text)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_generation_requests_status_created", "status", "created_at", "request_id"),
    )


class User(Base):
    # Only the credit columns are managed here; the rest of the user record
    # belongs to the gallery's account service.
    __tablename__ = "users"
    id = Column(String(64), primary_key=True, default=lambda: str(uuid.uuid4()))
    username = Column(String(255), unique=True)
    is_admin = Column(Boolean, nullable=False, default=False)
    credits_free = Column(Integer, nullable=False, default=0)
    credits_free_last_grant_at = Column(DateTime)


class GenerationConfig(Base):
    __tablename__ = "generation_config"
    id = Column(Integer, primary_key=True, autoincrement=True)
    key = Column(String(255), unique=True, nullable=False)
    value = Column(Text, nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
