import enum
from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Enum, Integer, String

from app.db import Base


class OutboxStatus(enum.Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    FAILED = "FAILED"


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    id = Column(Integer, primary_key=True, autoincrement=True)
    topic = Column(String(64), nullable=False, index=True)
    payload = Column(JSON, nullable=False)
    status = Column(
        Enum(OutboxStatus), nullable=False, default=OutboxStatus.PENDING, index=True
    )
    attempts = Column(Integer, nullable=False, default=0)
    last_error = Column(String(1024), nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    delivered_at = Column(DateTime(timezone=True), nullable=True)
