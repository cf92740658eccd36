import enum
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from app.db import Base


class ActorType(str, enum.Enum):
    CUSTOMER = "customer"
    SHOP = "shop"
    ADMIN = "admin"
    SYSTEM = "system"


class ReturnRequestHistory(Base):
    """Append-only ledger row, one per status transition (including creation)."""

    __tablename__ = "return_request_history"
    id = Column(Integer, primary_key=True, autoincrement=True)
    return_request_id = Column(
        String(36), ForeignKey("return_requests.id"), nullable=False, index=True
    )
    from_status = Column(String(30), nullable=True)
    to_status = Column(String(30), nullable=False)
    actor_type = Column(String(20), nullable=False)
    actor_id = Column(String(36), nullable=True)
    note = Column(Text, nullable=True)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    return_request = relationship("ReturnRequest", back_populates="history")
