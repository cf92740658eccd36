import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    text,
)
from sqlalchemy.orm import relationship

from app.db import Base


class ReturnStatus(str, enum.Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    ESCALATED = "escalated"
    SHIPPING = "shipping"
    RECEIVED = "received"
    REFUNDING = "refunding"
    REFUNDED = "refunded"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RequestType(str, enum.Enum):
    RETURN = "return"
    REFUND_ONLY = "refund_only"


# statuses that free the sub-order for a new request
INACTIVE_STATUSES = (
    ReturnStatus.REJECTED.value,
    ReturnStatus.CANCELLED.value,
    ReturnStatus.COMPLETED.value,
)
_ACTIVE_WHERE = text(
    "status NOT IN (%s)" % ", ".join(f"'{s}'" for s in INACTIVE_STATUSES)
)


class ReturnRequest(Base):
    __tablename__ = "return_requests"
    __table_args__ = (
        # at most one active request per sub-order
        Index(
            "uq_return_requests_active_sub_order",
            "sub_order_id",
            unique=True,
            sqlite_where=_ACTIVE_WHERE,
            postgresql_where=_ACTIVE_WHERE,
        ),
    )

    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    request_number = Column(String(20), unique=True, nullable=False, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    sub_order_id = Column(
        String(36), ForeignKey("sub_orders.id"), nullable=False, index=True
    )
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)

    reason = Column(String(50), nullable=False)
    reason_detail = Column(Text, nullable=True)
    request_type = Column(String(20), nullable=False, default=RequestType.RETURN.value)
    status = Column(
        String(30), nullable=False, default=ReturnStatus.PENDING.value, index=True
    )

    refund_amount = Column(Numeric(15, 2), nullable=False)
    refund_shipping = Column(Boolean, nullable=False, default=False)
    evidence_urls = Column(JSON, nullable=False, default=list)

    shop_response = Column(Text, nullable=True)
    shop_responded_at = Column(DateTime(timezone=True), nullable=True)
    shop_responded_by = Column(String(36), nullable=True)

    admin_note = Column(Text, nullable=True)
    escalated_at = Column(DateTime(timezone=True), nullable=True)
    escalation_reason = Column(Text, nullable=True)
    escalation_evidence_urls = Column(JSON, nullable=False, default=list)
    resolved_by = Column(String(36), nullable=True)
    resolved_at = Column(DateTime(timezone=True), nullable=True)

    return_tracking_number = Column(String(50), nullable=True)
    return_shipper = Column(String(100), nullable=True)
    shipped_at = Column(DateTime(timezone=True), nullable=True)
    received_at = Column(DateTime(timezone=True), nullable=True)

    refund_method = Column(String(20), nullable=True)  # original, wallet, bank
    refund_transaction_id = Column(String(100), nullable=True)
    refunded_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )
    expires_at = Column(DateTime(timezone=True), nullable=True)

    # optimistic lock; a stale UPDATE raises StaleDataError
    version = Column(Integer, nullable=False)
    __mapper_args__ = {"version_id_col": version}

    items = relationship(
        "ReturnRequestItem",
        back_populates="return_request",
        cascade="all, delete-orphan",
        order_by="ReturnRequestItem.created_at",
    )
    history = relationship(
        "ReturnRequestHistory",
        back_populates="return_request",
        order_by="ReturnRequestHistory.id",
    )
    shop = relationship("Shop")
    customer = relationship("User")
    sub_order = relationship("SubOrder")
