import enum
from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import Column, DateTime, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from app.db import Base


class SubOrderStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    SHIPPING = "shipping"
    DELIVERED = "delivered"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    # mirrored from the return lifecycle
    RETURN_REQUESTED = "return_requested"
    RETURN_APPROVED = "return_approved"
    RETURNED = "returned"


class Order(Base):
    __tablename__ = "orders"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_number = Column(String(32), unique=True, nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("users.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    sub_orders = relationship(
        "SubOrder", back_populates="order", cascade="all, delete-orphan"
    )


class SubOrder(Base):
    """One shop's portion of a marketplace order."""

    __tablename__ = "sub_orders"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    shop_id = Column(String(36), ForeignKey("shops.id"), nullable=False, index=True)
    status = Column(String(32), nullable=False, default=SubOrderStatus.PENDING.value)
    subtotal = Column(Numeric(15, 2), nullable=False, default=0)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = Column(
        DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    order = relationship("Order", back_populates="sub_orders")
    items = relationship(
        "OrderItem", back_populates="sub_order", cascade="all, delete-orphan"
    )


class OrderItem(Base):
    __tablename__ = "order_items"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    sub_order_id = Column(
        String(36), ForeignKey("sub_orders.id"), nullable=False, index=True
    )
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=True)
    product_name = Column(String(255), nullable=True)
    product_image = Column(String(1024), nullable=True)
    variant_name = Column(String(255), nullable=True)
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(15, 2), nullable=False)
    total_price = Column(Numeric(15, 2), nullable=False)

    sub_order = relationship("SubOrder", back_populates="items")
