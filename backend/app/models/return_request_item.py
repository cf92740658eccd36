from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship

from app.db import Base


class ReturnRequestItem(Base):
    __tablename__ = "return_request_items"
    id = Column(String(36), primary_key=True, default=lambda: str(uuid4()))
    return_request_id = Column(
        String(36), ForeignKey("return_requests.id"), nullable=False, index=True
    )
    order_item_id = Column(String(36), ForeignKey("order_items.id"), nullable=False)
    product_id = Column(String(36), nullable=False)
    variant_id = Column(String(36), nullable=True)

    # copied from the order item so the record survives product edits
    product_name = Column(String(255), nullable=True)
    product_image = Column(String(1024), nullable=True)
    variant_name = Column(String(255), nullable=True)

    quantity = Column(Integer, nullable=False, default=1)
    unit_price = Column(Numeric(15, 2), nullable=False)
    total_price = Column(Numeric(15, 2), nullable=False)

    item_reason = Column(Text, nullable=True)
    item_evidence_urls = Column(JSON, nullable=False, default=list)
    created_at = Column(
        DateTime(timezone=True), default=lambda: datetime.now(timezone.utc)
    )

    return_request = relationship("ReturnRequest", back_populates="items")
