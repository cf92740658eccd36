from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from app.models.order import OrderItem, SubOrder


class SubOrderRepository:
    """Read/mirror access to sub-orders and their items; the order module owns writes."""

    def __init__(self, db: Session):
        self.db = db

    def find_by_id(self, sub_order_id: str) -> Optional[SubOrder]:
        return (
            self.db.query(SubOrder)
            .options(joinedload(SubOrder.order))
            .filter(SubOrder.id == sub_order_id)
            .first()
        )

    def list_items(self, sub_order_id: str) -> List[OrderItem]:
        return (
            self.db.query(OrderItem)
            .filter(OrderItem.sub_order_id == sub_order_id)
            .order_by(OrderItem.id)
            .all()
        )

    def update_status(self, sub_order_id: str, status: str) -> None:
        """Set the mirrored status; flushed with the caller's unit of work."""
        so = self.db.get(SubOrder, sub_order_id)
        if so is not None:
            so.status = status
