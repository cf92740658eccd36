from datetime import datetime
from typing import Iterable, List, Optional, Tuple

from sqlalchemy import func, or_
from sqlalchemy.orm import Query, Session, selectinload

from app.models.return_request import INACTIVE_STATUSES, ReturnRequest, ReturnStatus
from app.models.return_request_item import ReturnRequestItem


class ReturnRequestRepository:
    def __init__(self, db: Session):
        self.db = db

    def _base(self) -> Query:
        return self.db.query(ReturnRequest).options(
            selectinload(ReturnRequest.items),
            selectinload(ReturnRequest.shop),
            selectinload(ReturnRequest.customer),
        )

    def get(self, request_id: str, with_history: bool = False) -> Optional[ReturnRequest]:
        qry = self._base()
        if with_history:
            qry = qry.options(selectinload(ReturnRequest.history))
        return qry.filter(ReturnRequest.id == request_id).first()

    def find_active_for_sub_order(
        self, sub_order_id: str, exclude_id: Optional[str] = None
    ) -> Optional[ReturnRequest]:
        qry = self.db.query(ReturnRequest).filter(
            ReturnRequest.sub_order_id == sub_order_id,
            ReturnRequest.status.notin_(INACTIVE_STATUSES),
        )
        if exclude_id:
            qry = qry.filter(ReturnRequest.id != exclude_id)
        return qry.first()

    def next_request_number(self, now: datetime) -> str:
        """``RR`` + ``YYMMDD`` + 4-digit sequence for the day."""
        prefix = f"RR{now:%y%m%d}"
        # longest first, so sequence 10000 sorts above 9999
        last = (
            self.db.query(ReturnRequest.request_number)
            .filter(ReturnRequest.request_number.like(f"{prefix}%"))
            .order_by(
                func.length(ReturnRequest.request_number).desc(),
                ReturnRequest.request_number.desc(),
            )
            .limit(1)
            .scalar()
        )
        seq = int(last[len(prefix):]) + 1 if last else 1
        return f"{prefix}{seq:04d}"

    def request_number_exists(self, request_number: str) -> bool:
        return (
            self.db.query(ReturnRequest.id)
            .filter(ReturnRequest.request_number == request_number)
            .first()
            is not None
        )

    def create(self, rr: ReturnRequest, items: Iterable[ReturnRequestItem]) -> ReturnRequest:
        rr.items = list(items)
        self.db.add(rr)
        self.db.flush()
        return rr

    def paginate(self, criteria: list, page: int, limit: int) -> Tuple[List[ReturnRequest], int]:
        total = (
            self.db.query(func.count(ReturnRequest.id)).filter(*criteria).scalar() or 0
        )
        rows = (
            self._base()
            .filter(*criteria)
            .order_by(ReturnRequest.created_at.desc(), ReturnRequest.request_number.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            .all()
        )
        return rows, total

    def list_for_customer(
        self, customer_id: str, status: Optional[str], page: int, limit: int
    ):
        criteria = [ReturnRequest.customer_id == customer_id]
        if status:
            criteria.append(ReturnRequest.status == status)
        return self.paginate(criteria, page, limit)

    def list_for_shop(self, shop_id: str, status: Optional[str], page: int, limit: int):
        criteria = [ReturnRequest.shop_id == shop_id]
        if status:
            criteria.append(ReturnRequest.status == status)
        return self.paginate(criteria, page, limit)

    def list_admin(self, status: Optional[str], page: int, limit: int):
        """
        ``status="all"`` means every request an admin has touched: currently
        escalated, or resolved by an admin at some point.
        """
        if status == "all":
            criteria = [
                or_(
                    ReturnRequest.status == ReturnStatus.ESCALATED.value,
                    ReturnRequest.resolved_by.isnot(None),
                )
            ]
        else:
            criteria = [ReturnRequest.status == (status or ReturnStatus.ESCALATED.value)]
        return self.paginate(criteria, page, limit)

    def list_overdue(self, now: datetime) -> List[ReturnRequest]:
        return (
            self._base()
            .filter(
                ReturnRequest.status == ReturnStatus.PENDING.value,
                ReturnRequest.expires_at < now,
            )
            .order_by(ReturnRequest.expires_at)
            .all()
        )
