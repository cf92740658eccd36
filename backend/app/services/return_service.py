import math
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from types import MappingProxyType
from typing import Callable, Dict, Iterable, List, Optional
from uuid import uuid4

from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from app.config import Settings, settings as default_settings
from app.models.order import SubOrderStatus
from app.models.return_request import RequestType, ReturnRequest, ReturnStatus
from app.models.return_request_history import ActorType
from app.models.return_request_item import ReturnRequestItem
from app.repositories.return_request_repo import ReturnRequestRepository
from app.repositories.sub_order_repo import SubOrderRepository
from app.schemas.return_schema import (
    Pagination,
    ReturnRequestDetailOut,
    ReturnRequestOut,
    ensure_utc,
)
from app.services import reason_catalog
from app.services.errors import (
    ConcurrentUpdate,
    DuplicateReturnRequest,
    InvalidState,
    PersistenceError,
    ReturnNotFound,
    ReturnServiceException,
    ReturnValidationError,
    ReturnWindowExpired,
)
from app.services.history_logger import HistoryLogger
from app.services.outbox_service import OutboxService
from app.services.refund_calculator import RefundCalculator
from app.services.transition_authority import assert_transition
from app.utils.logging import get_logger
from app.utils.transactions import savepoint

log = get_logger("returns", "RETURNS")

# attempts at allocating a request number when a concurrent create takes it first
REQUEST_NUMBER_ATTEMPTS = 5

RETURNABLE_SUB_ORDER_STATUSES = frozenset(
    {SubOrderStatus.DELIVERED.value, SubOrderStatus.COMPLETED.value}
)

# coarse sub-order status written when a request enters a status
SUB_ORDER_MIRROR = MappingProxyType(
    {
        ReturnStatus.PENDING: SubOrderStatus.RETURN_REQUESTED,
        ReturnStatus.APPROVED: SubOrderStatus.RETURN_APPROVED,
        ReturnStatus.REJECTED: SubOrderStatus.COMPLETED,
        ReturnStatus.CANCELLED: SubOrderStatus.COMPLETED,
        ReturnStatus.REFUNDED: SubOrderStatus.RETURNED,
        ReturnStatus.COMPLETED: SubOrderStatus.RETURNED,
    }
)

ADMIN_DECISIONS = frozenset({ReturnStatus.APPROVED, ReturnStatus.REJECTED})


def _parse_status(value) -> ReturnStatus:
    try:
        return ReturnStatus(value)
    except ValueError:
        raise ReturnValidationError(f"Unknown return status: {value}")


def _text(data: Dict, *keys) -> Optional[str]:
    for k in keys:
        v = data.get(k)
        if isinstance(v, str) and v.strip():
            return v.strip()
    return None


class ReturnService:
    """
    Use-case layer of the return & refund lifecycle.

    Each public operation loads the request, asks the transition table whether
    the edge is legal for the acting party, applies the edge's side effects,
    mirrors the sub-order status, appends a history row and queues
    notifications, all in one transaction.
    """

    def __init__(
        self,
        db: Session,
        settings: Optional[Settings] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.db = db
        self.settings = settings or default_settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self.repo = ReturnRequestRepository(db)
        self.sub_orders = SubOrderRepository(db)
        self.calculator = RefundCalculator(self.settings.CURRENCY_MINOR_UNITS)
        self.outbox = OutboxService(db, self.settings, self._clock)
        self.history = HistoryLogger(db, self.outbox, self._clock)

    def _now(self) -> datetime:
        return self._clock()

    @contextmanager
    def _unit_of_work(self, what: str):
        try:
            yield
            self.db.commit()
        except ReturnServiceException:
            self.db.rollback()
            raise
        except StaleDataError as e:
            self.db.rollback()
            raise ConcurrentUpdate(
                f"{what}: return request was modified concurrently, reload and retry"
            ) from e
        except SQLAlchemyError as e:
            self.db.rollback()
            log.exception(f"{what}: storage failure")
            raise PersistenceError(f"{what}: storage failure") from e

    # ------------------------------------------------------------------ create

    def create_return_request(self, customer_id: str, data: Dict) -> Dict:
        """
        Open a return request against one delivered sub-order.

        data: {sub_order_id, reason, reason_detail?, request_type?,
               items?: [{order_item_id, quantity, reason?, evidence_urls?}],
               evidence_urls?, refund_shipping?}
        Omitting ``items`` returns the whole sub-order.
        """
        sub_order_id = data.get("sub_order_id")
        reason = _text(data, "reason")
        if not sub_order_id or not reason:
            raise ReturnValidationError("sub_order_id and reason are required")

        with self._unit_of_work("create_return_request"):
            so = self.sub_orders.find_by_id(sub_order_id)
            if not so or so.order is None or so.order.customer_id != customer_id:
                raise ReturnNotFound("Sub-order not found")
            if so.status not in RETURNABLE_SUB_ORDER_STATUSES:
                raise InvalidState(
                    f"Sub-order status '{so.status}' is not eligible for return"
                )

            now = self._now()
            window = timedelta(days=self.settings.RETURN_WINDOW_DAYS)
            if so.delivered_at is not None and now - ensure_utc(so.delivered_at) > window:
                raise ReturnWindowExpired(
                    f"Return window of {self.settings.RETURN_WINDOW_DAYS} days has expired"
                )

            evidence = list(data.get("evidence_urls") or [])
            if reason_catalog.requires_evidence(reason) and not evidence:
                raise ReturnValidationError(
                    f"Evidence is required for reason '{reason}'"
                )

            request_type = data.get("request_type") or RequestType.RETURN.value
            if request_type not in {t.value for t in RequestType}:
                raise ReturnValidationError(f"Unknown request type: {request_type}")

            if self.repo.find_active_for_sub_order(so.id):
                raise DuplicateReturnRequest(
                    "An active return request already exists for this sub-order"
                )

            quote = self.calculator.quote(
                self.sub_orders.list_items(so.id), data.get("items")
            )
            rr = ReturnRequest(
                order_id=so.order_id,
                sub_order_id=so.id,
                customer_id=customer_id,
                shop_id=so.shop_id,
                reason=reason,
                reason_detail=data.get("reason_detail"),
                request_type=request_type,
                status=ReturnStatus.PENDING.value,
                refund_amount=quote.amount,
                refund_shipping=bool(data.get("refund_shipping", False)),
                evidence_urls=evidence,
                escalation_evidence_urls=[],
                created_at=now,
                updated_at=now,
                expires_at=now + timedelta(days=self.settings.SHOP_RESPONSE_DEADLINE_DAYS),
            )
            items = [
                ReturnRequestItem(
                    order_item_id=line.order_item.id,
                    product_id=line.order_item.product_id,
                    variant_id=line.order_item.variant_id,
                    product_name=line.order_item.product_name,
                    product_image=line.order_item.product_image,
                    variant_name=line.order_item.variant_name,
                    quantity=line.quantity,
                    unit_price=line.unit_price,
                    total_price=line.total_price,
                    item_reason=line.item_reason,
                    item_evidence_urls=line.item_evidence_urls,
                    created_at=now,
                )
                for line in quote.lines
            ]
            # the mirror write opens the outer transaction before the savepoint
            self.sub_orders.update_status(so.id, SubOrderStatus.RETURN_REQUESTED.value)
            self.db.flush()
            self._insert_request(rr, items, now)

            self.history.record(
                rr,
                None,
                ReturnStatus.PENDING.value,
                ActorType.CUSTOMER.value,
                customer_id,
                note=reason_catalog.reason_label(reason),
            )
            self._notify("return.created", rr, [(ActorType.SHOP, rr.shop_id)])

        log.info(
            f"created {rr.request_number} sub_order={sub_order_id} "
            f"refund={rr.refund_amount} items={len(items)}"
        )
        return self._serialize(rr)

    def _insert_request(self, rr: ReturnRequest, items: List, now: datetime) -> None:
        """
        Insert the request under a fresh daily number. A number taken by a
        concurrent create is retried; a concurrent active request for the same
        sub-order is a duplicate.
        """
        for attempt in range(1, REQUEST_NUMBER_ATTEMPTS + 1):
            rr.request_number = self.repo.next_request_number(now)
            try:
                with savepoint(self.db):
                    self.repo.create(rr, items)
                return
            except IntegrityError as e:
                if self.repo.find_active_for_sub_order(rr.sub_order_id):
                    raise DuplicateReturnRequest(
                        "An active return request already exists for this sub-order"
                    ) from e
                if not self.repo.request_number_exists(rr.request_number):
                    raise
                log.warning(
                    f"request number {rr.request_number} taken concurrently "
                    f"(attempt {attempt}/{REQUEST_NUMBER_ATTEMPTS})"
                )
        raise ConcurrentUpdate("Could not allocate a request number, retry the request")

    # ------------------------------------------------------------- transitions

    def update_status_by_shop(
        self, request_id: str, shop_id: str, new_status, data: Optional[Dict] = None
    ) -> Dict:
        """
        Shop-side edges: approve, reject (with a response), confirm receipt,
        start refunding, record the refund, complete.
        """
        data = data or {}
        target = _parse_status(new_status)
        with self._unit_of_work("update_status_by_shop"):
            rr = self._load_owned(request_id, shop_id=shop_id)
            self._shop_edge(rr, target, shop_id, data)
        return self._serialize(rr)

    def process_refund(self, request_id: str, shop_id: str, data: Optional[Dict] = None) -> Dict:
        """
        Record a refund in one transaction: ``received -> refunding -> refunded``.
        A request already ``refunding`` (an earlier attempt stopped there) only
        takes the second edge.
        """
        data = data or {}
        with self._unit_of_work("process_refund"):
            rr = self._load_owned(request_id, shop_id=shop_id)
            if rr.status != ReturnStatus.REFUNDING.value:
                self._shop_edge(rr, ReturnStatus.REFUNDING, shop_id, data)
            self._shop_edge(rr, ReturnStatus.REFUNDED, shop_id, data)
        return self._serialize(rr)

    def _shop_edge(
        self, rr: ReturnRequest, target: ReturnStatus, shop_id: str, data: Dict
    ) -> None:
        assert_transition(rr.status, target, ActorType.SHOP)
        now = self._now()
        responder = data.get("responded_by") or shop_id
        note = _text(data, "note")

        if target in (ReturnStatus.APPROVED, ReturnStatus.REJECTED):
            response = _text(data, "response", "reason")
            if target == ReturnStatus.REJECTED and not response:
                raise ReturnValidationError("A rejection reason is required")
            rr.shop_response = response
            rr.shop_responded_at = now
            rr.shop_responded_by = responder
            note = response or note
        elif target == ReturnStatus.RECEIVED:
            rr.received_at = now
        elif target == ReturnStatus.REFUNDING:
            rr.refund_method = data.get("refund_method") or rr.refund_method
        elif target == ReturnStatus.REFUNDED:
            rr.refunded_at = now
            rr.refund_transaction_id = (
                data.get("transaction_id") or f"REF-{uuid4().hex[:12].upper()}"
            )
            rr.refund_method = (
                data.get("refund_method") or rr.refund_method or "original"
            )

        self._apply(rr, target, ActorType.SHOP, responder, note)
        self._notify("return.status_changed", rr, [(ActorType.CUSTOMER, rr.customer_id)])

    def update_status_by_customer(
        self, request_id: str, customer_id: str, new_status, data: Optional[Dict] = None
    ) -> Dict:
        """Customer-side edges: cancel, or hand the parcel to a carrier."""
        data = data or {}
        target = _parse_status(new_status)
        with self._unit_of_work("update_status_by_customer"):
            rr = self._load_owned(request_id, customer_id=customer_id)
            assert_transition(rr.status, target, ActorType.CUSTOMER)
            note = _text(data, "note", "reason")

            if target == ReturnStatus.SHIPPING:
                tracking = _text(data, "tracking_number")
                if not tracking:
                    raise ReturnValidationError("A return tracking number is required")
                rr.return_tracking_number = tracking
                rr.return_shipper = _text(data, "shipper")
                rr.shipped_at = self._now()
                note = note or f"{rr.return_shipper or 'carrier'}: {tracking}"

            self._apply(rr, target, ActorType.CUSTOMER, customer_id, note)
            self._notify("return.status_changed", rr, [(ActorType.SHOP, rr.shop_id)])
        return self._serialize(rr)

    def escalate_to_admin(self, request_id: str, customer_id: str, data: Dict) -> Dict:
        """Appeal a shop rejection; only legal while the request is ``rejected``."""
        with self._unit_of_work("escalate_to_admin"):
            rr = self._load_owned(request_id, customer_id=customer_id)
            assert_transition(rr.status, ReturnStatus.ESCALATED, ActorType.CUSTOMER)
            reason = _text(data or {}, "reason")
            if not reason:
                raise ReturnValidationError("An escalation reason is required")
            if self.repo.find_active_for_sub_order(rr.sub_order_id, exclude_id=rr.id):
                raise DuplicateReturnRequest(
                    "Another active return request exists for this sub-order"
                )

            rr.escalated_at = self._now()
            rr.escalation_reason = reason
            rr.escalation_evidence_urls = list((data or {}).get("evidence_urls") or [])
            self._apply(rr, ReturnStatus.ESCALATED, ActorType.CUSTOMER, customer_id, reason)
            self._notify("return.escalated", rr, [(ActorType.ADMIN, None)])
        return self._serialize(rr)

    def resolve_escalation(
        self, request_id: str, admin_id: str, decision, data: Optional[Dict] = None
    ) -> Dict:
        """Binding admin decision on an escalated request (``approved`` or ``rejected``)."""
        try:
            target = ReturnStatus(decision)
        except ValueError:
            target = None
        if target not in ADMIN_DECISIONS:
            raise ReturnValidationError("decision must be 'approved' or 'rejected'")

        note = _text(data or {}, "note")
        with self._unit_of_work("resolve_escalation"):
            rr = self._load_owned(request_id)
            assert_transition(rr.status, target, ActorType.ADMIN)
            rr.resolved_by = admin_id
            rr.resolved_at = self._now()
            rr.admin_note = note
            self._apply(rr, target, ActorType.ADMIN, admin_id, note)
            self._notify(
                "return.resolved",
                rr,
                [(ActorType.CUSTOMER, rr.customer_id), (ActorType.SHOP, rr.shop_id)],
            )
        return self._serialize(rr)

    def _load_owned(
        self, request_id: str, customer_id: str = None, shop_id: str = None
    ) -> ReturnRequest:
        rr = self.repo.get(request_id)
        # ownership mismatches look exactly like unknown ids
        if (
            not rr
            or (customer_id is not None and rr.customer_id != customer_id)
            or (shop_id is not None and rr.shop_id != shop_id)
        ):
            raise ReturnNotFound("Return request not found")
        return rr

    def _apply(
        self,
        rr: ReturnRequest,
        target: ReturnStatus,
        actor_type: ActorType,
        actor_id: Optional[str],
        note: Optional[str],
    ) -> None:
        from_status = rr.status
        rr.status = target.value
        rr.updated_at = self._now()
        mirror = SUB_ORDER_MIRROR.get(target)
        if mirror is not None:
            self.sub_orders.update_status(rr.sub_order_id, mirror.value)
        # version check happens here; history must follow a clean flush
        self.db.flush()
        self.history.record(rr, from_status, target.value, actor_type.value, actor_id, note)
        log.info(
            f"{rr.request_number}: {from_status} -> {target.value} "
            f"by {actor_type.value}:{actor_id}"
        )

    def _notify(self, topic: str, rr: ReturnRequest, recipients: Iterable) -> None:
        self.outbox.enqueue(
            topic,
            {
                "return_request_id": rr.id,
                "request_number": rr.request_number,
                "status": rr.status,
                "recipients": [{"type": t.value, "id": i} for t, i in recipients],
                "occurred_at": self._now().isoformat(),
            },
        )

    # ----------------------------------------------------------------- queries

    def get_return_request_by_id(
        self, request_id: str, customer_id: str = None, shop_id: str = None
    ) -> Dict:
        rr = self.repo.get(request_id, with_history=True)
        if (
            not rr
            or (customer_id is not None and rr.customer_id != customer_id)
            or (shop_id is not None and rr.shop_id != shop_id)
        ):
            raise ReturnNotFound("Return request not found")
        return self._serialize(rr, detail=True)

    def get_customer_return_requests(
        self, customer_id: str, status: str = None, page: int = 1, limit: int = None
    ) -> Dict:
        page, limit = self._page_params(page, limit)
        rows, total = self.repo.list_for_customer(customer_id, status, page, limit)
        return self._paged(rows, total, page, limit)

    def get_shop_return_requests(
        self, shop_id: str, status: str = None, page: int = 1, limit: int = None
    ) -> Dict:
        page, limit = self._page_params(page, limit)
        rows, total = self.repo.list_for_shop(shop_id, status, page, limit)
        return self._paged(rows, total, page, limit)

    def get_escalated_return_requests(
        self, status: str = ReturnStatus.ESCALATED.value, page: int = 1, limit: int = None
    ) -> Dict:
        """``status="all"`` lists escalated plus everything an admin has resolved."""
        page, limit = self._page_params(page, limit)
        rows, total = self.repo.list_admin(status, page, limit)
        return self._paged(rows, total, page, limit)

    def list_overdue_requests(self) -> List[Dict]:
        """Pending requests whose shop response deadline has passed (SLA report)."""
        return [self._serialize(rr) for rr in self.repo.list_overdue(self._now())]

    @staticmethod
    def list_return_reasons() -> List[Dict]:
        return reason_catalog.list_reasons()

    def _page_params(self, page, limit):
        page = max(1, int(page or 1))
        limit = int(limit or self.settings.DEFAULT_PAGE_SIZE)
        return page, min(max(1, limit), self.settings.MAX_PAGE_SIZE)

    def _paged(self, rows, total: int, page: int, limit: int) -> Dict:
        data = [self._serialize(rr) for rr in rows]
        pagination = Pagination(
            page=page,
            limit=limit,
            total=total,
            total_pages=math.ceil(total / limit) if total else 0,
        )
        return {
            "data": data,
            "count": len(data),
            "pagination": pagination.model_dump(by_alias=True),
        }

    def _serialize(self, rr: ReturnRequest, detail: bool = False) -> Dict:
        model = ReturnRequestDetailOut if detail else ReturnRequestOut
        out = model.model_validate(rr)
        out.is_overdue = bool(
            rr.status == ReturnStatus.PENDING.value
            and rr.expires_at is not None
            and ensure_utc(rr.expires_at) < self._now()
        )
        return out.model_dump(by_alias=True)
