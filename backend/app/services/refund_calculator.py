from dataclasses import dataclass, field
from decimal import ROUND_HALF_EVEN, Decimal
from typing import Dict, List, Optional, Sequence

from app.config import settings
from app.models.order import OrderItem
from app.services.errors import ReturnValidationError


@dataclass(frozen=True)
class RefundLine:
    """One priced line of a refund; becomes a ``ReturnRequestItem``."""

    order_item: OrderItem
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    item_reason: Optional[str] = None
    item_evidence_urls: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RefundQuote:
    amount: Decimal
    lines: List[RefundLine]


class RefundCalculator:
    """
    Prices full and partial returns from the order items of one sub-order.

    Each line is rounded half-even to the currency's minor unit before the
    lines are summed, so the refund always equals the sum of its item rows.
    """

    def __init__(self, minor_units: Optional[int] = None):
        if minor_units is None:
            minor_units = settings.CURRENCY_MINOR_UNITS
        self.quantum = Decimal(1).scaleb(-minor_units)

    def _round(self, value) -> Decimal:
        return Decimal(value).quantize(self.quantum, rounding=ROUND_HALF_EVEN)

    def quote(
        self,
        order_items: Sequence[OrderItem],
        requested: Optional[Sequence[Dict]] = None,
    ) -> RefundQuote:
        if not order_items:
            raise ReturnValidationError("Sub-order has no items to return")
        if not requested:
            return self._full(order_items)
        return self._partial(order_items, requested)

    def _full(self, order_items: Sequence[OrderItem]) -> RefundQuote:
        lines = [
            RefundLine(
                order_item=oi,
                quantity=oi.quantity,
                unit_price=self._round(oi.unit_price),
                total_price=self._round(oi.total_price),
            )
            for oi in order_items
        ]
        return RefundQuote(amount=self._sum(lines), lines=lines)

    def _partial(
        self, order_items: Sequence[OrderItem], requested: Sequence[Dict]
    ) -> RefundQuote:
        by_id = {oi.id: oi for oi in order_items}
        seen = set()
        lines = []
        for li in requested:
            item_id = li.get("order_item_id")
            if item_id not in by_id:
                raise ReturnValidationError(f"Order item {item_id} not part of sub-order")
            if item_id in seen:
                raise ReturnValidationError(f"Order item {item_id} listed more than once")
            seen.add(item_id)

            oi = by_id[item_id]
            qty = int(li.get("quantity", oi.quantity))
            if qty <= 0:
                raise ReturnValidationError(f"Quantity must be positive for {item_id}")
            if qty > oi.quantity:
                raise ReturnValidationError(
                    f"Cannot return more than purchased for {item_id}"
                )
            unit_price = self._round(oi.unit_price)
            lines.append(
                RefundLine(
                    order_item=oi,
                    quantity=qty,
                    unit_price=unit_price,
                    total_price=self._round(unit_price * qty),
                    item_reason=li.get("reason"),
                    item_evidence_urls=list(li.get("evidence_urls") or []),
                )
            )
        return RefundQuote(amount=self._sum(lines), lines=lines)

    def _sum(self, lines: Sequence[RefundLine]) -> Decimal:
        return sum((l.total_price for l in lines), Decimal(0))
