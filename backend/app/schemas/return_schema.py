from datetime import datetime, timezone
from decimal import Decimal
from typing import Annotated, List, Literal, Optional

from pydantic import (
    AliasChoices,
    AliasGenerator,
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    computed_field,
)
from pydantic.alias_generators import to_camel

from app.services.reason_catalog import reason_label


def ensure_utc(value):
    # SQLite hands back naive datetimes; everything is stored in UTC
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDateTime = Annotated[Optional[datetime], BeforeValidator(ensure_utc)]
UrlList = Annotated[List[str], BeforeValidator(lambda v: list(v or []))]


class _Out(BaseModel):
    # read ORM attributes by field name, emit camelCase keys
    model_config = ConfigDict(
        from_attributes=True,
        alias_generator=AliasGenerator(serialization_alias=to_camel),
    )


class _In(BaseModel):
    # clients may send camelCase or snake_case
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- output ----------


class ShopInfo(_Out):
    id: str
    name: str
    logo_url: Optional[str] = None


class CustomerInfo(_Out):
    id: str
    name: str = Field(validation_alias=AliasChoices("full_name", "name"))
    email: str
    phone: Optional[str] = None


class ReturnItemOut(_Out):
    id: str
    return_request_id: str
    order_item_id: str
    product_id: str
    variant_id: Optional[str] = None
    product_name: Optional[str] = None
    product_image: Optional[str] = None
    variant_name: Optional[str] = None
    quantity: int
    unit_price: Decimal
    total_price: Decimal
    item_reason: Optional[str] = None
    item_evidence_urls: UrlList = []


class HistoryOut(_Out):
    id: int
    from_status: Optional[str] = None
    to_status: str
    actor_type: str
    actor_id: Optional[str] = None
    note: Optional[str] = None
    created_at: UtcDateTime = None


class ReturnRequestOut(_Out):
    id: str
    request_number: str
    order_id: str
    sub_order_id: str
    customer_id: str
    shop_id: str
    reason: str
    reason_detail: Optional[str] = None
    request_type: str
    status: str
    refund_amount: Decimal
    refund_shipping: bool = False
    evidence_urls: UrlList = []

    shop_response: Optional[str] = None
    shop_responded_at: UtcDateTime = None
    shop_responded_by: Optional[str] = None

    escalated_at: UtcDateTime = None
    escalation_reason: Optional[str] = None
    escalation_evidence_urls: UrlList = []
    admin_note: Optional[str] = None
    resolved_by: Optional[str] = None
    resolved_at: UtcDateTime = None

    return_tracking_number: Optional[str] = None
    return_shipper: Optional[str] = None
    shipped_at: UtcDateTime = None
    received_at: UtcDateTime = None

    refund_method: Optional[str] = None
    refund_transaction_id: Optional[str] = None
    refunded_at: UtcDateTime = None

    created_at: UtcDateTime = None
    updated_at: UtcDateTime = None
    expires_at: UtcDateTime = None
    is_overdue: bool = False

    shop: Optional[ShopInfo] = None
    customer: Optional[CustomerInfo] = None
    items: List[ReturnItemOut] = []

    @computed_field(alias="reasonLabel")
    @property
    def reason_label(self) -> str:
        return reason_label(self.reason)


class ReturnRequestDetailOut(ReturnRequestOut):
    history: List[HistoryOut] = []


class Pagination(_Out):
    page: int
    limit: int
    total: int
    total_pages: int


# ---------- input ----------


class ReturnItemIn(_In):
    order_item_id: str
    quantity: int = Field(1, ge=1)
    reason: Optional[str] = None
    evidence_urls: List[str] = []


class CreateReturnIn(_In):
    sub_order_id: str
    reason: str
    reason_detail: Optional[str] = None
    request_type: Literal["return", "refund_only"] = "return"
    items: Optional[List[ReturnItemIn]] = None
    evidence_urls: List[str] = []
    refund_shipping: bool = False


class CancelIn(_In):
    reason: Optional[str] = None


class ShipIn(_In):
    tracking_number: Optional[str] = None
    shipper: Optional[str] = None


class EscalateIn(_In):
    reason: Optional[str] = None
    evidence_urls: List[str] = []


class ShopResponseIn(_In):
    response: Optional[str] = None
    reason: Optional[str] = None


class RefundIn(_In):
    transaction_id: Optional[str] = None
    refund_method: Optional[Literal["original", "wallet", "bank"]] = None


class ResolveIn(_In):
    decision: str
    note: Optional[str] = None
