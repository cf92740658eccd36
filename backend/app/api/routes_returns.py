from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from sqlalchemy.orm import Session

from app.db import get_db
from app.schemas.return_schema import (
    CancelIn,
    CreateReturnIn,
    EscalateIn,
    RefundIn,
    ResolveIn,
    ShipIn,
    ShopResponseIn,
)
from app.services.errors import ReturnServiceException
from app.services.return_service import ReturnService

# authentication lives in front of this service; actors arrive as headers
customer_router = APIRouter(prefix="/api/returns", tags=["returns"])
partner_router = APIRouter(prefix="/api/partner/returns", tags=["partner-returns"])
admin_router = APIRouter(prefix="/api/admin/returns", tags=["admin-returns"])


def get_return_service(db: Session = Depends(get_db)) -> ReturnService:
    return ReturnService(db)


def _http_error(e: ReturnServiceException) -> HTTPException:
    return HTTPException(
        status_code=e.status_code, detail={"code": e.code, "message": str(e)}
    )


# ---------------------------------------------------------------- customer


@customer_router.get("/reasons")
def get_return_reasons():
    reasons = [
        {
            "value": r["value"],
            "label": r["label"],
            "requiresEvidence": r["requires_evidence"],
        }
        for r in ReturnService.list_return_reasons()
    ]
    return {"reasons": reasons}


@customer_router.post("", status_code=201)
def create_return_request(
    payload: CreateReturnIn,
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        rr = svc.create_return_request(customer_id, payload.model_dump())
        return {"returnRequest": rr}
    except ReturnServiceException as e:
        raise _http_error(e)


@customer_router.get("")
def get_my_return_requests(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    return svc.get_customer_return_requests(customer_id, status, page, limit)


@customer_router.get("/{request_id}")
def get_my_return_request(
    request_id: str,
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        return {"returnRequest": svc.get_return_request_by_id(request_id, customer_id=customer_id)}
    except ReturnServiceException as e:
        raise _http_error(e)


@customer_router.post("/{request_id}/cancel")
def cancel_return_request(
    request_id: str,
    payload: CancelIn = CancelIn(),
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        rr = svc.update_status_by_customer(
            request_id,
            customer_id,
            "cancelled",
            {"note": payload.reason or "Khách hàng hủy yêu cầu"},
        )
        return {"returnRequest": rr}
    except ReturnServiceException as e:
        raise _http_error(e)


@customer_router.post("/{request_id}/ship")
def ship_return(
    request_id: str,
    payload: ShipIn,
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        rr = svc.update_status_by_customer(
            request_id, customer_id, "shipping", payload.model_dump()
        )
        return {"returnRequest": rr}
    except ReturnServiceException as e:
        raise _http_error(e)


@customer_router.post("/{request_id}/escalate")
def escalate_return_request(
    request_id: str,
    payload: EscalateIn,
    customer_id: str = Header(..., alias="X-Customer-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        rr = svc.escalate_to_admin(request_id, customer_id, payload.model_dump())
        return {"returnRequest": rr}
    except ReturnServiceException as e:
        raise _http_error(e)


# ------------------------------------------------------------------ partner


def _shop_transition(svc, request_id, shop_id, user_id, status, data=None):
    try:
        data = dict(data or {}, responded_by=user_id)
        return {"returnRequest": svc.update_status_by_shop(request_id, shop_id, status, data)}
    except ReturnServiceException as e:
        raise _http_error(e)


@partner_router.get("")
def get_shop_return_requests(
    status: Optional[str] = None,
    page: int = 1,
    limit: int = 20,
    shop_id: str = Header(..., alias="X-Shop-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    return svc.get_shop_return_requests(shop_id, status, page, limit)


@partner_router.get("/{request_id}")
def get_shop_return_request(
    request_id: str,
    shop_id: str = Header(..., alias="X-Shop-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        return {"returnRequest": svc.get_return_request_by_id(request_id, shop_id=shop_id)}
    except ReturnServiceException as e:
        raise _http_error(e)


@partner_router.post("/{request_id}/approve")
def approve_return_request(
    request_id: str,
    payload: ShopResponseIn = ShopResponseIn(),
    shop_id: str = Header(..., alias="X-Shop-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    response = payload.response or "Đồng ý yêu cầu trả hàng"
    return _shop_transition(svc, request_id, shop_id, user_id, "approved", {"response": response})


@partner_router.post("/{request_id}/reject")
def reject_return_request(
    request_id: str,
    payload: ShopResponseIn = ShopResponseIn(),
    shop_id: str = Header(..., alias="X-Shop-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    response = payload.reason or payload.response
    return _shop_transition(svc, request_id, shop_id, user_id, "rejected", {"response": response})


@partner_router.post("/{request_id}/receive")
def confirm_received(
    request_id: str,
    shop_id: str = Header(..., alias="X-Shop-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    return _shop_transition(svc, request_id, shop_id, user_id, "received")


@partner_router.post("/{request_id}/refund")
def process_refund(
    request_id: str,
    payload: RefundIn = RefundIn(),
    shop_id: str = Header(..., alias="X-Shop-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    """received -> refunding -> refunded; the gateway call itself happens upstream."""
    try:
        data = dict(payload.model_dump(), responded_by=user_id)
        return {"returnRequest": svc.process_refund(request_id, shop_id, data)}
    except ReturnServiceException as e:
        raise _http_error(e)


@partner_router.post("/{request_id}/complete")
def complete_return_request(
    request_id: str,
    shop_id: str = Header(..., alias="X-Shop-Id"),
    user_id: Optional[str] = Header(None, alias="X-User-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    return _shop_transition(svc, request_id, shop_id, user_id, "completed")


# -------------------------------------------------------------------- admin


@admin_router.get("")
def get_escalated_returns(
    status: Optional[str] = "escalated",
    page: int = 1,
    limit: int = 20,
    svc: ReturnService = Depends(get_return_service),
):
    return svc.get_escalated_return_requests(status, page, limit)


@admin_router.get("/overdue")
def get_overdue_returns(svc: ReturnService = Depends(get_return_service)):
    data = svc.list_overdue_requests()
    return {"data": data, "count": len(data)}


@admin_router.get("/{request_id}")
def get_return_request_admin(
    request_id: str, svc: ReturnService = Depends(get_return_service)
):
    try:
        return {"returnRequest": svc.get_return_request_by_id(request_id)}
    except ReturnServiceException as e:
        raise _http_error(e)


@admin_router.post("/{request_id}/resolve")
def resolve_escalation(
    request_id: str,
    payload: ResolveIn,
    admin_id: str = Header(..., alias="X-Admin-Id"),
    svc: ReturnService = Depends(get_return_service),
):
    try:
        rr = svc.resolve_escalation(
            request_id, admin_id, payload.decision, {"note": payload.note}
        )
        return {"returnRequest": rr}
    except ReturnServiceException as e:
        raise _http_error(e)
