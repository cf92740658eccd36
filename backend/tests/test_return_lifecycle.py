from datetime import timedelta
from decimal import Decimal

import pytest

from app.models.order import SubOrder
from app.models.return_request import ReturnRequest
from app.models.return_request_history import ReturnRequestHistory
from app.services.errors import (
    DuplicateReturnRequest,
    InvalidState,
    InvalidTransition,
    ReturnNotFound,
    ReturnValidationError,
    ReturnWindowExpired,
)

EVIDENCE = ["https://cdn.example.vn/e1.jpg", "https://cdn.example.vn/e2.jpg"]


def _history(db, request_id):
    return (
        db.query(ReturnRequestHistory)
        .filter(ReturnRequestHistory.return_request_id == request_id)
        .order_by(ReturnRequestHistory.id)
        .all()
    )


def _sub_order_status(db, sub_order_id):
    db.expire_all()
    return db.get(SubOrder, sub_order_id).status


@pytest.fixture
def customer_id(marketplace):
    return marketplace["customer"].id


@pytest.fixture
def shop_id(marketplace):
    return marketplace["shop"].id


@pytest.fixture
def damaged_request(service, make_sub_order, customer_id):
    so = make_sub_order()
    return service.create_return_request(
        customer_id,
        {"sub_order_id": so.id, "reason": "damaged", "evidence_urls": EVIDENCE},
    )


# ---------------------------------------------------------------- creation


def test_full_return_is_created_pending(db, service, make_sub_order, customer_id, clock):
    so = make_sub_order()
    rr = service.create_return_request(
        customer_id,
        {
            "sub_order_id": so.id,
            "reason": "damaged",
            "reason_detail": "Bình gốm bị nứt",
            "evidence_urls": EVIDENCE,
        },
    )
    assert rr["status"] == "pending"
    assert rr["refundAmount"] == Decimal("150000")
    assert rr["expiresAt"] == clock.now + timedelta(days=3)
    assert rr["requestNumber"] == "RR2503100001"
    assert rr["reasonLabel"] == "Hàng bị hư hỏng/vỡ"
    assert rr["evidenceUrls"] == EVIDENCE
    assert {i["returnRequestId"] for i in rr["items"]} == {rr["id"]}
    assert len(rr["items"]) == 3
    assert sum(i["totalPrice"] for i in rr["items"]) == Decimal("150000")
    assert rr["shop"]["name"] == "Tiệm Gốm Bát Tràng"
    assert rr["customer"]["email"] == "a@example.vn"
    assert _sub_order_status(db, so.id) == "return_requested"

    rows = _history(db, rr["id"])
    assert [(h.from_status, h.to_status, h.actor_type) for h in rows] == [
        (None, "pending", "customer")
    ]


def test_request_numbers_increase_within_a_day(service, make_sub_order, customer_id):
    first = service.create_return_request(
        customer_id, {"sub_order_id": make_sub_order().id, "reason": "change_mind"}
    )
    second = service.create_return_request(
        customer_id, {"sub_order_id": make_sub_order().id, "reason": "change_mind"}
    )
    assert first["requestNumber"] == "RR2503100001"
    assert second["requestNumber"] == "RR2503100002"


def test_partial_return_refunds_only_named_items(db, service, make_sub_order, customer_id):
    so = make_sub_order()
    items = sorted(so.items, key=lambda i: i.unit_price)
    cheap, dear = items[0], items[-1]
    rr = service.create_return_request(
        customer_id,
        {
            "sub_order_id": so.id,
            "reason": "change_mind",
            "request_type": "refund_only",
            "items": [
                {"order_item_id": cheap.id, "quantity": 1, "reason": "không cần nữa"},
                {"order_item_id": dear.id, "quantity": 1},
            ],
        },
    )
    assert rr["refundAmount"] == cheap.unit_price + dear.unit_price
    assert rr["requestType"] == "refund_only"
    assert {i["orderItemId"] for i in rr["items"]} == {cheap.id, dear.id}
    assert any(i["itemReason"] == "không cần nữa" for i in rr["items"])


def test_change_mind_needs_no_evidence(service, make_sub_order, customer_id):
    so = make_sub_order()
    rr = service.create_return_request(
        customer_id, {"sub_order_id": so.id, "reason": "change_mind"}
    )
    assert rr["status"] == "pending"
    assert rr["evidenceUrls"] == []


def test_evidence_required_for_damaged(db, service, make_sub_order, customer_id):
    so = make_sub_order()
    with pytest.raises(ReturnValidationError):
        service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "damaged"})
    assert db.query(ReturnRequest).count() == 0


def test_unknown_reason_is_accepted_verbatim(service, make_sub_order, customer_id):
    so = make_sub_order()
    rr = service.create_return_request(
        customer_id, {"sub_order_id": so.id, "reason": "seasonal_promo"}
    )
    assert rr["reasonLabel"] == "seasonal_promo"


def test_window_expired_after_twenty_days(db, service, make_sub_order, customer_id):
    so = make_sub_order(delivered_days_ago=20)
    with pytest.raises(ReturnWindowExpired):
        service.create_return_request(
            customer_id, {"sub_order_id": so.id, "reason": "damaged", "evidence_urls": EVIDENCE}
        )
    assert db.query(ReturnRequest).count() == 0
    assert _sub_order_status(db, so.id) == "delivered"


def test_window_boundary_is_inclusive(service, make_sub_order, customer_id, clock):
    so = make_sub_order(delivered_days_ago=15)
    rr = service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "other"})
    assert rr["status"] == "pending"

    late = make_sub_order(delivered_days_ago=15)
    clock.advance(seconds=1)
    with pytest.raises(ReturnWindowExpired):
        service.create_return_request(customer_id, {"sub_order_id": late.id, "reason": "other"})


def test_no_delivery_timestamp_skips_window(service, make_sub_order, customer_id):
    so = make_sub_order(status="completed", delivered_days_ago=None)
    rr = service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "other"})
    assert rr["status"] == "pending"


def test_undelivered_sub_order_is_invalid_state(service, make_sub_order, customer_id):
    so = make_sub_order(status="shipping")
    with pytest.raises(InvalidState):
        service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "other"})


def test_other_customers_sub_order_looks_missing(service, make_sub_order, marketplace):
    so = make_sub_order()
    with pytest.raises(ReturnNotFound):
        service.create_return_request(
            marketplace["other_customer"].id, {"sub_order_id": so.id, "reason": "other"}
        )
    with pytest.raises(ReturnNotFound):
        service.create_return_request(
            marketplace["customer"].id, {"sub_order_id": "missing", "reason": "other"}
        )


def test_duplicate_until_prior_is_rejected_or_cancelled(
    service, make_sub_order, customer_id, shop_id
):
    so = make_sub_order()
    payload = {"sub_order_id": so.id, "reason": "change_mind"}
    first = service.create_return_request(customer_id, payload)

    # the sub-order is now return_requested; the active request blocks first
    with pytest.raises((DuplicateReturnRequest, InvalidState)):
        service.create_return_request(customer_id, payload)

    service.update_status_by_shop(first["id"], shop_id, "rejected", {"response": "Hết hạn đổi trả"})
    second = service.create_return_request(customer_id, payload)
    assert second["status"] == "pending"

    service.update_status_by_customer(second["id"], customer_id, "cancelled")
    third = service.create_return_request(customer_id, payload)
    assert third["status"] == "pending"


def test_duplicate_request_error_when_sub_order_still_eligible(
    db, service, make_sub_order, customer_id
):
    so = make_sub_order()
    service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "other"})
    # sub-order status reset by some other module while the request is active
    db.get(SubOrder, so.id).status = "delivered"
    db.commit()
    with pytest.raises(DuplicateReturnRequest):
        service.create_return_request(customer_id, {"sub_order_id": so.id, "reason": "other"})


def test_over_quantity_partial_return_is_rejected(db, service, make_sub_order, customer_id):
    so = make_sub_order(items=[(Decimal("10000"), 1)])
    item = so.items[0]
    with pytest.raises(ReturnValidationError):
        service.create_return_request(
            customer_id,
            {
                "sub_order_id": so.id,
                "reason": "other",
                "items": [{"order_item_id": item.id, "quantity": 5}],
            },
        )
    assert db.query(ReturnRequest).count() == 0


# -------------------------------------------------------------- transitions


def test_reject_escalate_resolve_approved(db, service, damaged_request, customer_id, shop_id, marketplace):
    rid = damaged_request["id"]
    rr = service.update_status_by_shop(rid, shop_id, "rejected", {"response": "hàng không hư hỏng"})
    assert rr["status"] == "rejected"
    assert rr["shopResponse"] == "hàng không hư hỏng"
    assert rr["shopRespondedAt"] is not None

    rr = service.escalate_to_admin(
        rid, customer_id, {"reason": "Shop từ chối sai", "evidence_urls": ["https://cdn.example.vn/v.mp4"]}
    )
    assert rr["status"] == "escalated"
    assert rr["escalationReason"] == "Shop từ chối sai"
    assert rr["escalationEvidenceUrls"] == ["https://cdn.example.vn/v.mp4"]
    assert rr["escalatedAt"] is not None

    rr = service.resolve_escalation(rid, marketplace["owner"].id, "approved", {"note": "Đồng ý hoàn tiền"})
    assert rr["status"] == "approved"
    assert rr["resolvedBy"] == marketplace["owner"].id
    assert rr["adminNote"] == "Đồng ý hoàn tiền"
    assert _sub_order_status(db, damaged_request["subOrderId"]) == "return_approved"

    rows = _history(db, rid)
    assert [(h.from_status, h.to_status, h.actor_type) for h in rows] == [
        (None, "pending", "customer"),
        ("pending", "rejected", "shop"),
        ("rejected", "escalated", "customer"),
        ("escalated", "approved", "admin"),
    ]


def test_resolve_rejected_keeps_rejection(service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "rejected", {"response": "không lỗi"})
    service.escalate_to_admin(rid, customer_id, {"reason": "khiếu nại"})
    rr = service.resolve_escalation(rid, "admin-1", "rejected")
    assert rr["status"] == "rejected"
    assert rr["resolvedAt"] is not None


def test_resolve_rejects_bad_decision_and_wrong_state(service, damaged_request):
    with pytest.raises(ReturnValidationError):
        service.resolve_escalation(damaged_request["id"], "admin-1", "maybe")
    with pytest.raises(InvalidTransition):
        service.resolve_escalation(damaged_request["id"], "admin-1", "approved")


@pytest.mark.parametrize("setup", ["pending", "approved", "cancelled"])
def test_escalate_only_from_rejected(service, damaged_request, customer_id, shop_id, setup):
    rid = damaged_request["id"]
    if setup == "approved":
        service.update_status_by_shop(rid, shop_id, "approved")
    elif setup == "cancelled":
        service.update_status_by_customer(rid, customer_id, "cancelled")
    with pytest.raises(InvalidState):
        service.escalate_to_admin(rid, customer_id, {"reason": "please"})


def test_escalate_requires_reason(service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "rejected", {"response": "no"})
    with pytest.raises(ReturnValidationError):
        service.escalate_to_admin(rid, customer_id, {"reason": "  "})


def test_escalate_blocked_when_newer_request_active(service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "rejected", {"response": "no"})
    service.create_return_request(
        customer_id, {"sub_order_id": damaged_request["subOrderId"], "reason": "other"}
    )
    with pytest.raises(DuplicateReturnRequest):
        service.escalate_to_admin(rid, customer_id, {"reason": "appeal"})


def test_reject_requires_response(service, damaged_request, shop_id):
    with pytest.raises(ReturnValidationError):
        service.update_status_by_shop(damaged_request["id"], shop_id, "rejected", {})


def test_full_return_and_refund_flow(db, service, damaged_request, customer_id, shop_id, clock):
    rid = damaged_request["id"]
    so_id = damaged_request["subOrderId"]

    service.update_status_by_shop(rid, shop_id, "approved", {"responded_by": "staff-1"})
    assert _sub_order_status(db, so_id) == "return_approved"

    with pytest.raises(ReturnValidationError):
        service.update_status_by_customer(rid, customer_id, "shipping", {})
    clock.advance(days=1)
    rr = service.update_status_by_customer(
        rid, customer_id, "shipping", {"tracking_number": "GHN123456", "shipper": "GHN"}
    )
    assert rr["returnTrackingNumber"] == "GHN123456"
    assert rr["returnShipper"] == "GHN"
    assert rr["shippedAt"] == clock.now

    rr = service.update_status_by_shop(rid, shop_id, "received")
    assert rr["receivedAt"] == clock.now
    service.update_status_by_shop(rid, shop_id, "refunding", {"refund_method": "wallet"})
    rr = service.update_status_by_shop(rid, shop_id, "refunded", {"transaction_id": "TXN-1"})
    assert rr["refundTransactionId"] == "TXN-1"
    assert rr["refundMethod"] == "wallet"
    assert rr["refundedAt"] == clock.now
    assert _sub_order_status(db, so_id) == "returned"

    rr = service.update_status_by_shop(rid, shop_id, "completed")
    assert rr["status"] == "completed"
    assert _sub_order_status(db, so_id) == "returned"
    assert len(_history(db, rid)) == 7

    with pytest.raises(InvalidTransition):
        service.update_status_by_customer(rid, customer_id, "cancelled")


def test_process_refund_takes_both_edges_at_once(db, service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "approved")
    service.update_status_by_customer(rid, customer_id, "shipping", {"tracking_number": "VN1"})
    service.update_status_by_shop(rid, shop_id, "received")

    rr = service.process_refund(rid, shop_id, {"transaction_id": "TXN-9", "refund_method": "wallet"})
    assert rr["status"] == "refunded"
    assert rr["refundTransactionId"] == "TXN-9"
    assert rr["refundMethod"] == "wallet"
    assert [(h.from_status, h.to_status) for h in _history(db, rid)][-2:] == [
        ("received", "refunding"),
        ("refunding", "refunded"),
    ]


def test_process_refund_resumes_from_refunding(db, service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "approved")
    service.update_status_by_customer(rid, customer_id, "shipping", {"tracking_number": "VN1"})
    service.update_status_by_shop(rid, shop_id, "received")
    service.update_status_by_shop(rid, shop_id, "refunding", {"refund_method": "bank"})

    rr = service.process_refund(rid, shop_id)
    assert rr["status"] == "refunded"
    assert rr["refundMethod"] == "bank"
    assert _sub_order_status(db, damaged_request["subOrderId"]) == "returned"
    assert [h.to_status for h in _history(db, rid)].count("refunding") == 1


def test_process_refund_is_all_or_nothing(db, service, damaged_request, shop_id):
    # pending cannot reach refunding; nothing may be written
    with pytest.raises(InvalidTransition):
        service.process_refund(damaged_request["id"], shop_id)
    assert service.get_return_request_by_id(damaged_request["id"])["status"] == "pending"
    assert len(_history(db, damaged_request["id"])) == 1


def test_approve_keeps_caller_note_without_response(db, service, damaged_request, shop_id):
    service.update_status_by_shop(
        damaged_request["id"], shop_id, "approved", {"note": "Đã gọi khách xác nhận"}
    )
    assert _history(db, damaged_request["id"])[-1].note == "Đã gọi khách xác nhận"


def test_refund_generates_transaction_id(service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "approved")
    service.update_status_by_customer(rid, customer_id, "shipping", {"tracking_number": "VN1"})
    service.update_status_by_shop(rid, shop_id, "received")
    service.update_status_by_shop(rid, shop_id, "refunding")
    rr = service.update_status_by_shop(rid, shop_id, "refunded")
    assert rr["refundTransactionId"].startswith("REF-")
    assert rr["refundMethod"] == "original"


def test_shop_can_reject_bad_condition_return(service, damaged_request, customer_id, shop_id):
    rid = damaged_request["id"]
    service.update_status_by_shop(rid, shop_id, "approved")
    service.update_status_by_customer(rid, customer_id, "shipping", {"tracking_number": "VN1"})
    service.update_status_by_shop(rid, shop_id, "received")
    rr = service.update_status_by_shop(rid, shop_id, "rejected", {"response": "Hàng trả về bị trầy"})
    assert rr["status"] == "rejected"


def test_shop_cannot_take_customer_edges(service, damaged_request, shop_id):
    with pytest.raises(InvalidTransition):
        service.update_status_by_shop(damaged_request["id"], shop_id, "cancelled")


def test_customer_cannot_take_shop_edges(service, damaged_request, customer_id):
    with pytest.raises(InvalidTransition):
        service.update_status_by_customer(damaged_request["id"], customer_id, "approved")


def test_unknown_status_is_validation_error(service, damaged_request, shop_id):
    with pytest.raises(ReturnValidationError):
        service.update_status_by_shop(damaged_request["id"], shop_id, "teleported")


def test_ownership_mismatch_is_not_found(service, damaged_request, marketplace):
    rid = damaged_request["id"]
    with pytest.raises(ReturnNotFound):
        service.update_status_by_shop(rid, marketplace["other_shop"].id, "approved")
    with pytest.raises(ReturnNotFound):
        service.update_status_by_customer(rid, marketplace["other_customer"].id, "cancelled")
    with pytest.raises(ReturnNotFound):
        service.escalate_to_admin(rid, marketplace["other_customer"].id, {"reason": "x"})
    with pytest.raises(ReturnNotFound):
        service.get_return_request_by_id(rid, customer_id=marketplace["other_customer"].id)


def test_failed_transition_writes_nothing(db, service, damaged_request, shop_id):
    rid = damaged_request["id"]
    with pytest.raises(InvalidTransition):
        service.update_status_by_shop(rid, shop_id, "received")
    assert len(_history(db, rid)) == 1
    assert service.get_return_request_by_id(rid)["status"] == "pending"


def test_cancel_restores_sub_order_eligibility(db, service, damaged_request, customer_id):
    service.update_status_by_customer(damaged_request["id"], customer_id, "cancelled", {"note": "đổi ý"})
    assert _sub_order_status(db, damaged_request["subOrderId"]) == "completed"
    rows = _history(db, damaged_request["id"])
    assert rows[-1].note == "đổi ý"


# ------------------------------------------------------------------ queries


def test_detail_includes_history(service, damaged_request, shop_id):
    service.update_status_by_shop(damaged_request["id"], shop_id, "approved", {"response": "OK"})
    detail = service.get_return_request_by_id(damaged_request["id"], shop_id=shop_id)
    assert [h["toStatus"] for h in detail["history"]] == ["pending", "approved"]
    assert detail["history"][1]["note"] == "OK"


def test_customer_and_shop_listing_paginate(service, make_sub_order, customer_id, shop_id, marketplace):
    for _ in range(3):
        service.create_return_request(
            customer_id, {"sub_order_id": make_sub_order().id, "reason": "change_mind"}
        )
    service.create_return_request(
        customer_id,
        {"sub_order_id": make_sub_order(shop=marketplace["other_shop"]).id, "reason": "other"},
    )

    page = service.get_customer_return_requests(customer_id, page=1, limit=2)
    assert page["count"] == 2
    assert page["pagination"] == {"page": 1, "limit": 2, "total": 4, "totalPages": 2}

    shop_page = service.get_shop_return_requests(shop_id, status="pending")
    assert shop_page["pagination"]["total"] == 3
    assert all(r["shopId"] == shop_id for r in shop_page["data"])

    empty = service.get_shop_return_requests(shop_id, status="refunded")
    assert empty == {
        "data": [],
        "count": 0,
        "pagination": {"page": 1, "limit": 20, "total": 0, "totalPages": 0},
    }


def test_admin_listing_all_includes_resolved(service, make_sub_order, customer_id, shop_id):
    ids = []
    for _ in range(2):
        rr = service.create_return_request(
            customer_id,
            {"sub_order_id": make_sub_order().id, "reason": "damaged", "evidence_urls": EVIDENCE},
        )
        service.update_status_by_shop(rr["id"], shop_id, "rejected", {"response": "no"})
        service.escalate_to_admin(rr["id"], customer_id, {"reason": "appeal"})
        ids.append(rr["id"])
    service.resolve_escalation(ids[0], "admin-1", "approved")

    escalated = service.get_escalated_return_requests()
    assert [r["id"] for r in escalated["data"]] == [ids[1]]

    touched = service.get_escalated_return_requests(status="all")
    assert {r["id"] for r in touched["data"]} == set(ids)


def test_overdue_reporting(service, damaged_request, clock):
    assert service.list_overdue_requests() == []
    clock.advance(days=3, seconds=1)
    overdue = service.list_overdue_requests()
    assert [r["id"] for r in overdue] == [damaged_request["id"]]
    assert overdue[0]["isOverdue"] is True
    assert overdue[0]["status"] == "pending"
