#!/usr/bin/env python3
"""
Seed a customer, a shop and a few delivered sub-orders so the return flow can
be exercised by hand or with tools/concurrency_transition.py.

Usage:
    python scripts/seed_marketplace.py --sub-orders 3 --delivered-days-ago 2
"""
import argparse
import os
import sys
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

# allow running from repo/scripts
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from app.db import SessionLocal, init_db
from app.models.order import Order, OrderItem, SubOrder, SubOrderStatus
from app.models.shop import Shop
from app.models.user import User

CUSTOMER_EMAIL = "customer@localshop.vn"
OWNER_EMAIL = "owner@localshop.vn"

# (product name, unit price VND, quantity)
DEFAULT_ITEMS = [
    ("Bình gốm men lam", Decimal("250000"), 1),
    ("Chén trà Bát Tràng", Decimal("45000"), 4),
    ("Khay tre đan", Decimal("120000"), 2),
]


def _get_or_create_user(db, email, full_name, role):
    user = db.query(User).filter(User.email == email).first()
    if user:
        return user
    user = User(full_name=full_name, email=email, role=role)
    db.add(user)
    db.flush()
    return user


def seed(sub_orders: int, delivered_days_ago: int):
    init_db()
    db = SessionLocal()
    try:
        customer = _get_or_create_user(db, CUSTOMER_EMAIL, "Khách Hàng Mẫu", "customer")
        owner = _get_or_create_user(db, OWNER_EMAIL, "Chủ Shop Mẫu", "partner")
        shop = db.query(Shop).filter(Shop.owner_id == owner.id).first()
        if not shop:
            shop = Shop(name="Tiệm Gốm Mẫu", owner_id=owner.id)
            db.add(shop)
            db.flush()

        delivered_at = datetime.now(timezone.utc) - timedelta(days=delivered_days_ago)
        created = []
        for _ in range(sub_orders):
            order = Order(order_number=f"ORD-{uuid4().hex[:10].upper()}", customer_id=customer.id)
            db.add(order)
            db.flush()
            so = SubOrder(
                order_id=order.id,
                shop_id=shop.id,
                status=SubOrderStatus.DELIVERED.value,
                delivered_at=delivered_at,
                subtotal=sum(price * qty for _, price, qty in DEFAULT_ITEMS),
            )
            db.add(so)
            db.flush()
            for name, price, qty in DEFAULT_ITEMS:
                db.add(
                    OrderItem(
                        sub_order_id=so.id,
                        product_id=str(uuid4()),
                        product_name=name,
                        quantity=qty,
                        unit_price=price,
                        total_price=price * qty,
                    )
                )
            created.append(so.id)

        db.commit()
        print("customer_id:", customer.id)
        print("shop_id:    ", shop.id)
        print("sub_orders: ", ", ".join(created))
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser()
    parser.add_argument("--sub-orders", type=int, default=3)
    parser.add_argument(
        "--delivered-days-ago",
        type=int,
        default=2,
        help="use a value above the return window to seed expired sub-orders",
    )
    args = parser.parse_args()
    seed(args.sub_orders, args.delivered_days_ago)
