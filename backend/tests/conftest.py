from datetime import datetime, timedelta, timezone
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.adapters.notifier import RecordingNotifier
from app.config import Settings
from app.db import init_db
from app.models.order import Order, OrderItem, SubOrder
from app.models.shop import Shop
from app.models.user import User
from app.services.return_service import ReturnService


class FrozenClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs):
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    init_db(reset=True, bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def db(engine):
    Session = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    s = Session()
    try:
        yield s
    finally:
        s.close()


@pytest.fixture
def clock():
    return FrozenClock(datetime(2025, 3, 10, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def test_settings():
    return Settings(
        DATABASE_URL="sqlite://",
        RETURN_WINDOW_DAYS=15,
        SHOP_RESPONSE_DEADLINE_DAYS=3,
        OUTBOX_MAX_ATTEMPTS=3,
    )


@pytest.fixture
def service(db, test_settings, clock):
    return ReturnService(db, settings=test_settings, clock=clock)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def marketplace(db):
    """One customer, two shops, an outsider customer."""
    customer = User(full_name="Nguyễn Văn A", email="a@example.vn", phone="0901000001")
    other = User(full_name="Trần Thị B", email="b@example.vn", role="customer")
    owner = User(full_name="Shop Owner", email="owner@example.vn", role="partner")
    db.add_all([customer, other, owner])
    db.flush()
    shop = Shop(name="Tiệm Gốm Bát Tràng", owner_id=owner.id, logo_url="https://cdn.example.vn/logo.png")
    other_shop = Shop(name="Other Shop", owner_id=owner.id)
    db.add_all([shop, other_shop])
    db.commit()
    return {
        "customer": customer,
        "other_customer": other,
        "owner": owner,
        "shop": shop,
        "other_shop": other_shop,
    }


@pytest.fixture
def make_sub_order(db, marketplace, clock):
    """
    Build an order with one sub-order for the marketplace shop.
    items: list of (unit_price, quantity); defaults to 3 items totalling 150,000.
    """

    def _make(
        items=None,
        status="delivered",
        delivered_days_ago=2,
        customer=None,
        shop=None,
    ):
        items = items or [(Decimal("20000"), 2), (Decimal("50000"), 1), (Decimal("30000"), 2)]
        customer = customer or marketplace["customer"]
        shop = shop or marketplace["shop"]
        order = Order(order_number=f"ORD-{uuid4().hex[:10].upper()}", customer_id=customer.id)
        db.add(order)
        db.flush()
        delivered_at = (
            clock.now - timedelta(days=delivered_days_ago)
            if delivered_days_ago is not None
            else None
        )
        so = SubOrder(
            order_id=order.id,
            shop_id=shop.id,
            status=status,
            delivered_at=delivered_at,
            subtotal=sum(Decimal(p) * q for p, q in items),
        )
        db.add(so)
        db.flush()
        for idx, (price, qty) in enumerate(items):
            db.add(
                OrderItem(
                    sub_order_id=so.id,
                    product_id=str(uuid4()),
                    variant_id=None,
                    product_name=f"Product {idx + 1}",
                    product_image=f"https://cdn.example.vn/p{idx + 1}.jpg",
                    quantity=qty,
                    unit_price=Decimal(price),
                    total_price=Decimal(price) * qty,
                )
            )
        db.commit()
        return so

    return _make
