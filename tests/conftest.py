"""Shared fixtures: in-memory SQLite store, queue with a controllable clock, seed rows."""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from paysettle.common.db import Base
from paysettle.common.ids import generate_id
from paysettle.common.jobs import JobQueue
from paysettle.common.models import Merchant, Order, Payment

MERCHANT_ID = "550e8400-e29b-41d4-a716-446655440000"
API_KEY = "key_test_abc123"
API_SECRET = "secret_test_xyz789"
WEBHOOK_URL = "http://merchant.test/webhook"
WEBHOOK_SECRET = "whsec_test_abc123"


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self) -> None:
        self.now = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


@pytest.fixture
def session_factory():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False, expire_on_commit=False)
    yield factory
    engine.dispose()


@pytest.fixture
def queue(session_factory):
    return JobQueue(session_factory, poll_interval_seconds=0.01)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def merchant(session_factory):
    with session_factory() as db:
        merchant = Merchant(
            id=MERCHANT_ID,
            name="Test Merchant",
            email="test@example.com",
            api_key=API_KEY,
            api_secret=API_SECRET,
            webhook_url=WEBHOOK_URL,
            webhook_secret=WEBHOOK_SECRET,
        )
        db.add(merchant)
        db.commit()
        return merchant


def make_order(session_factory, merchant_id: str = MERCHANT_ID, amount: int = 500, status: str = "created") -> Order:
    with session_factory() as db:
        order = Order(
            id=generate_id("order_"),
            merchant_id=merchant_id,
            amount=amount,
            currency="INR",
            status=status,
        )
        db.add(order)
        db.commit()
        return order


def make_payment(
    session_factory,
    order: Order,
    method: str = "upi",
    status: str = "pending",
    captured: bool = False,
) -> Payment:
    with session_factory() as db:
        payment = Payment(
            id=generate_id("pay_"),
            order_id=order.id,
            merchant_id=order.merchant_id,
            amount=order.amount,
            currency=order.currency,
            method=method,
            status=status,
            captured=captured,
            vpa="a@b" if method == "upi" else None,
        )
        db.add(payment)
        db.commit()
        return payment
