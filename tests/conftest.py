"""
Shared fixtures for the guidepay test suite.

The environment is pinned before any guidepay import so settings never pick
up a developer's Redis, Sentry or database configuration.
"""

from __future__ import annotations

import os

os.environ["ENVIRONMENT"] = "test"
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["REDIS_URL"] = ""
os.environ["SENTRY_DSN"] = ""
os.environ["CELERY_BROKER_URL"] = "memory://"
os.environ["CELERY_RESULT_BACKEND"] = "cache+memory://"

from datetime import datetime, timedelta
from decimal import Decimal
from typing import Iterator, Optional, Union

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from guidepay.core.config import settings
from guidepay.core.rate_limit import InMemoryWindowCounter, RateLimiter
from guidepay.database import Base
import guidepay.models  # noqa: F401
from guidepay.models.booking import Booking
from guidepay.models.guide import Guide, User
from guidepay.models.payment import Payment
from guidepay.services.alert_service import AlertService
from guidepay.services.cache_service import CacheService
from tests.helpers.fakes import (
    OFF_PEAK_WEEKDAY,
    FakePaymentGateway,
    ManualClock,
    RecordingJobProducer,
)


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(eng)
    try:
        yield eng
    finally:
        Base.metadata.drop_all(eng)
        eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory) -> Iterator[Session]:
    session = session_factory()
    try:
        yield session
    finally:
        session.rollback()
        session.close()


@pytest.fixture
def test_settings():
    return settings.model_copy(update={"recon_verify_pause_ms": 0, "environment": "test"})


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def alert_service(clock, test_settings) -> AlertService:
    limiter = RateLimiter(InMemoryWindowCounter(clock), limit=20, window_seconds=60)
    return AlertService(rate_limiter=limiter, config=test_settings)


@pytest.fixture
def cache() -> CacheService:
    return CacheService(use_redis=False)


@pytest.fixture
def gateway() -> FakePaymentGateway:
    return FakePaymentGateway()


@pytest.fixture
def job_producer() -> RecordingJobProducer:
    return RecordingJobProducer()


@pytest.fixture
def user(db) -> User:
    record = User(email="traveller@example.com")
    db.add(record)
    db.commit()
    return record


@pytest.fixture
def guide(db) -> Guide:
    record = Guide(name="Somchai", base_price=Decimal("1000.00"), is_active=True, is_available=True)
    db.add(record)
    db.commit()
    return record


@pytest.fixture
def make_booking(db, user, guide):
    """Insert a booking row directly, bypassing pricing and conflict checks."""

    def _make(
        *,
        total_price: Union[str, Decimal] = "2000.00",
        status: str = "pending",
        payment_status: str = "unpaid",
        start_at: Optional[datetime] = None,
        hours: int = 2,
        payment_intent_id: Optional[str] = None,
    ) -> Booking:
        start = start_at or OFF_PEAK_WEEKDAY
        booking = Booking(
            user_id=user.id,
            guide_id=guide.id,
            start_at=start,
            end_at=start + timedelta(hours=hours),
            duration_hours=Decimal(hours),
            total_price=Decimal(str(total_price)),
            base_amount=Decimal(str(total_price)),
            status=status,
            payment_status=payment_status,
            payment_intent_id=payment_intent_id,
        )
        db.add(booking)
        db.commit()
        return booking

    return _make


@pytest.fixture
def make_payment(db):
    def _make(
        booking: Optional[Booking],
        *,
        amount: Union[str, Decimal] = "2000.00",
        status: str = "initiated",
        provider_intent_id: Optional[str] = "pi_existing",
        booking_id: Optional[int] = None,
    ) -> Payment:
        payment = Payment(
            booking_id=booking.id if booking is not None else booking_id,
            user_id=booking.user_id if booking is not None else None,
            guide_id=booking.guide_id if booking is not None else None,
            provider_intent_id=provider_intent_id,
            amount=Decimal(str(amount)),
            currency="thb",
            status=status,
        )
        db.add(payment)
        db.commit()
        return payment

    return _make
