# guidepay/repositories/payment_repository.py
"""
Payment Repository for guidepay

Locked lookups for the intent and webhook paths, risk aggregates for fraud
scoring, and the batched scans the reconciliation engine walks.
"""

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import List, Optional, Tuple

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..core.enums import ACTIVE_PAYMENT_STATUSES, PaymentStatus
from ..models.booking import Booking
from ..models.payment import Payment
from .base_repository import BaseRepository


@dataclass(frozen=True)
class PaymentRiskAggregate:
    attempts_24h: int
    failures_24h: int
    failures_5m: int
    avg_succeeded_amount_30d: Optional[Decimal]


@dataclass(frozen=True)
class DuplicateIntentGroup:
    provider_intent_id: str
    duplicate_count: int
    min_payment_id: int
    max_payment_id: int


class PaymentRepository(BaseRepository[Payment]):
    def __init__(self, db: Session):
        super().__init__(db, Payment)

    def get_latest_active_for_booking(self, booking_id: int, *, lock: bool = True) -> Optional[Payment]:
        query = (
            self.db.query(Payment)
            .filter(
                Payment.booking_id == booking_id,
                Payment.status.in_(sorted(ACTIVE_PAYMENT_STATUSES)),
            )
            .order_by(Payment.id.desc())
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_by_provider_intent(self, provider_intent_id: str, *, lock: bool = False) -> Optional[Payment]:
        query = (
            self.db.query(Payment)
            .filter(Payment.provider_intent_id == provider_intent_id)
            .order_by(Payment.id.desc())
        )
        if lock:
            query = query.with_for_update()
        return query.first()

    def get_risk_aggregate(
        self,
        user_id: int,
        *,
        since_24h: datetime,
        since_5m: datetime,
        since_30d: datetime,
    ) -> PaymentRiskAggregate:
        failed = Payment.status == PaymentStatus.FAILED.value
        row = (
            self.db.query(
                func.sum(case((Payment.created_at >= since_24h, 1), else_=0)),
                func.sum(case(((Payment.created_at >= since_24h) & failed, 1), else_=0)),
                func.sum(case(((Payment.created_at >= since_5m) & failed, 1), else_=0)),
                func.avg(
                    case(
                        (Payment.status == PaymentStatus.SUCCEEDED.value, Payment.amount),
                        else_=None,
                    )
                ),
            )
            .filter(Payment.user_id == user_id, Payment.created_at >= since_30d)
            .one()
        )
        attempts, failures, burst, avg_amount = row
        return PaymentRiskAggregate(
            attempts_24h=int(attempts or 0),
            failures_24h=int(failures or 0),
            failures_5m=int(burst or 0),
            avg_succeeded_amount_30d=Decimal(str(avg_amount)) if avg_amount is not None else None,
        )

    def fetch_reconciliation_batch(
        self, since: datetime, after_id: int, limit: int
    ) -> List[Tuple[Payment, Optional[Booking]]]:
        """Payments with id > after_id in the window, joined to their booking if it exists."""
        return (
            self.db.query(Payment, Booking)
            .outerjoin(Booking, Booking.id == Payment.booking_id)
            .filter(Payment.created_at >= since, Payment.id > after_id)
            .order_by(Payment.id.asc())
            .limit(limit)
            .all()
        )

    def find_duplicate_intents(self, since: datetime) -> List[DuplicateIntentGroup]:
        rows = (
            self.db.query(
                Payment.provider_intent_id,
                func.count(Payment.id),
                func.min(Payment.id),
                func.max(Payment.id),
            )
            .filter(Payment.provider_intent_id.isnot(None), Payment.created_at >= since)
            .group_by(Payment.provider_intent_id)
            .having(func.count(Payment.id) > 1)
            .order_by(Payment.provider_intent_id)
            .all()
        )
        return [
            DuplicateIntentGroup(
                provider_intent_id=intent_id,
                duplicate_count=int(count),
                min_payment_id=int(min_id),
                max_payment_id=int(max_id),
            )
            for intent_id, count, min_id, max_id in rows
        ]
