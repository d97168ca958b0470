# guidepay/repositories/booking_repository.py
"""
Booking Repository for guidepay

Overlap detection, row locks and the aggregate reads used by fraud scoring
and reconciliation.
"""

from datetime import datetime
from typing import List, Optional

from sqlalchemy import and_, func
from sqlalchemy.orm import Session

from ..core.enums import BLOCKING_BOOKING_STATUSES, BookingPaymentStatus, PaymentStatus
from ..models.booking import Booking
from ..models.payment import Payment
from .base_repository import BaseRepository


class BookingRepository(BaseRepository[Booking]):
    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_for_update(self, booking_id: int) -> Optional[Booking]:
        return self.db.query(Booking).filter(Booking.id == booking_id).with_for_update().first()

    def find_overlapping(
        self,
        guide_id: int,
        start_at: datetime,
        end_at: datetime,
        *,
        lock: bool = True,
    ) -> List[Booking]:
        """
        Bookings of ``guide_id`` that occupy any part of [start_at, end_at).

        Touching windows (one ends exactly when the other starts) do not overlap.
        """
        query = self.db.query(Booking).filter(
            Booking.guide_id == guide_id,
            Booking.status.in_(sorted(BLOCKING_BOOKING_STATUSES)),
            Booking.start_at < end_at,
            Booking.end_at > start_at,
        )
        if lock:
            query = query.with_for_update()
        return query.all()

    def count_created_since(self, user_id: int, since: datetime) -> int:
        return int(
            self._execute_scalar(
                self.db.query(func.count(Booking.id)).filter(
                    Booking.user_id == user_id, Booking.created_at >= since
                )
            )
            or 0
        )

    def find_paid_without_successful_payment(
        self, since: datetime, limit: int = 500
    ) -> List[Booking]:
        """Paid bookings in the window that have no succeeded Payment row."""
        succeeded = (
            self.db.query(Payment.id)
            .filter(
                Payment.booking_id == Booking.id,
                Payment.status == PaymentStatus.SUCCEEDED.value,
            )
            .exists()
        )
        return (
            self.db.query(Booking)
            .filter(
                and_(
                    Booking.payment_status == BookingPaymentStatus.PAID.value,
                    Booking.created_at >= since,
                    ~succeeded,
                )
            )
            .order_by(Booking.id.asc())
            .limit(limit)
            .all()
        )

    def find_intent_without_payment(self, since: datetime, limit: int = 500) -> List[Booking]:
        """Bookings in the window whose stored intent id matches no Payment row."""
        recorded = (
            self.db.query(Payment.id)
            .filter(Payment.provider_intent_id == Booking.payment_intent_id)
            .exists()
        )
        return (
            self.db.query(Booking)
            .filter(
                Booking.payment_intent_id.isnot(None),
                Booking.payment_intent_id != "",
                Booking.created_at >= since,
                ~recorded,
            )
            .order_by(Booking.id.asc())
            .limit(limit)
            .all()
        )
