"""Guide reads, the per-guide booking lock, and the performance stats rollup."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import case, func
from sqlalchemy.orm import Session

from ..core.enums import BookingPaymentStatus, BookingStatus
from ..core.time_utils import utc_now
from ..models.booking import Booking
from ..models.guide import Guide, GuidePerformanceStat
from .base_repository import BaseRepository


class GuideRepository(BaseRepository[Guide]):
    def __init__(self, db: Session):
        super().__init__(db, Guide)

    def lock_for_booking(self, guide_id: int) -> Optional[Guide]:
        """
        Lock the guide row for the rest of the transaction.

        Serializes booking creation per guide, including the case where no
        overlapping booking rows exist yet to lock.
        """
        return self.db.query(Guide).filter(Guide.id == guide_id).with_for_update().first()

    def aggregate_booking_stats(self, guide_id: int) -> Dict[str, Any]:
        row = (
            self.db.query(
                func.count(Booking.id),
                func.sum(
                    case((Booking.payment_status == BookingPaymentStatus.PAID.value, 1), else_=0)
                ),
                func.avg(
                    case(
                        (
                            Booking.status.in_(
                                [BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value]
                            ),
                            Booking.total_price,
                        ),
                        else_=None,
                    )
                ),
                func.max(Booking.updated_at),
                func.max(Booking.created_at),
            )
            .filter(Booking.guide_id == guide_id)
            .one()
        )
        total, paid, avg_value, last_updated, last_created = row
        return {
            "total_bookings": int(total or 0),
            "paid_bookings": int(paid or 0),
            "avg_booking_value": Decimal(str(avg_value or 0)).quantize(Decimal("0.01")),
            "last_booked": last_updated or last_created,
        }

    def save_performance_stats(
        self,
        guide_id: int,
        *,
        total_bookings: int,
        paid_bookings: int,
        avg_booking_value: Decimal,
        last_booked: Optional[datetime],
    ) -> GuidePerformanceStat:
        stat = self.db.get(GuidePerformanceStat, guide_id)
        if stat is None:
            stat = GuidePerformanceStat(guide_id=guide_id)
            self.db.add(stat)
        stat.total_bookings = total_bookings
        stat.paid_bookings = paid_bookings
        stat.avg_booking_value = avg_booking_value
        stat.last_booked = last_booked
        stat.last_updated = utc_now()
        self.db.flush()
        return stat

    def bump_paid_bookings(self, guide_id: int) -> None:
        """Best-effort increment applied inside the webhook transaction."""
        updated = (
            self.db.query(GuidePerformanceStat)
            .filter(GuidePerformanceStat.guide_id == guide_id)
            .update(
                {
                    GuidePerformanceStat.paid_bookings: GuidePerformanceStat.paid_bookings + 1,
                    GuidePerformanceStat.last_updated: utc_now(),
                },
                synchronize_session=False,
            )
        )
        if not updated:
            self.db.add(GuidePerformanceStat(guide_id=guide_id, paid_bookings=1, last_updated=utc_now()))
            self.db.flush()
