# guidepay/models/booking.py
"""
Booking model.

A booking reserves a guide for a contiguous window starting at ``start_at``.
``end_at`` is stored alongside the duration so overlap checks are a plain
range comparison that the database can index.
"""

from datetime import datetime
from decimal import Decimal
import logging
from typing import Any, List, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from guidepay.core.enums import (
    ALLOWED_BOOKING_TRANSITIONS,
    BookingPaymentStatus,
    BookingStatus,
)
from guidepay.database import Base

logger = logging.getLogger(__name__)


class Booking(Base):
    __tablename__ = "bookings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    guide_id: Mapped[int] = mapped_column(Integer, ForeignKey("guides.id"), nullable=False)

    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    duration_hours: Mapped[Decimal] = mapped_column(Numeric(5, 2), nullable=False)

    # Price snapshot
    total_price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    base_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    peak_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    weekend_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    premium_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, default=0)
    premium_options: Mapped[Optional[List[Any]]] = mapped_column(JSON, nullable=True)

    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BookingStatus.PENDING.value, index=True
    )
    payment_status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BookingPaymentStatus.UNPAID.value
    )
    payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, comment="Current provider payment intent"
    )
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'confirmed', 'completed', 'cancelled')",
            name="ck_bookings_status",
        ),
        CheckConstraint(
            "payment_status IN ('unpaid', 'requires_payment', 'paid', 'failed')",
            name="ck_bookings_payment_status",
        ),
        CheckConstraint("duration_hours > 0", name="check_duration_positive"),
        CheckConstraint("total_price >= 0", name="check_price_non_negative"),
        CheckConstraint("end_at > start_at", name="check_time_order"),
        Index("ix_bookings_guide_window", "guide_id", "start_at", "end_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<Booking {self.id}: user={self.user_id}, guide={self.guide_id}, "
            f"start={self.start_at}, hours={self.duration_hours}, status={self.status}>"
        )

    def allowed_transitions(self) -> List[str]:
        return sorted(ALLOWED_BOOKING_TRANSITIONS.get(self.status, frozenset()))

    def can_transition_to(self, target: str) -> bool:
        return target in ALLOWED_BOOKING_TRANSITIONS.get(self.status, frozenset())

    def mark_confirmed_paid(self) -> None:
        self.status = BookingStatus.CONFIRMED.value
        self.payment_status = BookingPaymentStatus.PAID.value
        logger.info(f"Booking {self.id} confirmed and marked paid")
