"""
Payment and commission models.

A Payment row mirrors one provider payment intent for a booking. Commission
holds the platform/guide split and is unique per booking.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy import (
    JSON,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column

from guidepay.core.enums import ACTIVE_PAYMENT_STATUSES, CommissionStatus, PaymentStatus
from guidepay.database import Base


class Payment(Base):
    __tablename__ = "payments"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    # Not a hard FK: reconciliation must be able to see payments whose booking is gone.
    booking_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    user_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)
    guide_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    provider_intent_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False, comment="Major units")
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="thb")
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentStatus.INITIATED.value
    )
    provider_payload: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False, index=True
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('initiated', 'processing', 'succeeded', 'failed', 'cancelled')",
            name="ck_payments_status",
        ),
        Index("ix_payments_booking_status", "booking_id", "status"),
    )

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_PAYMENT_STATUSES

    @property
    def amount_minor(self) -> int:
        return int((Decimal(self.amount) * 100).quantize(Decimal("1")))

    def __repr__(self) -> str:
        return f"<Payment(booking_id={self.booking_id}, amount={self.amount}, status={self.status})>"


class Commission(Base):
    __tablename__ = "commissions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    booking_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("bookings.id"), unique=True, nullable=False
    )
    guide_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    gross_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_rate: Mapped[Decimal] = mapped_column(Numeric(5, 4), nullable=False)
    platform_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    guide_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=CommissionStatus.PENDING.value
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), onupdate=func.now()
    )

    __table_args__ = (
        CheckConstraint("status IN ('pending', 'settled')", name="ck_commissions_status"),
    )

    def __repr__(self) -> str:
        return (
            f"<Commission(booking_id={self.booking_id}, platform={self.platform_amount}, "
            f"guide={self.guide_amount}, status={self.status})>"
        )
