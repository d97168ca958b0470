"""
Guide and user records read by the transactional core.

Listing CRUD lives elsewhere; only the columns the booking, fraud and stats
paths depend on are mapped here.
"""

from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from guidepay.database import Base


class User(Base):
    __tablename__ = "users"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), nullable=False
    )

    def __repr__(self) -> str:
        return f"<User(id={self.id}, email={self.email})>"


class Guide(Base):
    __tablename__ = "guides"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    base_price: Mapped[Decimal] = mapped_column(
        Numeric(10, 2), nullable=False, comment="Hourly rate"
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    is_available: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)

    def __repr__(self) -> str:
        return f"<Guide(id={self.id}, active={self.is_active}, available={self.is_available})>"


class GuidePerformanceStat(Base):
    """Denormalized per-guide counters. Advisory only; rebuilt by the stats job."""

    __tablename__ = "guide_performance_stats"

    guide_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("guides.id", ondelete="CASCADE"), primary_key=True
    )
    total_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    paid_bookings: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    avg_booking_value: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=0, nullable=False)
    last_booked: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    last_updated: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
