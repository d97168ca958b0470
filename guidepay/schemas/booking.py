"""
Booking request and response schemas.
"""

from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import ConfigDict, Field, field_validator

from ._strict_base import StrictModel, StrictRequestModel


class PremiumOption(StrictRequestModel):
    """Paid add-on attached to a booking (transport, photography, ...)."""

    code: str = Field(..., min_length=1, max_length=64)
    price: Decimal = Field(..., ge=0, decimal_places=2)


class BookingCreate(StrictRequestModel):
    guide_id: int = Field(..., gt=0)
    start_at: datetime = Field(..., description="Start of the booked window (timezone-aware)")
    duration_hours: Decimal = Field(..., gt=0, le=12, description="Booked hours, at most 12")
    premium_options: List[PremiumOption] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=1000)

    @field_validator("start_at")
    @classmethod
    def _require_timezone(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            raise ValueError("start_at must include a timezone offset")
        return value


class PriceBreakdown(StrictModel):
    base_amount: Decimal
    peak_amount: Decimal
    weekend_amount: Decimal
    premium_amount: Decimal
    total: Decimal
    peak_applied: bool = False
    weekend_applied: bool = False


class BookingResponse(StrictModel):
    model_config = ConfigDict(extra="forbid", from_attributes=True)

    id: int
    user_id: int
    guide_id: int
    start_at: datetime
    end_at: datetime
    duration_hours: Decimal
    status: str
    payment_status: str
    total_price: Decimal
    payment_intent_id: Optional[str] = None
