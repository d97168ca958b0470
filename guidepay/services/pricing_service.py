"""Deterministic price breakdown for guide bookings."""

from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
import logging
from typing import Any, Iterable, Optional

import pytz

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import ValidationException
from ..schemas.booking import PriceBreakdown

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def _money(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def _to_decimal(value: Any, field: str) -> Decimal:
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationException(
            f"{field} must be numeric", code="INVALID_PRICE_INPUT", details={field: str(value)}
        )


class PricingService:
    """
    Compute the price of a booking from the guide's hourly rate.

    Peak and weekend surcharges are both computed against the base amount,
    never compounded on each other.
    """

    def __init__(self, config: Optional[Settings] = None) -> None:
        self.config = config or default_settings
        self.tz = pytz.timezone(self.config.business_timezone)

    def calculate(
        self,
        base_price: Any,
        duration_hours: Any,
        start_at: datetime,
        add_ons: Optional[Iterable[Any]] = None,
    ) -> PriceBreakdown:
        rate = _to_decimal(base_price, "base_price")
        hours = _to_decimal(duration_hours, "duration_hours")
        if rate < 0:
            raise ValidationException("base_price cannot be negative", code="INVALID_PRICE_INPUT")
        if hours <= 0 or hours > Decimal(str(self.config.max_booking_hours)):
            raise ValidationException(
                f"duration_hours must be greater than 0 and at most {self.config.max_booking_hours:g}",
                code="INVALID_DURATION",
                details={"duration_hours": str(hours)},
            )
        if start_at.tzinfo is None:
            raise ValidationException("start_at must be timezone-aware", code="INVALID_START_TIME")

        local_start = start_at.astimezone(self.tz)
        is_peak = self.config.peak_hour_start <= local_start.hour <= self.config.peak_hour_end
        is_weekend = local_start.weekday() >= 5

        base_amount = rate * hours
        peak_amount = (
            base_amount * (Decimal(str(self.config.peak_multiplier)) - 1) if is_peak else Decimal("0")
        )
        weekend_amount = (
            base_amount * (Decimal(str(self.config.weekend_multiplier)) - 1)
            if is_weekend
            else Decimal("0")
        )
        premium_amount = sum(
            (_to_decimal(self._add_on_price(option), "add_on.price") for option in add_ons or ()),
            Decimal("0"),
        )
        if premium_amount < 0:
            raise ValidationException("add-on prices cannot be negative", code="INVALID_PRICE_INPUT")

        total = base_amount + peak_amount + weekend_amount + premium_amount
        breakdown = PriceBreakdown(
            base_amount=_money(base_amount),
            peak_amount=_money(peak_amount),
            weekend_amount=_money(weekend_amount),
            premium_amount=_money(premium_amount),
            total=_money(total),
            peak_applied=is_peak,
            weekend_applied=is_weekend,
        )
        logger.debug(
            "price_calculated",
            extra={
                "event": "price_calculated",
                "total": str(breakdown.total),
                "peak": is_peak,
                "weekend": is_weekend,
            },
        )
        return breakdown

    @staticmethod
    def _add_on_price(option: Any) -> Any:
        if isinstance(option, dict):
            return option.get("price", 0)
        return getattr(option, "price", option)
