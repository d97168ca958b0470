"""Platform/guide revenue split."""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..core.config import settings
from ..models.booking import Booking
from ..models.payment import Commission
from ..repositories.factory import RepositoryFactory
from .base import BaseService

CENT = Decimal("0.01")
MAX_PLATFORM_RATE = Decimal("0.95")


@dataclass(frozen=True)
class CommissionSplit:
    gross_amount: Decimal
    platform_rate: Decimal
    platform_amount: Decimal
    guide_amount: Decimal


def calculate_commission(booking_total: Any, rate: Optional[Any] = None) -> CommissionSplit:
    """
    Split ``booking_total`` between platform and guide.

    The rate is clamped to [0, 0.95]; the platform share is rounded to cents
    and the guide receives the exact remainder, so the two always sum to the
    gross amount.
    """
    raw_rate = Decimal(str(settings.default_commission_rate if rate is None else rate))
    platform_rate = min(MAX_PLATFORM_RATE, max(Decimal("0"), raw_rate))
    gross = max(Decimal("0"), Decimal(str(booking_total or 0))).quantize(CENT, rounding=ROUND_HALF_UP)
    platform_amount = (gross * platform_rate).quantize(CENT, rounding=ROUND_HALF_UP)
    return CommissionSplit(
        gross_amount=gross,
        platform_rate=platform_rate,
        platform_amount=platform_amount,
        guide_amount=gross - platform_amount,
    )


class CommissionService(BaseService):
    def __init__(self, db: Session):
        super().__init__(db)
        self.commission_repository = RepositoryFactory.create_commission_repository(db)

    def settle_for_booking(self, booking: Booking, rate: Optional[Any] = None) -> Commission:
        """
        Upsert the settled commission for ``booking``.

        Runs inside the caller's transaction; does not commit.
        """
        split = calculate_commission(booking.total_price, rate)
        commission = self.commission_repository.upsert_settled(
            booking_id=booking.id,
            guide_id=booking.guide_id,
            gross_amount=split.gross_amount,
            platform_rate=split.platform_rate,
            platform_amount=split.platform_amount,
            guide_amount=split.guide_amount,
        )
        self.logger.info(
            "commission_settled",
            extra={
                "event": "commission_settled",
                "booking_id": booking.id,
                "platform_amount": str(split.platform_amount),
                "guide_amount": str(split.guide_amount),
            },
        )
        return commission
