# guidepay/services/booking_service.py
"""
Booking Service for guidepay

Creates bookings without double-selling a guide's time and applies the
administrative status lifecycle.

Creation runs in one transaction that locks the guide row first, then the
overlapping bookings. The guide lock is what serializes two concurrent
requests for an empty slot: neither sees a row to lock in the overlap query,
but only one can hold the guide.
"""

from datetime import timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Optional

from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.enums import BookingPaymentStatus, BookingStatus
from ..core.exceptions import (
    BookingConflictException,
    GuideUnavailableException,
    InvalidStatusTransitionException,
    NotFoundException,
    ServiceException,
    ValidationException,
)
from ..core.retry import RetryExhausted, RetryPolicy, retry_call
from ..core.time_utils import ensure_utc
from ..database import is_retryable_db_error
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.booking import BookingCreate
from ..schemas.fraud import FraudContext
from .base import BaseService
from .pricing_service import PricingService

if TYPE_CHECKING:
    from .fraud_service import FraudService

GENERIC_CONFLICT_MESSAGE = "Selected time slot is not available"


class BookingService(BaseService):
    """Booking creation and lifecycle transitions."""

    def __init__(
        self,
        db: Session,
        pricing_service: Optional[PricingService] = None,
        fraud_service: Optional["FraudService"] = None,
        config: Optional[Settings] = None,
    ):
        super().__init__(db)
        self.config = config or default_settings
        self.pricing_service = pricing_service or PricingService(self.config)
        self.fraud_service = fraud_service
        self.repository = RepositoryFactory.create_booking_repository(db)
        self.guide_repository = RepositoryFactory.create_guide_repository(db)
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.booking_create_max_attempts,
            backoff="exponential",
            base_delay=0.05,
            jitter=0.05,
            retry_if=is_retryable_db_error,
        )

    @BaseService.measure_operation("create_booking")
    def create_booking(self, user_id: int, booking_data: BookingCreate) -> Booking:
        """
        Create a pending, unpaid booking for ``user_id``.

        Raises:
            NotFoundException: guide missing or inactive
            GuideUnavailableException: guide not taking bookings
            BookingConflictException: window overlaps an existing booking
            ServiceException: lock contention persisted across every attempt
        """
        self.log_operation(
            "create_booking",
            user_id=user_id,
            guide_id=booking_data.guide_id,
            start_at=booking_data.start_at.isoformat(),
        )

        try:
            booking = retry_call(
                lambda: self._create_booking_once(user_id, booking_data),
                policy=self.retry_policy,
                op_name="booking.create",
            )
        except RetryExhausted as exc:
            self.logger.error(
                "booking_create_retry_exhausted",
                extra={
                    "event": "booking_create_retry_exhausted",
                    "guide_id": booking_data.guide_id,
                    "attempts": exc.attempts,
                },
            )
            raise ServiceException(
                "Booking could not be created due to contention, please retry",
                code="BOOKING_CREATE_CONTENDED",
                details={"guide_id": booking_data.guide_id},
            ) from exc

        self.logger.info(
            "booking_created",
            extra={
                "event": "booking_created",
                "booking_id": booking.id,
                "guide_id": booking.guide_id,
                "total_price": str(booking.total_price),
            },
        )
        self._score_booking(booking)
        return booking

    def _create_booking_once(self, user_id: int, booking_data: BookingCreate) -> Booking:
        with self.transaction():
            guide = self.guide_repository.lock_for_booking(booking_data.guide_id)
            if guide is None or not guide.is_active:
                raise NotFoundException(
                    "Guide not found", code="GUIDE_NOT_FOUND", details={"guide_id": booking_data.guide_id}
                )
            if not guide.is_available:
                raise GuideUnavailableException(guide.id)

            start_at = ensure_utc(booking_data.start_at)
            duration = Decimal(str(booking_data.duration_hours))
            end_at = start_at + timedelta(hours=float(duration))

            conflicts = self.repository.find_overlapping(guide.id, start_at, end_at, lock=True)
            if conflicts:
                prometheus_metrics.inc_booking_conflict()
                raise BookingConflictException(
                    GENERIC_CONFLICT_MESSAGE,
                    details={
                        "guide_id": guide.id,
                        "start_at": start_at.isoformat(),
                        "end_at": end_at.isoformat(),
                        "conflicting_booking_ids": [b.id for b in conflicts],
                    },
                )

            price = self.pricing_service.calculate(
                guide.base_price, duration, start_at, booking_data.premium_options
            )
            booking = self.repository.create(
                user_id=user_id,
                guide_id=guide.id,
                start_at=start_at,
                end_at=end_at,
                duration_hours=duration,
                total_price=price.total,
                base_amount=price.base_amount,
                peak_amount=price.peak_amount,
                weekend_amount=price.weekend_amount,
                premium_amount=price.premium_amount,
                premium_options=[
                    option.model_dump(mode="json") for option in booking_data.premium_options
                ],
                notes=booking_data.notes,
                status=BookingStatus.PENDING.value,
                payment_status=BookingPaymentStatus.UNPAID.value,
            )
        return booking

    def _score_booking(self, booking: Booking) -> None:
        """Advisory post-commit risk evaluation; never affects the booking."""
        if self.fraud_service is None:
            return
        assessment = self.fraud_service.evaluate_risk(
            FraudContext(
                user_id=booking.user_id,
                booking_id=booking.id,
                booking_amount=float(booking.total_price),
            )
        )
        self.fraud_service.record_fraud_event(assessment)

    @BaseService.measure_operation("transition_status")
    def transition_status(self, booking_id: int, target: str) -> Booking:
        """
        Move a booking along the lifecycle.

        Raises:
            ValidationException: ``target`` is not a booking status
            NotFoundException: booking missing
            InvalidStatusTransitionException: the lifecycle forbids the move
        """
        try:
            target_status = BookingStatus(target).value
        except ValueError:
            raise ValidationException(
                f"Unknown booking status: {target}",
                code="INVALID_BOOKING_STATUS",
                details={"allowed": [s.value for s in BookingStatus]},
            )

        with self.transaction():
            booking = self.repository.get_for_update(booking_id)
            if booking is None:
                raise NotFoundException(
                    "Booking not found", code="BOOKING_NOT_FOUND", details={"booking_id": booking_id}
                )
            current = booking.status
            if not booking.can_transition_to(target_status):
                raise InvalidStatusTransitionException(
                    current, target_status, booking.allowed_transitions()
                )
            booking.status = target_status
            self.repository.flush()

        self.logger.info(
            "booking_status_transitioned",
            extra={
                "event": "booking_status_transitioned",
                "booking_id": booking_id,
                "from": current,
                "to": target_status,
            },
        )
        return booking
