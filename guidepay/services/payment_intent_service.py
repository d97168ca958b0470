# guidepay/services/payment_intent_service.py
"""
Payment Intent Service for guidepay

Guarantees a booking has at most one active provider charge intent, no
matter how often the client retries. Two independent defenses:

1. The booking row and its newest active Payment are locked in one
   transaction, so concurrent callers serialize and the second one reuses
   the first one's intent.
2. The provider call carries the idempotency key ``booking:{id}``, so a
   retry after a network timeout gets the same intent back from the
   provider instead of a second charge.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..constants.payment_status import map_provider_status
from ..core.config import Settings, settings as default_settings
from ..core.enums import BookingPaymentStatus, BookingStatus
from ..core.exceptions import (
    BookingAlreadyPaidException,
    ConflictException,
    NotFoundException,
    PaymentProviderRejectedException,
    PaymentProviderUnavailableException,
    ValidationException,
)
from ..models.booking import Booking
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import PaymentIntentResult, ProviderIntent
from .base import BaseService
from .payment_gateway import PaymentGateway


def idempotency_key_for_booking(booking_id: int) -> str:
    return f"booking:{booking_id}"


def to_minor_units(amount: Any) -> int:
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentIntentService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        config: Optional[Settings] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.config = config or default_settings
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)

    @BaseService.measure_operation("create_or_reuse_payment_intent")
    def create_or_reuse_payment_intent(self, booking_id: int) -> PaymentIntentResult:
        """
        Return the booking's active intent, creating it on the first call.

        Raises:
            NotFoundException: booking missing
            BookingAlreadyPaidException: booking already paid
            ConflictException: booking is not pending
            PaymentProviderUnavailableException: provider timeout or outage,
                safe to retry; nothing was persisted
            PaymentProviderRejectedException: provider refused the request
        """
        idempotency_key = idempotency_key_for_booking(booking_id)

        with self.transaction():
            booking = self._lock_payable_booking(booking_id)
            active = self.payment_repository.get_latest_active_for_booking(booking.id, lock=True)

            if active is not None:
                booking.payment_intent_id = active.provider_intent_id
                booking.payment_status = BookingPaymentStatus.REQUIRES_PAYMENT.value
                self.booking_repository.flush()
                payment = active
                reused = True
            else:
                amount = Decimal(booking.total_price)
                amount_minor = to_minor_units(amount)
                if amount_minor <= 0:
                    raise ValidationException(
                        "Booking total must be greater than zero",
                        code="INVALID_PAYMENT_AMOUNT",
                        details={"booking_id": booking_id},
                    )
                currency = self.config.default_currency

                # Provider errors propagate out of the transaction, which rolls
                # back; no Payment row survives a failed create.
                created = self._call_create(booking, amount_minor, currency, idempotency_key)
                payload = created.model_dump(mode="json", exclude={"client_secret"})
                # Same key after a decline returns the same intent; one row per intent.
                payment = self.payment_repository.get_by_provider_intent(created.id, lock=True)
                if payment is not None:
                    self.logger.info(
                        "payment_intent_reactivated",
                        extra={
                            "event": "payment_intent_reactivated",
                            "booking_id": booking.id,
                            "payment_id": payment.id,
                            "payment_intent_id": created.id,
                            "previous_status": payment.status,
                        },
                    )
                    payment.status = map_provider_status(created.status)
                    payment.provider_payload = payload
                    self.payment_repository.flush()
                else:
                    payment = self.payment_repository.create(
                        booking_id=booking.id,
                        user_id=booking.user_id,
                        guide_id=booking.guide_id,
                        provider_intent_id=created.id,
                        amount=amount,
                        currency=currency,
                        status=map_provider_status(created.status),
                        provider_payload=payload,
                    )
                booking.payment_intent_id = created.id
                booking.payment_status = BookingPaymentStatus.REQUIRES_PAYMENT.value
                self.booking_repository.flush()
                reused = False

        if reused:
            # Fetched after commit so the booking lock is not held across the call.
            intent = self.gateway.retrieve_intent(payment.provider_intent_id)
        else:
            intent = created

        prometheus_metrics.inc_payment_intent("reused" if reused else "created")
        event = "payment_intent_reused" if reused else "payment_intent_created"
        self.logger.info(
            event,
            extra={
                "event": event,
                "booking_id": booking_id,
                "payment_id": payment.id,
                "payment_intent_id": intent.id,
                "idempotency_key": idempotency_key,
            },
        )
        return PaymentIntentResult(
            booking_id=booking_id,
            payment_id=payment.id,
            intent_id=intent.id,
            client_secret=intent.client_secret,
            status=payment.status,
            amount=Decimal(payment.amount),
            currency=payment.currency,
            reused=reused,
        )

    def _lock_payable_booking(self, booking_id: int) -> Booking:
        booking = self.booking_repository.get_for_update(booking_id)
        if booking is None:
            raise NotFoundException(
                "Booking not found", code="BOOKING_NOT_FOUND", details={"booking_id": booking_id}
            )
        if booking.payment_status == BookingPaymentStatus.PAID.value:
            raise BookingAlreadyPaidException(booking_id)
        if booking.status != BookingStatus.PENDING.value:
            raise ConflictException(
                "Booking is not awaiting payment",
                code="BOOKING_NOT_PAYABLE",
                details={"booking_id": booking_id, "status": booking.status},
            )
        return booking

    def _call_create(
        self, booking: Booking, amount_minor: int, currency: str, idempotency_key: str
    ) -> ProviderIntent:
        try:
            return self.gateway.create_intent(
                amount_minor=amount_minor,
                currency=currency,
                metadata={
                    "booking_id": str(booking.id),
                    "user_id": str(booking.user_id),
                    "guide_id": str(booking.guide_id),
                },
                idempotency_key=idempotency_key,
            )
        except (PaymentProviderUnavailableException, PaymentProviderRejectedException) as exc:
            prometheus_metrics.inc_payment_intent("provider_error")
            self.logger.error(
                "payment_intent_create_failed",
                extra={
                    "event": "payment_intent_create_failed",
                    "booking_id": booking.id,
                    "idempotency_key": idempotency_key,
                    "error_code": exc.code,
                },
            )
            raise
