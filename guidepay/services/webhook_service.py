# guidepay/services/webhook_service.py
"""
Webhook Service for guidepay

Applies payment provider callbacks to Booking, Payment and Commission
exactly once, however often the provider redelivers them.

Success events take an unlocked fast path first; a payment that is already
succeeded is acknowledged without opening a transaction. Otherwise the
Payment row (by intent id) and then its Booking are locked, and the
mutation is skipped when another delivery got there first. Side effects are
enqueued only after the commit, each under an idempotency key derived from
the booking or payment so duplicate deliveries collapse to one job.
"""

import time
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Tuple, Union

from pydantic import ValidationError
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.enums import BookingStatus, PaymentStatus
from ..core.exceptions import ValidationException, WebhookProcessingException
from ..core.retry import RetryExhausted, RetryPolicy, retry_call
from ..database import is_retryable_db_error
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.payment import (
    PaymentFailedEvent,
    PaymentSucceededEvent,
    ProviderEvent,
    UnhandledProviderEvent,
    WebhookResult,
    parse_provider_event,
)
from .alert_service import AlertService
from .base import BaseService
from .commission_service import CommissionService
from .payment_gateway import PaymentGateway

if TYPE_CHECKING:
    from ..tasks.enqueue import JobProducer


class WebhookService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: PaymentGateway,
        job_producer: "JobProducer",
        alert_service: Optional[AlertService] = None,
        commission_service: Optional[CommissionService] = None,
        config: Optional[Settings] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.job_producer = job_producer
        self.config = config or default_settings
        self.alert_service = alert_service or AlertService(config=self.config)
        self.commission_service = commission_service or CommissionService(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.guide_repository = RepositoryFactory.create_guide_repository(db)
        self.retry_policy = RetryPolicy(
            max_attempts=self.config.webhook_max_attempts,
            backoff="linear",
            base_delay=0.1,
            jitter=0.05,
            retry_if=is_retryable_db_error,
        )
        self._sleep = sleep or time.sleep

    def verify_and_parse(self, payload: Union[bytes, str], signature: Optional[str]) -> ProviderEvent:
        """
        Check the provider signature and decode the event.

        Nothing touches the database before the signature is verified.

        Raises:
            InvalidWebhookSignatureException: signature missing or wrong
            ValidationException: verified body is not a usable event
        """
        raw = self.gateway.construct_event(payload, signature)
        try:
            return parse_provider_event(raw)
        except ValidationError as exc:
            raise ValidationException(
                "Malformed webhook event",
                code="INVALID_WEBHOOK_PAYLOAD",
                details={"event_type": raw.get("type"), "errors": exc.error_count()},
            ) from exc

    def process(self, payload: Union[bytes, str], signature: Optional[str]) -> WebhookResult:
        return self.handle_event(self.verify_and_parse(payload, signature))

    @BaseService.measure_operation("handle_webhook_event")
    def handle_event(self, event: ProviderEvent) -> WebhookResult:
        if isinstance(event, PaymentSucceededEvent):
            result = self._handle_succeeded(event)
        elif isinstance(event, PaymentFailedEvent):
            result = self._handle_failed(event)
        else:
            result = self._ignore(event)
        prometheus_metrics.inc_webhook_event(result.event_type, result.outcome)
        return result

    # Succeeded

    def _handle_succeeded(self, event: PaymentSucceededEvent) -> WebhookResult:
        intent_id = event.intent.id

        existing = self.payment_repository.get_by_provider_intent(intent_id, lock=False)
        already_succeeded = existing is not None and existing.status == PaymentStatus.SUCCEEDED.value
        existing_id = existing.id if existing is not None else None
        # Close the read-only transaction before locking.
        self.db.rollback()
        if already_succeeded:
            return self._skip(event, "payment_already_succeeded", payment_id=existing_id)

        try:
            outcome = retry_call(
                lambda: self._apply_success_once(event),
                policy=self.retry_policy,
                op_name="webhook.payment_succeeded",
                sleep=self._sleep,
            )
        except Exception as exc:
            # Alerts on every unapplied success, retryable or not.
            attempts, error = _failure_details(exc)
            prometheus_metrics.inc_webhook_event(event.type, "failed")
            self.alert_service.critical(
                "Payment webhook could not be applied",
                {
                    "event_id": event.id,
                    "event_type": event.type,
                    "payment_intent_id": intent_id,
                    "attempts": attempts,
                    "error": error,
                    "error_type": type(exc).__name__,
                },
                dedupe_key=f"webhook:{intent_id}",
            )
            raise WebhookProcessingException(
                "Webhook processing failed, provider should redeliver",
                details={"event_id": event.id, "payment_intent_id": intent_id},
            ) from exc

        if outcome["skip_reason"] is not None:
            return self._skip(
                event,
                outcome["skip_reason"],
                payment_id=outcome.get("payment_id"),
                booking_id=outcome.get("booking_id"),
            )

        enqueued = self._enqueue_success_side_effects(outcome)
        self.logger.info(
            "stripe_webhook_payment_succeeded",
            extra={
                "event": "stripe_webhook_payment_succeeded",
                "event_id": event.id,
                "payment_intent_id": intent_id,
                "booking_id": outcome["booking_id"],
                "payment_id": outcome["payment_id"],
            },
        )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            outcome="processed",
            booking_id=outcome["booking_id"],
            payment_id=outcome["payment_id"],
            enqueued_jobs=enqueued,
        )

    def _apply_success_once(self, event: PaymentSucceededEvent) -> Dict[str, Any]:
        intent = event.intent
        with self.transaction():
            payment = self.payment_repository.get_by_provider_intent(intent.id, lock=True)
            if payment is None:
                return {"skip_reason": "payment_not_found"}
            if payment.status == PaymentStatus.SUCCEEDED.value:
                return {"skip_reason": "payment_already_succeeded", "payment_id": payment.id}

            booking_id = payment.booking_id or _metadata_booking_id(intent.metadata)
            booking = self.booking_repository.get_for_update(booking_id) if booking_id else None
            if booking is None:
                return {"skip_reason": "booking_not_found", "payment_id": payment.id}
            if booking.status == BookingStatus.CONFIRMED.value:
                return {
                    "skip_reason": "booking_already_confirmed",
                    "payment_id": payment.id,
                    "booking_id": booking.id,
                }

            payment.status = PaymentStatus.SUCCEEDED.value
            payment.provider_payload = event.payload_snapshot()

            if booking.status != BookingStatus.PENDING.value:
                # Money was taken for a booking that can no longer be confirmed.
                self.payment_repository.flush()
                return {
                    "skip_reason": "booking_not_pending",
                    "payment_id": payment.id,
                    "booking_id": booking.id,
                    "booking_status": booking.status,
                }

            booking.mark_confirmed_paid()
            booking.payment_intent_id = intent.id
            self.booking_repository.flush()
            self.commission_service.settle_for_booking(booking)
            self._bump_guide_counter(booking.guide_id)

            return {
                "skip_reason": None,
                "payment_id": payment.id,
                "booking_id": booking.id,
                "guide_id": booking.guide_id,
                "user_id": booking.user_id,
                "amount": str(payment.amount),
                "currency": payment.currency,
            }

    def _bump_guide_counter(self, guide_id: int) -> None:
        """Denormalized counter; a failure here never fails the webhook."""
        try:
            with self.db.begin_nested():
                self.guide_repository.bump_paid_bookings(guide_id)
        except SQLAlchemyError as exc:
            if is_retryable_db_error(exc):
                raise
            self.logger.warning(
                "guide_performance_counter_skipped",
                extra={
                    "event": "guide_performance_counter_skipped",
                    "guide_id": guide_id,
                    "error": str(exc),
                },
            )

    def _enqueue_success_side_effects(self, outcome: Dict[str, Any]) -> List[str]:
        booking_id = outcome["booking_id"]
        payment_id = outcome["payment_id"]
        results = [
            self.job_producer.enqueue_guide_stats_update(
                outcome["guide_id"], idempotency_key=f"booking:{booking_id}:paid"
            ),
            self.job_producer.enqueue_analytics_event(
                "booking_paid",
                {
                    "booking_id": booking_id,
                    "payment_id": payment_id,
                    "guide_id": outcome["guide_id"],
                    "user_id": outcome["user_id"],
                    "amount": outcome["amount"],
                    "currency": outcome["currency"],
                },
                idempotency_key=f"payment:{payment_id}:succeeded",
            ),
            self.job_producer.enqueue_reconciliation_run("payment_succeeded"),
            self.job_producer.enqueue_booking_confirmation(
                booking_id, idempotency_key=f"booking:{booking_id}:confirmed"
            ),
        ]
        return [r.job_id for r in results if r.accepted and r.job_id]

    # Failed

    def _handle_failed(self, event: PaymentFailedEvent) -> WebhookResult:
        intent = event.intent
        try:
            outcome = retry_call(
                lambda: self._apply_failure_once(event),
                policy=self.retry_policy,
                op_name="webhook.payment_failed",
                sleep=self._sleep,
            )
        except Exception as exc:
            prometheus_metrics.inc_webhook_event(event.type, "failed")
            raise WebhookProcessingException(
                "Webhook processing failed, provider should redeliver",
                details={"event_id": event.id, "payment_intent_id": intent.id},
            ) from exc

        if outcome["skip_reason"] is not None:
            return self._skip(event, outcome["skip_reason"], payment_id=outcome.get("payment_id"))

        enqueued: List[str] = []
        recon = self.job_producer.enqueue_reconciliation_run("payment_failed")
        if recon.accepted and recon.job_id:
            enqueued.append(recon.job_id)

        error = intent.last_payment_error or {}
        self.alert_service.warning(
            "Payment failed",
            {
                "event_id": event.id,
                "payment_intent_id": intent.id,
                "payment_id": outcome["payment_id"],
                "booking_id": outcome["booking_id"],
                "failure_code": error.get("code"),
            },
            dedupe_key=f"payment_failed:{intent.id}",
        )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            outcome="processed",
            booking_id=outcome["booking_id"],
            payment_id=outcome["payment_id"],
            enqueued_jobs=enqueued,
        )

    def _apply_failure_once(self, event: PaymentFailedEvent) -> Dict[str, Any]:
        with self.transaction():
            payment = self.payment_repository.get_by_provider_intent(event.intent.id, lock=True)
            if payment is None:
                return {"skip_reason": "payment_not_found"}
            if payment.status == PaymentStatus.SUCCEEDED.value:
                # Late failure for a retried intent that eventually succeeded.
                return {"skip_reason": "payment_already_succeeded", "payment_id": payment.id}
            if payment.status == PaymentStatus.FAILED.value:
                return {"skip_reason": "payment_already_failed", "payment_id": payment.id}

            payment.status = PaymentStatus.FAILED.value
            payment.provider_payload = event.payload_snapshot()
            self.payment_repository.flush()
            return {"skip_reason": None, "payment_id": payment.id, "booking_id": payment.booking_id}

    # Helpers

    def _ignore(self, event: UnhandledProviderEvent) -> WebhookResult:
        self.logger.debug(f"Ignoring unhandled webhook event type {event.type}")
        return WebhookResult(
            event_id=event.id, event_type=event.type, outcome="ignored", reason="unhandled_event_type"
        )

    def _skip(
        self,
        event: Union[PaymentSucceededEvent, PaymentFailedEvent],
        reason: str,
        *,
        payment_id: Optional[int] = None,
        booking_id: Optional[int] = None,
    ) -> WebhookResult:
        self.logger.info(
            "stripe_webhook_idempotent_skip",
            extra={
                "event": "stripe_webhook_idempotent_skip",
                "event_type": event.type,
                "event_id": event.id,
                "payment_intent_id": event.intent.id,
                "reason": reason,
                "payment_id": payment_id,
                "booking_id": booking_id,
            },
        )
        if reason == "booking_not_pending":
            self.alert_service.high(
                "Payment succeeded for a booking that is not pending",
                {"payment_intent_id": event.intent.id, "payment_id": payment_id, "booking_id": booking_id},
                dedupe_key=f"booking_not_pending:{booking_id}",
            )
        return WebhookResult(
            event_id=event.id,
            event_type=event.type,
            outcome="skipped",
            reason=reason,
            payment_id=payment_id,
            booking_id=booking_id,
        )


def _failure_details(exc: Exception) -> Tuple[int, str]:
    if isinstance(exc, RetryExhausted):
        return exc.attempts, str(exc.last_error)
    return 1, str(exc)


def _metadata_booking_id(metadata: Dict[str, Any]) -> Optional[int]:
    raw = metadata.get("booking_id")
    try:
        return int(raw) if raw is not None else None
    except (TypeError, ValueError):
        return None
