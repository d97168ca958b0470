from __future__ import annotations

from decimal import Decimal
from unittest.mock import Mock, patch

import pytest
from sqlalchemy.exc import OperationalError

from guidepay.core.exceptions import (
    InvalidWebhookSignatureException,
    RepositoryException,
    ValidationException,
    WebhookProcessingException,
)
from guidepay.models.guide import GuidePerformanceStat
from guidepay.models.payment import Commission
from guidepay.repositories.commission_repository import CommissionRepository
from guidepay.services.webhook_service import WebhookService
from tests.helpers.fakes import VALID_SIGNATURE, RecordingJobProducer, provider_event

SUCCEEDED = "payment_intent.succeeded"
FAILED = "payment_intent.payment_failed"


@pytest.fixture
def sleep() -> Mock:
    return Mock()


@pytest.fixture
def webhook_service(db, gateway, job_producer, alert_service, test_settings, sleep) -> WebhookService:
    return WebhookService(
        db,
        gateway=gateway,
        job_producer=job_producer,
        alert_service=alert_service,
        config=test_settings,
        sleep=sleep,
    )


@pytest.fixture
def pending_payment(make_booking, make_payment):
    booking = make_booking(
        total_price="2000.00", payment_status="requires_payment", payment_intent_id="pi_1"
    )
    payment = make_payment(booking, amount="2000.00", provider_intent_id="pi_1")
    return booking, payment


class TestPaymentSucceeded:
    def test_confirms_booking_and_settles_commission(
        self, webhook_service, db, job_producer, pending_payment
    ) -> None:
        booking, payment = pending_payment

        result = webhook_service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        assert result.outcome == "processed"
        assert result.booking_id == booking.id
        db.refresh(booking)
        db.refresh(payment)
        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"
        assert payment.status == "succeeded"
        assert payment.provider_payload["id"] == "pi_1"

        commission = db.query(Commission).filter(Commission.booking_id == booking.id).one()
        assert commission.platform_amount == Decimal("400.00")
        assert commission.guide_amount == Decimal("1600.00")
        assert commission.status == "settled"

        stat = db.get(GuidePerformanceStat, booking.guide_id)
        assert stat.paid_bookings == 1

    def test_side_effects_enqueued_after_commit(self, webhook_service, job_producer, pending_payment) -> None:
        booking, payment = pending_payment

        result = webhook_service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        assert job_producer.names() == [
            "guide-stats",
            "analytics",
            "reconciliation",
            "booking-confirmation",
        ]
        assert f"guide-stats:booking:{booking.id}:paid" in result.enqueued_jobs
        assert f"analytics:payment:{payment.id}:succeeded" in result.enqueued_jobs
        assert f"booking-confirmation:booking:{booking.id}:confirmed" in result.enqueued_jobs

    def test_duplicate_delivery_is_a_no_op(
        self, webhook_service, db, job_producer, pending_payment
    ) -> None:
        booking, _ = pending_payment
        body = provider_event(SUCCEEDED, "pi_1")

        webhook_service.process(body, VALID_SIGNATURE)
        second = webhook_service.process(body, VALID_SIGNATURE)

        assert second.outcome == "skipped"
        assert second.reason == "payment_already_succeeded"
        assert len(job_producer.jobs) == 4
        assert db.query(Commission).count() == 1
        assert db.get(GuidePerformanceStat, booking.guide_id).paid_bookings == 1

    def test_unknown_intent_is_skipped(self, webhook_service, db) -> None:
        result = webhook_service.process(provider_event(SUCCEEDED, "pi_unknown"), VALID_SIGNATURE)

        assert result.outcome == "skipped"
        assert result.reason == "payment_not_found"
        assert db.query(Commission).count() == 0

    def test_cancelled_booking_is_not_resurrected(
        self, webhook_service, db, alert_service, make_booking, make_payment
    ) -> None:
        booking = make_booking(status="cancelled", payment_intent_id="pi_c")
        payment = make_payment(booking, provider_intent_id="pi_c")

        with patch.object(alert_service, "high") as mock_high:
            result = webhook_service.process(provider_event(SUCCEEDED, "pi_c"), VALID_SIGNATURE)

        assert result.reason == "booking_not_pending"
        db.refresh(booking)
        db.refresh(payment)
        assert booking.status == "cancelled"
        assert payment.status == "succeeded"
        assert db.query(Commission).count() == 0
        mock_high.assert_called_once()

    def test_lock_contention_exhausts_retries(
        self, webhook_service, db, alert_service, sleep, pending_payment
    ) -> None:
        lock_timeout = OperationalError("SELECT", {}, Exception("Lock wait timeout exceeded"))

        with patch.object(
            webhook_service, "_apply_success_once", side_effect=lock_timeout
        ) as mock_apply, patch.object(alert_service, "critical") as mock_critical:
            with pytest.raises(WebhookProcessingException) as exc_info:
                webhook_service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        assert exc_info.value.status_code == 500
        assert mock_apply.call_count == 3
        assert sleep.call_count == 2
        mock_critical.assert_called_once()

    def test_non_retryable_failure_alerts_and_rolls_back(
        self, webhook_service, db, alert_service, sleep, pending_payment
    ) -> None:
        booking, payment = pending_payment

        with patch.object(
            CommissionRepository, "upsert_settled", side_effect=RepositoryException("constraint")
        ), patch.object(alert_service, "critical") as mock_critical:
            with pytest.raises(WebhookProcessingException) as exc_info:
                webhook_service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        assert exc_info.value.status_code == 500
        assert isinstance(exc_info.value.__cause__, RepositoryException)
        assert sleep.call_count == 0
        mock_critical.assert_called_once()
        context = mock_critical.call_args.args[1]
        assert context["payment_intent_id"] == "pi_1"
        assert context["attempts"] == 1
        assert context["error_type"] == "RepositoryException"
        db.refresh(booking)
        db.refresh(payment)
        assert booking.status == "pending"
        assert payment.status == "initiated"
        assert db.query(Commission).count() == 0

    def test_broker_outage_does_not_fail_the_webhook(
        self, db, gateway, alert_service, test_settings, pending_payment
    ) -> None:
        service = WebhookService(
            db,
            gateway=gateway,
            job_producer=RecordingJobProducer(fail=True),
            alert_service=alert_service,
            config=test_settings,
        )

        result = service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        assert result.outcome == "processed"
        assert result.enqueued_jobs == []


class TestPaymentFailed:
    def test_marks_payment_failed_and_leaves_booking(
        self, webhook_service, db, job_producer, alert_service, pending_payment
    ) -> None:
        booking, payment = pending_payment
        body = provider_event(FAILED, "pi_1", last_payment_error={"code": "card_declined"})

        with patch.object(alert_service, "warning") as mock_warning:
            result = webhook_service.process(body, VALID_SIGNATURE)

        assert result.outcome == "processed"
        db.refresh(payment)
        db.refresh(booking)
        assert payment.status == "failed"
        assert booking.status == "pending"
        assert job_producer.names() == ["reconciliation"]
        assert mock_warning.call_args.args[1]["failure_code"] == "card_declined"

    def test_late_failure_after_success_is_ignored(self, webhook_service, db, pending_payment) -> None:
        _, payment = pending_payment
        webhook_service.process(provider_event(SUCCEEDED, "pi_1"), VALID_SIGNATURE)

        result = webhook_service.process(
            provider_event(FAILED, "pi_1", event_id="evt_2"), VALID_SIGNATURE
        )

        assert result.reason == "payment_already_succeeded"
        db.refresh(payment)
        assert payment.status == "succeeded"

    def test_repeated_failure_is_skipped(self, webhook_service, pending_payment) -> None:
        body = provider_event(FAILED, "pi_1")
        webhook_service.process(body, VALID_SIGNATURE)

        assert webhook_service.process(body, VALID_SIGNATURE).reason == "payment_already_failed"


class TestVerification:
    def test_bad_signature_touches_nothing(self, webhook_service, db, pending_payment) -> None:
        _, payment = pending_payment

        with pytest.raises(InvalidWebhookSignatureException) as exc_info:
            webhook_service.process(provider_event(SUCCEEDED, "pi_1"), "t=1,v1=forged")

        assert exc_info.value.status_code == 400
        db.refresh(payment)
        assert payment.status == "initiated"

    def test_unhandled_event_type_is_ignored(self, webhook_service) -> None:
        result = webhook_service.process(provider_event("charge.refunded", "ch_1"), VALID_SIGNATURE)

        assert result.outcome == "ignored"
        assert result.event_type == "charge.refunded"

    def test_handled_event_without_intent_is_rejected(self, webhook_service) -> None:
        body = b'{"id": "evt_9", "type": "payment_intent.succeeded", "data": {"object": {}}}'

        with pytest.raises(ValidationException) as exc_info:
            webhook_service.process(body, VALID_SIGNATURE)
        assert exc_info.value.code == "INVALID_WEBHOOK_PAYLOAD"
