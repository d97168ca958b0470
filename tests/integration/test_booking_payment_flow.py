"""End-to-end money path on SQLite: book, pay, confirm, reconcile."""

from __future__ import annotations

from decimal import Decimal

import pytest

from guidepay.core.exceptions import BookingAlreadyPaidException
from guidepay.models.guide import GuidePerformanceStat
from guidepay.models.payment import Commission, Payment
from guidepay.schemas.booking import BookingCreate
from guidepay.services.booking_service import BookingService
from guidepay.services.fraud_service import FraudService
from guidepay.services.payment_intent_service import PaymentIntentService
from guidepay.services.reconciliation_service import ReconciliationService
from guidepay.services.webhook_service import WebhookService
from tests.helpers.fakes import OFF_PEAK_WEEKDAY, VALID_SIGNATURE, provider_event

pytestmark = pytest.mark.integration


@pytest.fixture
def services(db, gateway, job_producer, alert_service, cache, test_settings):
    fraud = FraudService(db, cache=cache, alert_service=alert_service, config=test_settings)
    return {
        "booking": BookingService(db, fraud_service=fraud, config=test_settings),
        "intent": PaymentIntentService(db, gateway, config=test_settings),
        "webhook": WebhookService(
            db,
            gateway=gateway,
            job_producer=job_producer,
            alert_service=alert_service,
            config=test_settings,
            sleep=lambda _: None,
        ),
        "recon": ReconciliationService(
            db, gateway=gateway, alert_service=alert_service, cache=cache, config=test_settings
        ),
    }


class TestBookingPaymentFlow:
    def test_happy_path_leaves_a_clean_ledger(
        self, services, db, gateway, job_producer, user, guide
    ) -> None:
        booking = services["booking"].create_booking(
            user.id,
            BookingCreate(guide_id=guide.id, start_at=OFF_PEAK_WEEKDAY, duration_hours=Decimal("2")),
        )
        assert booking.total_price == Decimal("2000.00")

        first = services["intent"].create_or_reuse_payment_intent(booking.id)
        retried = services["intent"].create_or_reuse_payment_intent(booking.id)
        assert first.reused is False
        assert retried.reused is True
        assert retried.intent_id == first.intent_id
        assert db.query(Payment).count() == 1

        gateway.set_intent(first.intent_id, status="succeeded", amount=200000)
        result = services["webhook"].process(
            provider_event(
                "payment_intent.succeeded",
                first.intent_id,
                metadata={"booking_id": str(booking.id)},
            ),
            VALID_SIGNATURE,
        )
        assert result.outcome == "processed"

        db.refresh(booking)
        assert booking.status == "confirmed"
        assert booking.payment_status == "paid"
        commission = db.query(Commission).filter(Commission.booking_id == booking.id).one()
        assert commission.platform_amount == Decimal("400.00")
        assert commission.platform_amount + commission.guide_amount == booking.total_price
        assert db.get(GuidePerformanceStat, guide.id).paid_bookings == 1
        assert "booking-confirmation" in job_producer.names()

        report = services["recon"].run(run_id="flow-run")
        assert report.processed_rows == 1
        assert report.stripe_checks == 1
        assert report.anomaly_count == 0

    def test_paid_booking_cannot_get_a_new_intent(self, services, gateway, user, guide) -> None:
        booking = services["booking"].create_booking(
            user.id,
            BookingCreate(guide_id=guide.id, start_at=OFF_PEAK_WEEKDAY, duration_hours=Decimal("2")),
        )
        intent = services["intent"].create_or_reuse_payment_intent(booking.id)
        services["webhook"].process(
            provider_event("payment_intent.succeeded", intent.intent_id), VALID_SIGNATURE
        )

        with pytest.raises(BookingAlreadyPaidException):
            services["intent"].create_or_reuse_payment_intent(booking.id)

        assert len(gateway.create_calls) == 1

    def test_failed_then_reconciled(self, services, db, job_producer, user, guide) -> None:
        booking = services["booking"].create_booking(
            user.id,
            BookingCreate(guide_id=guide.id, start_at=OFF_PEAK_WEEKDAY, duration_hours=Decimal("2")),
        )
        intent = services["intent"].create_or_reuse_payment_intent(booking.id)

        services["webhook"].process(
            provider_event(
                "payment_intent.payment_failed",
                intent.intent_id,
                last_payment_error={"code": "card_declined"},
            ),
            VALID_SIGNATURE,
        )

        db.refresh(booking)
        assert booking.status == "pending"
        assert job_producer.names() == ["reconciliation"]

        report = services["recon"].run(run_id="after-failure")
        assert report.anomaly_count == 0

        retried = services["intent"].create_or_reuse_payment_intent(booking.id)
        assert retried.intent_id == intent.intent_id
        assert retried.payment_id == intent.payment_id
        assert db.query(Payment).filter(Payment.booking_id == booking.id).count() == 1

        report = services["recon"].run(run_id="after-retry")
        assert report.anomaly_count == 0
        assert "duplicate_intent" not in report.findings_by_type
