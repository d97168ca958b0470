# guidepay/services/reconciliation_service.py
"""
Reconciliation Service for guidepay

Report-only audit of the payment ledger. A run walks Payment rows (left
joined to their Booking) in ascending id order within a lookback window,
classifies each row against a fixed rule set, optionally cross-checks a
bounded number of rows against the provider, then runs three grouped
queries: duplicate intents, paid bookings without a successful payment,
and bookings whose intent id has no Payment row.

Findings are upserted under (run_id, anomaly_type, entity), so re-running a
run id, or resuming it from a checkpoint, never duplicates a finding. The
run never writes to bookings, payments or commissions.
"""

from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal
import time
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from ..constants.payment_status import is_success_status
from ..core.config import Settings, settings as default_settings
from ..core.enums import (
    AnomalyType,
    BookingPaymentStatus,
    BookingStatus,
    PaymentStatus,
    Severity,
)
from ..core.exceptions import (
    PaymentProviderRejectedException,
    PaymentProviderUnavailableException,
    ServiceException,
)
from ..core.time_utils import utc_now
from ..core.ulid_helper import generate_ulid
from ..models.booking import Booking
from ..models.payment import Payment
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.reconciliation import ReconciliationRunResult
from .alert_service import AlertService
from .base import BaseService
from .cache_service import CacheService
from .payment_gateway import PaymentGateway

CHECKPOINT_CACHE_PREFIX = "recon:checkpoint"
CHECKPOINT_TTL_SECONDS = 7 * 24 * 3600
GAP_QUERY_LIMIT = 5000

_CRITICAL_TYPES = {AnomalyType.AMOUNT_MISMATCH.value, AnomalyType.DUPLICATE_INTENT.value}
_HIGH_TYPES = {
    AnomalyType.ORPHAN_PAYMENT.value,
    AnomalyType.STATUS_MISMATCH.value,
    AnomalyType.BOOKING_WITHOUT_SUCCESSFUL_PAYMENT.value,
}
_CONFIRMED_STATUSES = {BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value}


@dataclass
class Finding:
    anomaly_type: str
    booking_id: Optional[int] = None
    payment_id: Optional[int] = None
    provider_intent_id: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def severity(self) -> str:
        return classify_anomaly(self.anomaly_type)


def classify_anomaly(anomaly_type: str) -> str:
    if anomaly_type in _CRITICAL_TYPES:
        return Severity.CRITICAL.value
    if anomaly_type in _HIGH_TYPES:
        return Severity.HIGH.value
    return Severity.LOW.value


def check_payment_consistency(
    payment: Payment, booking: Optional[Booking], epsilon: Decimal = Decimal("0.01")
) -> List[Finding]:
    """Rule checks for one payment row and its booking, if any."""
    if booking is None:
        return [
            Finding(
                AnomalyType.ORPHAN_PAYMENT.value,
                payment_id=payment.id,
                provider_intent_id=payment.provider_intent_id,
                details={"reason": "payment references missing booking", "payment_status": payment.status},
            )
        ]

    findings: List[Finding] = []
    payment_amount = Decimal(payment.amount)
    booking_amount = Decimal(booking.total_price)
    if booking_amount > 0:
        delta = abs(payment_amount - booking_amount)
        if delta > epsilon:
            findings.append(
                Finding(
                    AnomalyType.AMOUNT_MISMATCH.value,
                    booking_id=booking.id,
                    payment_id=payment.id,
                    provider_intent_id=payment.provider_intent_id,
                    details={
                        "payment_amount": str(payment_amount),
                        "booking_amount": str(booking_amount),
                        "delta": str(delta),
                    },
                )
            )

    succeeded = payment.status == PaymentStatus.SUCCEEDED.value
    booking_paid = booking.payment_status == BookingPaymentStatus.PAID.value
    status_details = {
        "payment_status": payment.status,
        "booking_status": booking.status,
        "booking_payment_status": booking.payment_status,
    }
    if succeeded and (not booking_paid or booking.status not in _CONFIRMED_STATUSES):
        findings.append(
            Finding(
                AnomalyType.STATUS_MISMATCH.value,
                booking_id=booking.id,
                payment_id=payment.id,
                provider_intent_id=payment.provider_intent_id,
                details={"reason": "payment succeeded but booking not confirmed and paid", **status_details},
            )
        )
    if not succeeded and booking_paid:
        findings.append(
            Finding(
                AnomalyType.BOOKING_WITHOUT_SUCCESSFUL_PAYMENT.value,
                booking_id=booking.id,
                payment_id=payment.id,
                provider_intent_id=payment.provider_intent_id,
                details={"reason": "booking marked paid but payment not successful", **status_details},
            )
        )
    return findings


class ReconciliationService(BaseService):
    def __init__(
        self,
        db: Session,
        gateway: Optional[PaymentGateway] = None,
        alert_service: Optional[AlertService] = None,
        cache: Optional[CacheService] = None,
        config: Optional[Settings] = None,
        sleep: Optional[Callable[[float], None]] = None,
    ):
        super().__init__(db, cache)
        self.gateway = gateway
        self.config = config or default_settings
        self.alert_service = alert_service or AlertService(config=self.config)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.reconciliation_repository = RepositoryFactory.create_reconciliation_repository(db)
        self._sleep = sleep or time.sleep

    @BaseService.measure_operation("reconciliation_run")
    def run(
        self,
        run_id: Optional[str] = None,
        lookback_hours: Optional[int] = None,
        batch_size: Optional[int] = None,
        start_after_id: int = 0,
    ) -> ReconciliationRunResult:
        """
        Audit the window and persist findings.

        ``start_after_id`` resumes a run after the last checkpointed payment id.
        """
        run_id = run_id or generate_ulid()
        lookback = max(1, int(lookback_hours or self.config.recon_lookback_hours))
        size = max(20, min(1000, int(batch_size or self.config.recon_batch_size)))
        since = utc_now() - timedelta(hours=lookback)
        epsilon = Decimal(str(self.config.recon_amount_epsilon))
        verify = self.config.recon_verify_enabled and self.gateway is not None

        started = time.monotonic()
        last_id = int(start_after_id or 0)
        processed = 0
        provider_checks = 0
        by_type: Dict[str, int] = {}

        self.logger.info(
            "reconciliation_run_started",
            extra={
                "event": "reconciliation_run_started",
                "run_id": run_id,
                "batch_size": size,
                "lookback_hours": lookback,
                "start_after_id": last_id,
                "provider_verification": verify,
            },
        )

        while True:
            rows = self.payment_repository.fetch_reconciliation_batch(since, last_id, size)
            if not rows:
                break

            findings: List[Finding] = []
            for payment, booking in rows:
                processed += 1
                last_id = payment.id
                findings.extend(check_payment_consistency(payment, booking, epsilon))
                if verify and provider_checks < self.config.recon_verify_limit_per_run:
                    if payment.provider_intent_id:
                        provider_checks += 1
                        findings.extend(self._verify_with_provider(payment, booking))

            self._persist(run_id, findings, by_type)
            self._checkpoint(run_id, last_id, processed)

        self._persist(run_id, self._duplicate_intent_findings(since), by_type)
        self._persist(run_id, self._paid_without_success_findings(run_id, since), by_type)
        self._persist(run_id, self._missing_payment_findings(since), by_type)

        duration = time.monotonic() - started
        prometheus_metrics.observe_reconciliation_run(duration)
        result = ReconciliationRunResult(
            run_id=run_id,
            processed_rows=processed,
            anomaly_count=sum(by_type.values()),
            stripe_checks=provider_checks,
            duration_ms=int(duration * 1000),
            last_payment_id=last_id,
            findings_by_type=by_type,
        )
        self.logger.info(
            "reconciliation_run_completed",
            extra={"event": "reconciliation_run_completed", **result.model_dump()},
        )
        return result

    def get_checkpoint(self, run_id: str) -> Optional[Dict[str, Any]]:
        if self.cache is None:
            return None
        return self.cache.get(f"{CHECKPOINT_CACHE_PREFIX}:{run_id}")

    # Provider cross-check

    def _verify_with_provider(self, payment: Payment, booking: Optional[Booking]) -> List[Finding]:
        if self.gateway is None:
            raise ServiceException(
                "Provider verification requires a payment gateway",
                code="RECONCILIATION_GATEWAY_MISSING",
            )
        try:
            intent = self.gateway.retrieve_intent(payment.provider_intent_id)
        except (PaymentProviderUnavailableException, PaymentProviderRejectedException) as exc:
            self.logger.warning(
                "reconciliation_provider_verify_failed",
                extra={
                    "event": "reconciliation_provider_verify_failed",
                    "payment_id": payment.id,
                    "payment_intent_id": payment.provider_intent_id,
                    "error_code": exc.code,
                },
            )
            return []
        finally:
            pause_ms = self.config.recon_verify_pause_ms
            if pause_ms > 0:
                self._sleep(pause_ms / 1000.0)

        findings: List[Finding] = []
        booking_id = booking.id if booking is not None else None
        local_succeeded = payment.status == PaymentStatus.SUCCEEDED.value
        provider_succeeded = is_success_status(intent.status)
        if local_succeeded != provider_succeeded:
            findings.append(
                Finding(
                    AnomalyType.STATUS_MISMATCH.value,
                    booking_id=booking_id,
                    payment_id=payment.id,
                    provider_intent_id=payment.provider_intent_id,
                    details={
                        "reason": "provider/ledger payment status mismatch",
                        "ledger_status": payment.status,
                        "provider_status": intent.status,
                    },
                )
            )
        if abs(payment.amount_minor - int(intent.amount)) > 1:
            findings.append(
                Finding(
                    AnomalyType.AMOUNT_MISMATCH.value,
                    booking_id=booking_id,
                    payment_id=payment.id,
                    provider_intent_id=payment.provider_intent_id,
                    details={
                        "reason": "provider/ledger amount mismatch",
                        "ledger_amount_minor": payment.amount_minor,
                        "provider_amount_minor": int(intent.amount),
                    },
                )
            )
        return findings

    # Grouped queries

    def _duplicate_intent_findings(self, since: Any) -> List[Finding]:
        return [
            Finding(
                AnomalyType.DUPLICATE_INTENT.value,
                provider_intent_id=group.provider_intent_id,
                details={
                    "reason": "multiple payment rows share one provider intent",
                    "duplicate_count": group.duplicate_count,
                    "min_payment_id": group.min_payment_id,
                    "max_payment_id": group.max_payment_id,
                },
            )
            for group in self.payment_repository.find_duplicate_intents(since)
        ]

    def _paid_without_success_findings(self, run_id: str, since: Any) -> List[Finding]:
        # Bookings the row scan already flagged keep their payment-scoped finding only.
        reported = self.reconciliation_repository.payment_scoped_booking_ids(
            run_id, AnomalyType.BOOKING_WITHOUT_SUCCESSFUL_PAYMENT.value
        )
        return [
            Finding(
                AnomalyType.BOOKING_WITHOUT_SUCCESSFUL_PAYMENT.value,
                booking_id=booking.id,
                provider_intent_id=booking.payment_intent_id,
                details={
                    "reason": "booking marked paid but no successful payment row found",
                    "booking_status": booking.status,
                    "booking_amount": str(booking.total_price),
                },
            )
            for booking in self.booking_repository.find_paid_without_successful_payment(
                since, limit=GAP_QUERY_LIMIT
            )
            if booking.id not in reported
        ]

    def _missing_payment_findings(self, since: Any) -> List[Finding]:
        return [
            Finding(
                AnomalyType.MISSING_PAYMENT_RECORD.value,
                booking_id=booking.id,
                provider_intent_id=booking.payment_intent_id,
                details={
                    "reason": "booking references an intent with no payment row",
                    "booking_status": booking.status,
                    "booking_payment_status": booking.payment_status,
                },
            )
            for booking in self.booking_repository.find_intent_without_payment(
                since, limit=GAP_QUERY_LIMIT
            )
        ]

    # Persistence

    def _persist(self, run_id: str, findings: List[Finding], by_type: Dict[str, int]) -> None:
        with self.transaction():
            for finding in findings:
                self.reconciliation_repository.upsert_finding(
                    run_id=run_id,
                    anomaly_type=finding.anomaly_type,
                    severity=finding.severity,
                    booking_id=finding.booking_id,
                    payment_id=finding.payment_id,
                    provider_intent_id=finding.provider_intent_id,
                    details=finding.details,
                )

        for finding in findings:
            severity = finding.severity
            by_type[finding.anomaly_type] = by_type.get(finding.anomaly_type, 0) + 1
            prometheus_metrics.inc_reconciliation_finding(finding.anomaly_type, severity)
            self.logger.info(
                "reconciliation_finding_recorded",
                extra={
                    "event": "reconciliation_finding_recorded",
                    "run_id": run_id,
                    "anomaly_type": finding.anomaly_type,
                    "severity": severity,
                    "booking_id": finding.booking_id,
                    "payment_id": finding.payment_id,
                },
            )
            if severity in (Severity.CRITICAL.value, Severity.HIGH.value):
                self.alert_service.send(
                    severity,
                    f"Reconciliation anomaly: {finding.anomaly_type}",
                    {
                        "run_id": run_id,
                        "anomaly_type": finding.anomaly_type,
                        "booking_id": finding.booking_id,
                        "payment_id": finding.payment_id,
                        "payment_intent_id": finding.provider_intent_id,
                        "reason": finding.details.get("reason"),
                    },
                    dedupe_key=f"recon:{finding.anomaly_type}",
                )

    def _checkpoint(self, run_id: str, last_payment_id: int, processed: int) -> None:
        if self.cache is None:
            return
        self.cache.set(
            f"{CHECKPOINT_CACHE_PREFIX}:{run_id}",
            {"last_payment_id": last_payment_id, "processed_rows": processed},
            ttl=CHECKPOINT_TTL_SECONDS,
        )
