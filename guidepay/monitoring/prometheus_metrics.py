"""
Prometheus metrics for the guidepay transactional core.

Service timings come from the @measure_operation decorator; the domain
counters below are bumped directly by the booking, payment, fraud and
reconciliation paths. Everything lives in a private registry so tests and
multiple app instances in one process do not collide with the default one.
"""

from threading import Lock
from time import monotonic
from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "guidepay_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "guidepay_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "guidepay_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_conflicts_total = Counter(
    "guidepay_booking_conflicts_total",
    "Booking attempts rejected because the slot overlapped",
    registry=REGISTRY,
)

payment_intents_total = Counter(
    "guidepay_payment_intents_total",
    "Payment intent requests by outcome",
    ["outcome"],  # created | reused | provider_unavailable | provider_rejected
    registry=REGISTRY,
)

webhook_events_total = Counter(
    "guidepay_webhook_events_total",
    "Provider webhook events by type and outcome",
    ["event_type", "outcome"],  # processed | skipped | failed | ignored
    registry=REGISTRY,
)

fraud_evaluations_total = Counter(
    "guidepay_fraud_evaluations_total",
    "Fraud evaluations by risk level",
    ["risk_level"],
    registry=REGISTRY,
)

reconciliation_findings_total = Counter(
    "guidepay_reconciliation_findings_total",
    "Reconciliation findings by anomaly type and severity",
    ["anomaly_type", "severity"],
    registry=REGISTRY,
)

reconciliation_run_seconds = Histogram(
    "guidepay_reconciliation_run_seconds",
    "Reconciliation run duration in seconds",
    registry=REGISTRY,
    buckets=(0.1, 0.5, 1.0, 5.0, 15.0, 30.0, 60.0, 120.0, 300.0),
)

alerts_total = Counter(
    "guidepay_alerts_total",
    "Operational alerts by severity and delivery status",
    ["severity", "status"],  # sent | suppressed | failed
    registry=REGISTRY,
)

jobs_enqueued_total = Counter(
    "guidepay_jobs_enqueued_total",
    "Background job enqueue attempts by queue and outcome",
    ["queue", "outcome"],  # accepted | deduplicated | failed
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin facade over the module-level collectors with a cached exposition payload."""

    _cache_lock: Lock = Lock()
    _cache_payload: Optional[bytes] = None
    _cache_ts: Optional[float] = None
    _cache_ttl_seconds: float = 1.0

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_booking_conflict() -> None:
        booking_conflicts_total.inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_payment_intent(outcome: str) -> None:
        payment_intents_total.labels(outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_webhook_event(event_type: str, outcome: str) -> None:
        webhook_events_total.labels(event_type=event_type, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_fraud_evaluation(risk_level: str) -> None:
        fraud_evaluations_total.labels(risk_level=risk_level).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_reconciliation_finding(anomaly_type: str, severity: str) -> None:
        reconciliation_findings_total.labels(anomaly_type=anomaly_type, severity=severity).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def observe_reconciliation_run(duration: float) -> None:
        reconciliation_run_seconds.observe(max(duration, 0.0))
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_alert(severity: str, status: str) -> None:
        alerts_total.labels(severity=severity, status=status).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def inc_job_enqueue(queue: str, outcome: str) -> None:
        jobs_enqueued_total.labels(queue=queue, outcome=outcome).inc()
        PrometheusMetrics._invalidate_cache()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        now = monotonic()
        with PrometheusMetrics._cache_lock:
            payload = PrometheusMetrics._cache_payload
            ts = PrometheusMetrics._cache_ts
            if payload is None or ts is None or (now - ts) > PrometheusMetrics._cache_ttl_seconds:
                payload = cast(bytes, generate_latest(REGISTRY))
                PrometheusMetrics._cache_payload = payload
                PrometheusMetrics._cache_ts = now
        return payload

    @staticmethod
    def get_content_type() -> str:
        return cast(str, CONTENT_TYPE_LATEST)

    @staticmethod
    def _invalidate_cache() -> None:
        with PrometheusMetrics._cache_lock:
            PrometheusMetrics._cache_ts = None
            PrometheusMetrics._cache_payload = None


# Singleton instance
prometheus_metrics = PrometheusMetrics()
