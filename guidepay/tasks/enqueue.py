"""
Enqueue-without-await for money-path side effects.

Callers hand a job to Celery and get an ``EnqueueResult`` back; nothing in
here raises, so a broker outage can never change the outcome of the
financial operation that triggered the job.

Every job carries an idempotency key. The producer claims it before
publishing and uses it as the Celery task id, so a redelivered webhook that
enqueues the same job again is reported as deduplicated instead of
publishing a second message.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Dict, Optional

from redis.exceptions import RedisError

from ..core.config import Settings, settings as default_settings
from ..core.time_utils import utc_now
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..schemas.jobs import EnqueueResult
from .celery_app import (
    QUEUE_ANALYTICS,
    QUEUE_GUIDE_PERFORMANCE,
    QUEUE_NOTIFICATIONS,
    QUEUE_RECONCILIATION,
)
from .job_claims import JobClaims

if TYPE_CHECKING:
    from celery import Celery

logger = logging.getLogger(__name__)

TASK_REFRESH_GUIDE_STATS = "guidepay.tasks.side_effects.refresh_guide_stats"
TASK_RECORD_ANALYTICS_EVENT = "guidepay.tasks.side_effects.record_analytics_event"
TASK_RUN_RECONCILIATION = "guidepay.tasks.side_effects.run_payment_reconciliation"
TASK_SEND_BOOKING_CONFIRMATION = "guidepay.tasks.side_effects.send_booking_confirmation"

# Stats refreshes for one guide coalesce over a short window.
GUIDE_STATS_COALESCE_SECONDS = 60


def payload_key(payload: Dict[str, Any]) -> str:
    """Stable short hash of a JSON payload, used when the caller gives no key."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:24]


def reconciliation_bucket(now: Optional[datetime] = None) -> str:
    """Hour bucket used to collapse reconciliation triggers into one run per hour."""
    return (now or utc_now()).strftime("%Y-%m-%dT%H")


class JobProducer:
    def __init__(
        self,
        app: Optional["Celery"] = None,
        claims: Optional[JobClaims] = None,
        config: Optional[Settings] = None,
    ):
        if app is None:
            from .celery_app import celery_app

            app = celery_app
        self.app = app
        self.claims = claims or JobClaims()
        self.config = config or default_settings

    def enqueue(
        self,
        queue: str,
        job_name: str,
        task_name: str,
        payload: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
        dedupe_ttl_seconds: Optional[int] = None,
    ) -> EnqueueResult:
        """
        Publish ``task_name`` with ``payload`` as keyword arguments.

        The job id is ``{job_name}:{idempotency_key}``; without an explicit key
        the payload hash is used.
        """
        job_id = f"{job_name}:{idempotency_key or payload_key(payload)}"
        ttl = dedupe_ttl_seconds or self.config.job_dedupe_ttl_seconds

        try:
            claimed = self.claims.claim(job_id, ttl)
        except RedisError as exc:
            # Worker-side execution claim still collapses duplicates.
            logger.warning(
                "job_claim_unavailable",
                extra={"event": "job_claim_unavailable", "job_id": job_id, "error": str(exc)},
            )
            claimed = True

        if not claimed:
            prometheus_metrics.inc_job_enqueue(queue, "deduplicated")
            logger.info(
                "job_enqueue_deduplicated",
                extra={"event": "job_enqueue_deduplicated", "queue": queue, "job_id": job_id},
            )
            return EnqueueResult(
                accepted=True, queue=queue, job_name=job_name, job_id=job_id, deduplicated=True
            )

        try:
            self.app.tasks[task_name].apply_async(kwargs=payload, task_id=job_id, queue=queue)
        except Exception as exc:
            prometheus_metrics.inc_job_enqueue(queue, "failed")
            logger.error(
                "job_enqueue_failed",
                extra={
                    "event": "job_enqueue_failed",
                    "queue": queue,
                    "job_name": job_name,
                    "job_id": job_id,
                    "error": str(exc),
                },
            )
            self._release_quietly(job_id)
            return EnqueueResult(
                accepted=False, queue=queue, job_name=job_name, job_id=job_id, error=str(exc)
            )

        prometheus_metrics.inc_job_enqueue(queue, "accepted")
        logger.debug(f"Enqueued {job_name} on {queue} as {job_id}")
        return EnqueueResult(accepted=True, queue=queue, job_name=job_name, job_id=job_id)

    def _release_quietly(self, job_id: str) -> None:
        try:
            self.claims.release(job_id)
        except RedisError as exc:
            logger.warning(f"Could not release job claim {job_id}: {exc}")

    def enqueue_guide_stats_update(
        self, guide_id: int, *, idempotency_key: Optional[str] = None
    ) -> EnqueueResult:
        return self.enqueue(
            QUEUE_GUIDE_PERFORMANCE,
            "guide-stats",
            TASK_REFRESH_GUIDE_STATS,
            {"guide_id": guide_id},
            idempotency_key=idempotency_key or f"guide:{guide_id}",
            dedupe_ttl_seconds=None if idempotency_key else GUIDE_STATS_COALESCE_SECONDS,
        )

    def enqueue_analytics_event(
        self,
        event_name: str,
        properties: Dict[str, Any],
        *,
        idempotency_key: Optional[str] = None,
    ) -> EnqueueResult:
        payload = {"event_name": event_name, "properties": properties}
        return self.enqueue(
            QUEUE_ANALYTICS,
            "analytics",
            TASK_RECORD_ANALYTICS_EVENT,
            payload,
            idempotency_key=idempotency_key,
        )

    def enqueue_reconciliation_run(
        self,
        reason: str,
        *,
        lookback_hours: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> EnqueueResult:
        payload = {
            "trigger": reason,
            "lookback_hours": lookback_hours or self.config.recon_lookback_hours,
        }
        return self.enqueue(
            QUEUE_RECONCILIATION,
            "reconciliation",
            TASK_RUN_RECONCILIATION,
            payload,
            idempotency_key=idempotency_key or f"recon:{reconciliation_bucket()}",
        )

    def enqueue_booking_confirmation(
        self, booking_id: int, *, idempotency_key: Optional[str] = None
    ) -> EnqueueResult:
        return self.enqueue(
            QUEUE_NOTIFICATIONS,
            "booking-confirmation",
            TASK_SEND_BOOKING_CONFIRMATION,
            {"booking_id": booking_id},
            idempotency_key=idempotency_key or f"booking:{booking_id}",
        )
