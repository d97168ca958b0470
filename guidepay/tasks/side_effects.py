# guidepay/tasks/side_effects.py
"""
Side-effect tasks enqueued after money-path commits.

Delivery is at least once (``task_acks_late``), so each task takes an
execution claim keyed by its task id before doing any work. The producer
sets the task id to the job's idempotency key, which makes a redelivered
or re-enqueued job a no-op once it has completed.
"""

from datetime import datetime, timezone
import logging
from typing import Any, Callable, Dict, Optional

from redis.exceptions import RedisError
from sqlalchemy.orm import Session

from ..core.config import settings
from ..database import SessionLocal
from ..models.booking import Booking
from ..models.guide import User
from ..repositories.factory import RepositoryFactory
from ..services.cache_service import CacheService
from ..services.reconciliation_service import ReconciliationService
from .celery_app import BaseTask, celery_app
from .job_claims import JobClaims

logger = logging.getLogger(__name__)

_job_claims: Optional[JobClaims] = None


def get_job_claims() -> JobClaims:
    """Process-wide marker store shared by every task in this worker."""
    global _job_claims
    if _job_claims is None:
        _job_claims = JobClaims()
    return _job_claims


def _run_once(task: Any, body: Callable[[], Dict[str, Any]]) -> Dict[str, Any]:
    job_id = task.request.id
    claims: Optional[JobClaims] = get_job_claims()
    try:
        acquired = claims.begin(job_id)
    except RedisError as exc:
        # Without the marker store the job runs; the work itself is idempotent.
        logger.warning(f"Execution claim unavailable for {job_id}: {exc}")
        claims = None
        acquired = True

    if not acquired:
        logger.info(
            "job_already_executed",
            extra={"event": "job_already_executed", "task_id": job_id, "task_name": task.name},
        )
        return {"status": "skipped", "task_id": job_id}

    try:
        result = body()
    except Exception:
        if claims is not None:
            try:
                claims.abandon(job_id)
            except RedisError as exc:
                logger.warning(f"Could not drop execution lease for {job_id}: {exc}")
        raise

    if claims is not None:
        try:
            claims.complete(job_id, settings.job_dedupe_ttl_seconds)
        except RedisError as exc:
            logger.warning(f"Could not mark {job_id} complete: {exc}")
    return result


@celery_app.task(
    base=BaseTask,
    name="guidepay.tasks.side_effects.refresh_guide_stats",
    bind=True,
)
def refresh_guide_stats(self: Any, guide_id: int) -> Dict[str, Any]:
    """Recompute the denormalized performance row for one guide."""

    def body() -> Dict[str, Any]:
        db: Session = SessionLocal()
        try:
            guide_repository = RepositoryFactory.create_guide_repository(db)
            stats = guide_repository.aggregate_booking_stats(guide_id)
            guide_repository.save_performance_stats(guide_id, **stats)
            db.commit()
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

        logger.info(
            "guide_stats_refreshed",
            extra={
                "event": "guide_stats_refreshed",
                "guide_id": guide_id,
                "total_bookings": stats["total_bookings"],
                "paid_bookings": stats["paid_bookings"],
            },
        )
        return {
            "status": "success",
            "guide_id": guide_id,
            "total_bookings": stats["total_bookings"],
            "paid_bookings": stats["paid_bookings"],
            "avg_booking_value": str(stats["avg_booking_value"]),
        }

    return _run_once(self, body)


@celery_app.task(
    base=BaseTask,
    name="guidepay.tasks.side_effects.record_analytics_event",
    bind=True,
)
def record_analytics_event(self: Any, event_name: str, properties: Dict[str, Any]) -> Dict[str, Any]:
    def body() -> Dict[str, Any]:
        logger.info(
            f"Analytics event {event_name}",
            extra={"event": "analytics_event", "analytics_event": event_name, "properties": properties},
        )
        return {"status": "success", "event_name": event_name}

    return _run_once(self, body)


@celery_app.task(
    base=BaseTask,
    name="guidepay.tasks.side_effects.send_booking_confirmation",
    bind=True,
)
def send_booking_confirmation(self: Any, booking_id: int) -> Dict[str, Any]:
    def body() -> Dict[str, Any]:
        db: Session = SessionLocal()
        try:
            booking = db.get(Booking, booking_id)
            if booking is None:
                logger.warning(f"Booking {booking_id} not found for confirmation")
                return {"status": "skipped", "booking_id": booking_id, "reason": "booking_not_found"}
            user = db.get(User, booking.user_id)
            recipient = user.email if user is not None else None
            total = str(booking.total_price)
        finally:
            db.close()

        logger.info(
            "booking_confirmation_sent",
            extra={
                "event": "booking_confirmation_sent",
                "booking_id": booking_id,
                "recipient": recipient,
                "total_price": total,
            },
        )
        return {"status": "success", "booking_id": booking_id, "recipient": recipient}

    return _run_once(self, body)


@celery_app.task(
    base=BaseTask,
    name="guidepay.tasks.side_effects.run_payment_reconciliation",
    bind=True,
    soft_time_limit=1800,
    time_limit=2100,
)
def run_payment_reconciliation(
    self: Any, trigger: str = "system", lookback_hours: Optional[int] = None
) -> Dict[str, Any]:
    """Run one reconciliation pass; the task id doubles as the run id."""

    def body() -> Dict[str, Any]:
        from ..services.payment_gateway import StripePaymentGateway

        gateway = StripePaymentGateway() if settings.stripe_configured else None
        db: Session = SessionLocal()
        try:
            service = ReconciliationService(db, gateway=gateway, cache=CacheService())
            run_id = str(self.request.id)[:64]
            checkpoint = service.get_checkpoint(run_id) or {}
            result = service.run(
                run_id=run_id,
                lookback_hours=lookback_hours,
                start_after_id=int(checkpoint.get("last_payment_id") or 0),
            )
        finally:
            db.close()

        logger.info(
            "reconciliation_job_processed",
            extra={
                "event": "reconciliation_job_processed",
                "trigger": trigger,
                "run_id": result.run_id,
                "anomaly_count": result.anomaly_count,
            },
        )
        return {
            **result.model_dump(),
            "trigger": trigger,
            "completed_at": datetime.now(timezone.utc).isoformat(),
        }

    return _run_once(self, body)
