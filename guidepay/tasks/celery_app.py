# guidepay/tasks/celery_app.py
"""
Celery application configuration for guidepay.

Redis is both broker and result backend. Side-effect tasks are routed to
four named queues so each can be scaled and throttled on its own.
"""

import logging
import os
from typing import Any

from celery import Celery, Task
from celery.signals import setup_logging, worker_process_init

from guidepay.core.config import settings

QUEUE_GUIDE_PERFORMANCE = "guide_performance"
QUEUE_ANALYTICS = "analytics"
QUEUE_RECONCILIATION = "reconciliation"
QUEUE_NOTIFICATIONS = "notifications"


def create_celery_app() -> Celery:
    """
    Create and configure the Celery application.

    Returns:
        Celery: Configured Celery application instance
    """
    broker_url = os.getenv("CELERY_BROKER_URL") or settings.redis_url or "redis://localhost:6379/0"
    result_backend = os.getenv("CELERY_RESULT_BACKEND") or broker_url

    celery_app = Celery("guidepay", broker=broker_url, backend=result_backend)

    celery_app.conf.update(
        {
            "task_serializer": "json",
            "accept_content": ["json"],
            "result_serializer": "json",
            "timezone": "UTC",
            "enable_utc": True,
            "result_expires": 3600,
            "worker_prefetch_multiplier": 1,
            "worker_max_tasks_per_child": 1000,
            "task_soft_time_limit": 240,
            "task_time_limit": 300,
            # Redelivered on worker loss; tasks guard themselves with an execution claim.
            "task_acks_late": True,
            "task_reject_on_worker_lost": True,
            "task_default_retry_delay": 30,
            "worker_hijack_root_logger": False,
            "broker_connection_retry_on_startup": True,
            "broker_transport_options": {"visibility_timeout": 3600},
            "task_default_queue": QUEUE_ANALYTICS,
        }
    )

    celery_app.conf.imports = ("guidepay.tasks.side_effects",)

    celery_app.conf.task_routes = {
        "guidepay.tasks.side_effects.refresh_guide_stats": {"queue": QUEUE_GUIDE_PERFORMANCE},
        "guidepay.tasks.side_effects.record_analytics_event": {"queue": QUEUE_ANALYTICS},
        "guidepay.tasks.side_effects.run_payment_reconciliation": {"queue": QUEUE_RECONCILIATION},
        "guidepay.tasks.side_effects.send_booking_confirmation": {"queue": QUEUE_NOTIFICATIONS},
    }

    from guidepay.tasks.beat_schedule import get_beat_schedule

    celery_app.conf.beat_schedule = get_beat_schedule(settings.environment)

    return celery_app


# Disable Celery's default logging configuration
@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    logging.basicConfig(
        level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    )


@worker_process_init.connect  # type: ignore[misc]
def init_worker_monitoring(*args: Any, **kwargs: Any) -> None:
    from guidepay.monitoring.sentry import init_sentry

    init_sentry(with_celery=True)


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Base task with automatic retry and failure logging."""

    autoretry_for = (Exception,)
    retry_kwargs = {"max_retries": 4}
    retry_backoff = 2
    retry_backoff_max = 600
    retry_jitter = True

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"Task {self.name}[{task_id}] failed with exception: {exc}",
            extra={"event": "job_failed", "task_id": task_id, "task_name": self.name},
        )

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).warning(
            f"Task {self.name}[{task_id}] retrying: {exc}",
            extra={"event": "job_retry", "task_id": task_id, "task_name": self.name},
        )
