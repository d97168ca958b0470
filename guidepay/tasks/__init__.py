"""
Celery tasks package for guidepay.

Importing this package registers every side-effect task with the Celery app.
"""

from guidepay.tasks.celery_app import BaseTask, celery_app
from guidepay.tasks.side_effects import (
    record_analytics_event,
    refresh_guide_stats,
    run_payment_reconciliation,
    send_booking_confirmation,
)

__all__ = [
    "celery_app",
    "BaseTask",
    "record_analytics_event",
    "refresh_guide_stats",
    "run_payment_reconciliation",
    "send_booking_confirmation",
]
