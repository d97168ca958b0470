# guidepay/tasks/beat_schedule.py
"""
Celery Beat schedule for guidepay.
"""

from typing import Any, Dict

from celery.schedules import crontab

CELERYBEAT_SCHEDULE: Dict[str, Dict[str, Any]] = {
    # Hourly ledger audit; the run's idempotency key is the hour bucket.
    "payment-reconciliation-hourly": {
        "task": "guidepay.tasks.side_effects.run_payment_reconciliation",
        "schedule": crontab(minute=5),
        "kwargs": {"trigger": "schedule"},
        "options": {"queue": "reconciliation"},
    },
}


def get_beat_schedule(environment: str) -> Dict[str, Dict[str, Any]]:
    if environment in {"test", "testing"}:
        return {}
    return dict(CELERYBEAT_SCHEDULE)
