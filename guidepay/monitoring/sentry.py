# guidepay/monitoring/sentry.py
from __future__ import annotations

import logging
import os
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.celery import CeleryIntegration
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from ..core.config import settings

logger = logging.getLogger(__name__)

DEFAULT_TRACES_SAMPLE_RATE = 0.1
FAILED_REQUEST_STATUS_CODES = {403, *range(500, 600)}


def _resolve_release() -> Optional[str]:
    release = (os.getenv("GIT_SHA") or "").strip()
    return release or None


def init_sentry(*, with_celery: bool = False) -> bool:
    dsn = (settings.sentry_dsn or "").strip()
    if not dsn:
        logger.debug("Sentry disabled: SENTRY_DSN not set")
        return False

    integrations: list[Any] = [
        LoggingIntegration(level=logging.INFO, event_level=logging.ERROR),
        FastApiIntegration(
            transaction_style="endpoint",
            failed_request_status_codes=FAILED_REQUEST_STATUS_CODES,
        ),
    ]
    if with_celery:
        integrations.append(CeleryIntegration(monitor_beat_tasks=True))

    sentry_sdk.init(
        dsn=dsn,
        environment=settings.environment,
        release=_resolve_release(),
        integrations=integrations,
        send_default_pii=False,
        traces_sample_rate=DEFAULT_TRACES_SAMPLE_RATE,
    )
    logger.info("Sentry initialized")
    return True


def is_sentry_configured() -> bool:
    return sentry_sdk.get_client().is_active()
