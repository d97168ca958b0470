# guidepay/services/alert_service.py
"""
Operational alerts for money-path anomalies.

Every alert is logged; when Sentry is configured it is also captured as a
message at the matching level. Alerts are rate limited per (severity, key)
so a storm of identical findings produces a bounded number of pages.
Dispatch never raises: an alert that cannot be delivered is logged and
counted, and the calling operation carries on.
"""

import logging
from typing import Any, Dict, Optional

import sentry_sdk

from ..core.config import Settings, settings as default_settings
from ..core.enums import Severity
from ..core.rate_limit import InMemoryWindowCounter, RateLimiter, RedisWindowCounter
from ..core.redis_client import get_redis_client
from ..monitoring.prometheus_metrics import prometheus_metrics

logger = logging.getLogger(__name__)

_LOG_LEVELS = {
    Severity.LOW.value: logging.INFO,
    Severity.WARNING.value: logging.WARNING,
    Severity.HIGH.value: logging.ERROR,
    Severity.CRITICAL.value: logging.CRITICAL,
}

_SENTRY_LEVELS = {
    Severity.LOW.value: "info",
    Severity.WARNING.value: "warning",
    Severity.HIGH.value: "error",
    Severity.CRITICAL.value: "fatal",
}


def build_default_rate_limiter(config: Optional[Settings] = None) -> RateLimiter:
    config = config or default_settings
    client = get_redis_client()
    counter = RedisWindowCounter(client) if client is not None else InMemoryWindowCounter()
    return RateLimiter(counter, limit=config.alert_rate_limit_per_minute, window_seconds=60)


class AlertService:
    def __init__(self, rate_limiter: Optional[RateLimiter] = None, config: Optional[Settings] = None):
        self.config = config or default_settings
        self.rate_limiter = rate_limiter or build_default_rate_limiter(self.config)

    def send(
        self,
        severity: str,
        title: str,
        context: Optional[Dict[str, Any]] = None,
        *,
        dedupe_key: Optional[str] = None,
    ) -> bool:
        """
        Dispatch one alert. Returns True when delivered, False when suppressed
        by the rate limit or when delivery failed.
        """
        context = context or {}
        limiter_key = f"{severity}:{dedupe_key or title}"
        if not self.rate_limiter.allow(limiter_key):
            prometheus_metrics.inc_alert(severity, "suppressed")
            logger.info(
                "alert_suppressed",
                extra={"event": "alert_suppressed", "severity": severity, "title": title},
            )
            return False

        try:
            logger.log(
                _LOG_LEVELS.get(severity, logging.WARNING),
                f"{severity}_alert: {title}",
                extra={"event": f"{severity}_alert", "severity": severity, "title": title, **context},
            )
            with sentry_sdk.new_scope() as scope:
                scope.set_tag("alert_severity", severity)
                scope.set_context("alert", context)
                sentry_sdk.capture_message(title, level=_SENTRY_LEVELS.get(severity, "warning"))
        except Exception as exc:
            prometheus_metrics.inc_alert(severity, "failed")
            logger.error("alert_dispatch_failed: %s", exc)
            return False

        prometheus_metrics.inc_alert(severity, "sent")
        return True

    def critical(self, title: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> bool:
        return self.send(Severity.CRITICAL.value, title, context, **kwargs)

    def high(self, title: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> bool:
        return self.send(Severity.HIGH.value, title, context, **kwargs)

    def warning(self, title: str, context: Optional[Dict[str, Any]] = None, **kwargs: Any) -> bool:
        return self.send(Severity.WARNING.value, title, context, **kwargs)
