"""
Bounded retry combinator for transactional units.

Wraps a callable with a fixed attempt budget, a backoff schedule and a
predicate that separates retriable failures from fatal ones. Callers keep
the transaction inside ``func`` so each attempt starts from a clean session.
"""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import random
import time
from typing import Callable, Optional, TypeVar

T = TypeVar("T")

logger = logging.getLogger(__name__)


def _never(_exc: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    backoff: str = "exponential"  # "exponential" | "linear"
    base_delay: float = 0.05
    max_delay: float = 2.0
    jitter: float = 0.05
    retry_if: Callable[[BaseException], bool] = field(default=_never)

    def delay_for(self, attempt: int) -> float:
        """Delay before attempt ``attempt + 1`` (``attempt`` is 1-based)."""
        if self.backoff == "linear":
            base = self.base_delay * attempt
        else:
            base = self.base_delay * (2 ** (attempt - 1))
        extra = random.uniform(0, self.jitter * attempt) if self.jitter > 0 else 0.0
        return min(self.max_delay, base + extra)


class RetryExhausted(Exception):
    """Raised when every attempt failed with a retriable error."""

    def __init__(self, op_name: str, attempts: int, last_error: BaseException):
        self.op_name = op_name
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(f"{op_name} failed after {attempts} attempts: {last_error}")


def retry_call(
    func: Callable[[], T],
    *,
    policy: RetryPolicy,
    op_name: str,
    sleep: Optional[Callable[[float], None]] = None,
    on_retry: Optional[Callable[[int, BaseException], None]] = None,
) -> T:
    """
    Run ``func`` until it succeeds, raises a non-retriable error, or the
    attempt budget runs out.

    Non-retriable errors propagate unchanged. When the budget is exhausted on
    a retriable error, ``RetryExhausted`` is raised with the last error chained.
    """
    sleeper = sleep or time.sleep
    attempt = 1
    while True:
        try:
            return func()
        except Exception as exc:
            if not policy.retry_if(exc):
                raise
            if attempt >= policy.max_attempts:
                logger.error(
                    "Retry budget exhausted",
                    extra={
                        "event": "retry_exhausted",
                        "op": op_name,
                        "attempts": attempt,
                        "error": str(exc),
                    },
                )
                raise RetryExhausted(op_name, attempt, exc) from exc

            delay = policy.delay_for(attempt)
            logger.warning(
                "Transient failure detected, retrying",
                extra={
                    "event": "retry_scheduled",
                    "op": op_name,
                    "attempt": attempt,
                    "delay": delay,
                    "error": str(exc),
                },
            )
            if on_retry is not None:
                on_retry(attempt, exc)
            sleeper(delay)
            attempt += 1
