# guidepay/services/fraud_service.py
"""
Fraud Service for guidepay

Scores a transaction from 0 to 100 using six weighted behavioural signals.
Each signal is a step function mapped to [0, 1] and multiplied by its
weight; the weights sum to 100.

Weights and thresholds live in ``FraudPolicy`` and are hand tuned, not a
calibrated model. Swap the policy rather than editing the scorer.

Scoring fails open: if anything goes wrong the result is score 0, level
low, action allow, with ``fail_open`` set in the signals. Fraud scoring
never blocks a booking on an infrastructure problem.
"""

from dataclasses import dataclass, field
from datetime import timedelta
import ipaddress
from typing import Any, Dict, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.config import Settings, settings as default_settings
from ..core.enums import RiskAction, RiskLevel
from ..core.exceptions import RepositoryException
from ..core.time_utils import ensure_utc, utc_now
from ..models.audit import FraudEvent
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.factory import RepositoryFactory
from ..schemas.fraud import FraudAssessment, FraudContext, RiskSnapshot
from .alert_service import AlertService
from .base import BaseService
from .cache_service import CacheService

# (upper bound inclusive, signal value); values above the last bound score 1.
StepTable = Sequence[Tuple[float, float]]


@dataclass(frozen=True)
class FraudPolicy:
    weights: Dict[str, int] = field(
        default_factory=lambda: {
            "booking_velocity": 22,
            "payment_failure_ratio": 20,
            "price_deviation": 18,
            "account_age": 12,
            "ip_reputation": 14,
            "retry_burst": 14,
        }
    )
    booking_velocity_steps: StepTable = ((2, 0.0), (4, 0.35), (6, 0.7))
    failure_ratio_steps: StepTable = ((0.2, 0.0), (0.4, 0.4), (0.6, 0.75))
    price_deviation_steps: StepTable = ((0.35, 0.0), (0.75, 0.5), (1.2, 0.8))
    retry_burst_steps: StepTable = ((1, 0.0), (3, 0.5), (5, 0.8))
    # (minimum age in hours, signal value); younger than every bound scores 1.
    account_age_steps: StepTable = ((168, 0.0), (72, 0.35), (24, 0.7))
    ip_missing: float = 0.2
    ip_private: float = 0.2
    ip_velocity_steps: StepTable = ((6, 0.4), (10, 0.4))
    low_max: int = 29
    medium_max: int = 59
    high_max: int = 79
    block_score: int = 90


DEFAULT_POLICY = FraudPolicy()

_EVENT_TYPES = {
    "booking_velocity": "velocity_spike",
    "payment_failure_ratio": "card_testing_pattern",
    "price_deviation": "abnormal_value_booking",
    "account_age": "new_account_risk",
    "ip_reputation": "ip_velocity_abuse",
    "retry_burst": "payment_retry_storm",
}

SNAPSHOT_CACHE_PREFIX = "fraud:snapshot"


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def _step_up(value: float, steps: StepTable) -> float:
    for bound, score in steps:
        if value <= bound:
            return score
    return 1.0


def _step_age(hours: float, steps: StepTable) -> float:
    for bound, score in steps:
        if hours >= bound:
            return score
    return 1.0


def _is_private_ipv4(ip: Optional[str]) -> bool:
    try:
        addr = ipaddress.ip_address((ip or "").strip())
    except ValueError:
        return False
    return addr.version == 4 and (addr.is_private or addr.is_loopback)


class FraudService(BaseService):
    def __init__(
        self,
        db: Session,
        cache: Optional[CacheService] = None,
        alert_service: Optional[AlertService] = None,
        config: Optional[Settings] = None,
        policy: FraudPolicy = DEFAULT_POLICY,
    ):
        super().__init__(db, cache)
        self.config = config or default_settings
        self.alert_service = alert_service or AlertService(config=self.config)
        self.policy = policy
        self.booking_repository = RepositoryFactory.create_booking_repository(db)
        self.payment_repository = RepositoryFactory.create_payment_repository(db)
        self.user_repository = RepositoryFactory.create_user_repository(db)
        self.fraud_event_repository = RepositoryFactory.create_fraud_event_repository(db)

    # Scoring

    def score_ip(self, ip: Optional[str], ip_velocity: float) -> float:
        score = 0.0
        if not ip:
            score += self.policy.ip_missing
        elif _is_private_ipv4(ip):
            score += self.policy.ip_private
        for bound, increment in self.policy.ip_velocity_steps:
            if ip_velocity >= bound:
                score += increment
        return _clamp(score, 0.0, 1.0)

    def resolve_level(self, score: int) -> str:
        if score <= self.policy.low_max:
            return RiskLevel.LOW.value
        if score <= self.policy.medium_max:
            return RiskLevel.MEDIUM.value
        if score <= self.policy.high_max:
            return RiskLevel.HIGH.value
        return RiskLevel.CRITICAL.value

    @BaseService.measure_operation("evaluate_risk")
    def evaluate_risk(self, context: FraudContext) -> FraudAssessment:
        """Score ``context``. Never raises."""
        try:
            assessment = self._evaluate(context)
        except Exception as exc:
            self.logger.error(
                "fraud_risk_evaluation_failed",
                extra={"event": "fraud_risk_evaluation_failed", "error": str(exc)},
            )
            assessment = FraudAssessment(
                user_id=context.user_id,
                booking_id=context.booking_id,
                risk_score=0,
                risk_level=RiskLevel.LOW.value,
                event_type="risk_evaluation_failed_open",
                should_block=False,
                requires_review=False,
                action=RiskAction.ALLOW.value,
                signals={"fail_open": True, "reason": str(exc)},
                evaluated_at=utc_now(),
            )
        prometheus_metrics.inc_fraud_evaluation(assessment.risk_level)
        return assessment

    def _evaluate(self, context: FraudContext) -> FraudAssessment:
        snapshot = self.get_user_snapshot(context.user_id)
        baseline_default = self.config.fraud_baseline_amount

        booking_velocity = _pick(context.booking_velocity, snapshot.booking_velocity)
        if context.payment_failure_ratio is not None:
            failure_ratio = _clamp(context.payment_failure_ratio, 0.0, 1.0)
        elif context.recent_failures is not None:
            attempts = context.recent_attempts or context.recent_failures
            failure_ratio = _clamp(context.recent_failures / max(1.0, attempts), 0.0, 1.0)
        else:
            failure_ratio = snapshot.payment_failure_ratio
        account_age = _pick(context.account_age_hours, snapshot.account_age_hours)
        retry_burst = _pick(context.retry_burst, snapshot.retry_burst)
        ip_velocity = _pick(context.ip_velocity, snapshot.ip_velocity)
        user_baseline = _pick(context.user_baseline_amount, snapshot.user_baseline_amount)
        baseline = user_baseline if user_baseline > 0 else baseline_default
        deviation = abs(context.booking_amount - baseline) / baseline if baseline > 0 else 0.0
        ip = context.ip.strip() if context.ip else None

        signal_scores = {
            "booking_velocity": _step_up(booking_velocity, self.policy.booking_velocity_steps),
            "payment_failure_ratio": _step_up(failure_ratio, self.policy.failure_ratio_steps),
            "price_deviation": _step_up(_clamp(deviation, 0.0, 10.0), self.policy.price_deviation_steps),
            "account_age": _step_age(account_age, self.policy.account_age_steps),
            "ip_reputation": self.score_ip(ip, ip_velocity),
            "retry_burst": _step_up(retry_burst, self.policy.retry_burst_steps),
        }
        contributions = {
            name: round(value * self.policy.weights[name], 2) for name, value in signal_scores.items()
        }
        score = int(_clamp(round(sum(contributions.values())), 0, 100))
        level = self.resolve_level(score)

        if level == RiskLevel.CRITICAL.value:
            action = RiskAction.BLOCK_OR_REVIEW.value
        elif level == RiskLevel.HIGH.value:
            action = RiskAction.ALLOW_FLAG.value
        else:
            action = RiskAction.ALLOW.value

        top = max(contributions.items(), key=lambda item: item[1])
        event_type = _EVENT_TYPES[top[0]] if top[1] > 0 else "risk_evaluated"

        assessment = FraudAssessment(
            user_id=context.user_id,
            booking_id=context.booking_id,
            risk_score=score,
            risk_level=level,
            event_type=event_type,
            should_block=level == RiskLevel.CRITICAL.value or score >= self.policy.block_score,
            requires_review=level in (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value),
            action=action,
            signals={
                "booking_velocity": booking_velocity,
                "payment_failure_ratio": failure_ratio,
                "price_deviation_ratio": round(deviation, 4),
                "account_age_hours": account_age,
                "ip": ip,
                "ip_velocity": ip_velocity,
                "retry_burst": retry_burst,
                "user_baseline_amount": round(baseline, 2),
                "snapshot_source": snapshot.source,
                "signal_scores": signal_scores,
                "weighted_contributions": contributions,
            },
            evaluated_at=utc_now(),
        )
        self.logger.info(
            "fraud_risk_evaluated",
            extra={
                "event": "fraud_risk_evaluated",
                "user_id": assessment.user_id,
                "booking_id": assessment.booking_id,
                "risk_score": score,
                "risk_level": level,
                "action": action,
            },
        )
        return assessment

    # Snapshot

    def get_user_snapshot(self, user_id: Optional[int]) -> RiskSnapshot:
        """
        Recent behaviour for ``user_id``, cached briefly.

        A database failure degrades to a neutral snapshot instead of raising.
        """
        if not user_id or user_id <= 0:
            return RiskSnapshot(user_baseline_amount=self.config.fraud_baseline_amount)

        cache_key = f"{SNAPSHOT_CACHE_PREFIX}:{user_id}"
        if self.cache is not None:
            cached = self.cache.get(cache_key)
            if cached:
                return RiskSnapshot.model_validate({**cached, "source": "cache"})

        try:
            snapshot = self._load_snapshot(user_id)
        except (SQLAlchemyError, RepositoryException) as exc:
            self.db.rollback()
            self.logger.warning(
                "fraud_user_snapshot_failed",
                extra={"event": "fraud_user_snapshot_failed", "user_id": user_id, "error": str(exc)},
            )
            return RiskSnapshot(
                user_baseline_amount=self.config.fraud_baseline_amount, source="fail_open"
            )

        if self.cache is not None:
            self.cache.set(cache_key, snapshot.model_dump(), ttl=self.config.fraud_snapshot_ttl_seconds)
        return snapshot

    def _load_snapshot(self, user_id: int) -> RiskSnapshot:
        now = utc_now()
        booking_velocity = self.booking_repository.count_created_since(
            user_id, now - timedelta(minutes=10)
        )
        aggregate = self.payment_repository.get_risk_aggregate(
            user_id,
            since_24h=now - timedelta(hours=24),
            since_5m=now - timedelta(minutes=5),
            since_30d=now - timedelta(days=30),
        )
        created_at = ensure_utc(self.user_repository.get_created_at(user_id))
        account_age = (
            max(0.0, float((now - created_at) // timedelta(hours=1))) if created_at else 9999.0
        )
        ratio = (
            _clamp(aggregate.failures_24h / aggregate.attempts_24h, 0.0, 1.0)
            if aggregate.attempts_24h > 0
            else 0.0
        )
        baseline = (
            float(aggregate.avg_succeeded_amount_30d)
            if aggregate.avg_succeeded_amount_30d is not None
            else self.config.fraud_baseline_amount
        )
        return RiskSnapshot(
            booking_velocity=booking_velocity,
            payment_failure_ratio=ratio,
            retry_burst=aggregate.failures_5m,
            account_age_hours=account_age,
            user_baseline_amount=max(0.0, baseline),
            ip_velocity=0,
            source="db",
        )

    # Audit trail

    @BaseService.measure_operation("record_fraud_event")
    def record_fraud_event(self, assessment: FraudAssessment) -> Optional[FraudEvent]:
        """
        Persist ``assessment`` and alert on high-risk results.

        Skipped without a user. Failures are logged and swallowed so the
        caller's transaction outcome is unaffected.
        """
        if not assessment.user_id or assessment.user_id <= 0:
            self.logger.debug("Skipping fraud event without a user")
            return None

        try:
            with self.transaction():
                event = self.fraud_event_repository.record(
                    user_id=assessment.user_id,
                    booking_id=assessment.booking_id,
                    risk_score=assessment.risk_score,
                    risk_level=assessment.risk_level,
                    event_type=assessment.event_type,
                    signals=assessment.signals,
                )
        except Exception as exc:
            self.logger.error(
                "fraud_event_record_failed",
                extra={
                    "event": "fraud_event_record_failed",
                    "user_id": assessment.user_id,
                    "error": str(exc),
                },
            )
            return None

        self.logger.info(
            "fraud_event_recorded",
            extra={
                "event": "fraud_event_recorded",
                "fraud_event_id": event.id,
                "user_id": assessment.user_id,
                "risk_score": assessment.risk_score,
                "risk_level": assessment.risk_level,
            },
        )
        self._alert(assessment)
        return event

    def _alert(self, assessment: FraudAssessment) -> None:
        context: Dict[str, Any] = {
            "user_id": assessment.user_id,
            "booking_id": assessment.booking_id,
            "risk_score": assessment.risk_score,
            "risk_event_type": assessment.event_type,
        }
        dedupe_key = f"fraud:{assessment.user_id}"
        if assessment.risk_level == RiskLevel.CRITICAL.value:
            self.alert_service.critical("Critical fraud risk detected", context, dedupe_key=dedupe_key)
        elif assessment.risk_level == RiskLevel.HIGH.value:
            self.alert_service.high("High fraud risk flagged", context, dedupe_key=dedupe_key)
        elif assessment.risk_score >= 40 and float(assessment.signals.get("retry_burst") or 0) >= 3:
            self.alert_service.warning("Payment failure burst detected", context, dedupe_key=dedupe_key)


def _pick(override: Optional[float], fallback: float) -> float:
    return max(0.0, float(override if override is not None else fallback))
