from __future__ import annotations

from unittest.mock import patch

import pytest

from guidepay.core.exceptions import RepositoryException
from guidepay.models.audit import FraudEvent
from guidepay.schemas.fraud import FraudContext
from guidepay.services.fraud_service import DEFAULT_POLICY, FraudPolicy, FraudService


@pytest.fixture
def fraud_service(db, cache, alert_service, test_settings) -> FraudService:
    return FraudService(db, cache=cache, alert_service=alert_service, config=test_settings)


def _worst_case(**overrides) -> FraudContext:
    values = dict(
        booking_velocity=10,
        payment_failure_ratio=1.0,
        booking_amount=1_000_000,
        account_age_hours=0,
        ip=None,
        ip_velocity=12,
        retry_burst=10,
    )
    values.update(overrides)
    return FraudContext(**values)


class TestScoring:
    def test_quiet_context_scores_zero(self, fraud_service) -> None:
        assessment = fraud_service.evaluate_risk(FraudContext(booking_amount=2500, ip="8.8.8.8"))

        assert assessment.risk_score == 0
        assert assessment.risk_level == "low"
        assert assessment.action == "allow"
        assert assessment.should_block is False
        assert assessment.event_type == "risk_evaluated"

    def test_every_signal_saturated_scores_one_hundred(self, fraud_service) -> None:
        assessment = fraud_service.evaluate_risk(_worst_case())

        assert assessment.risk_score == 100
        assert assessment.risk_level == "critical"
        assert assessment.should_block is True
        assert assessment.requires_review is True
        assert assessment.action == "block_or_review"
        assert assessment.signals["signal_scores"]["ip_reputation"] == pytest.approx(1.0)

    def test_weights_sum_to_one_hundred(self) -> None:
        assert sum(DEFAULT_POLICY.weights.values()) == 100

    def test_event_type_follows_largest_contribution(self, fraud_service) -> None:
        assessment = fraud_service.evaluate_risk(
            FraudContext(booking_amount=2500, ip="8.8.8.8", booking_velocity=10)
        )

        assert assessment.risk_score == 22
        assert assessment.event_type == "velocity_spike"

    def test_failure_ratio_from_counts(self, fraud_service) -> None:
        assessment = fraud_service.evaluate_risk(
            FraudContext(booking_amount=2500, ip="8.8.8.8", recent_failures=3, recent_attempts=4)
        )

        assert assessment.signals["payment_failure_ratio"] == pytest.approx(0.75)
        assert assessment.risk_score == 20

    @pytest.mark.parametrize(
        "score, level",
        [
            (0, "low"),
            (29, "low"),
            (30, "medium"),
            (59, "medium"),
            (60, "high"),
            (79, "high"),
            (80, "critical"),
            (100, "critical"),
        ],
    )
    def test_level_bands(self, fraud_service, score, level) -> None:
        assert fraud_service.resolve_level(score) == level

    @pytest.mark.parametrize(
        "ip, velocity, expected",
        [
            ("8.8.8.8", 0, 0.0),
            (None, 0, 0.2),
            ("10.1.2.3", 0, 0.2),
            ("127.0.0.1", 0, 0.2),
            ("8.8.8.8", 6, 0.4),
            ("8.8.8.8", 10, 0.8),
            (None, 10, 1.0),
        ],
    )
    def test_ip_signal(self, fraud_service, ip, velocity, expected) -> None:
        assert fraud_service.score_ip(ip, velocity) == pytest.approx(expected)

    def test_policy_is_replaceable(self, db, cache, alert_service, test_settings) -> None:
        strict = FraudPolicy(low_max=-1, medium_max=-1, high_max=-1)
        service = FraudService(
            db, cache=cache, alert_service=alert_service, config=test_settings, policy=strict
        )

        assessment = service.evaluate_risk(FraudContext(booking_amount=2500, ip="8.8.8.8"))
        assert assessment.risk_level == "critical"


class TestFailOpen:
    def test_unexpected_error_yields_allow(self, fraud_service) -> None:
        with patch.object(fraud_service, "get_user_snapshot", side_effect=RuntimeError("boom")):
            assessment = fraud_service.evaluate_risk(_worst_case(user_id=7))

        assert assessment.risk_score == 0
        assert assessment.risk_level == "low"
        assert assessment.action == "allow"
        assert assessment.signals["fail_open"] is True
        assert assessment.event_type == "risk_evaluation_failed_open"

    def test_snapshot_read_failure_degrades_to_neutral(self, fraud_service, user) -> None:
        with patch.object(
            fraud_service.booking_repository,
            "count_created_since",
            side_effect=RepositoryException("db down"),
        ):
            snapshot = fraud_service.get_user_snapshot(user.id)

        assert snapshot.source == "fail_open"
        assert snapshot.booking_velocity == 0


class TestUserSnapshot:
    def test_reads_recent_history(self, fraud_service, make_booking, make_payment) -> None:
        booking = make_booking()
        make_payment(booking, status="succeeded", amount="1800.00", provider_intent_id="pi_a")
        for index in range(3):
            make_payment(booking, status="failed", provider_intent_id=f"pi_f{index}")

        snapshot = fraud_service.get_user_snapshot(booking.user_id)

        assert snapshot.source == "db"
        assert snapshot.booking_velocity == 1
        assert snapshot.payment_failure_ratio == pytest.approx(0.75)
        assert snapshot.retry_burst == 3
        assert snapshot.user_baseline_amount == pytest.approx(1800.0)
        assert snapshot.account_age_hours == 0

    def test_second_read_is_served_from_cache(self, fraud_service, user) -> None:
        fraud_service.get_user_snapshot(user.id)

        with patch.object(fraud_service, "_load_snapshot") as mock_load:
            snapshot = fraud_service.get_user_snapshot(user.id)

        mock_load.assert_not_called()
        assert snapshot.source == "cache"

    def test_anonymous_context_uses_global_baseline(self, fraud_service, test_settings) -> None:
        snapshot = fraud_service.get_user_snapshot(None)
        assert snapshot.user_baseline_amount == test_settings.fraud_baseline_amount


class TestRecordFraudEvent:
    def test_persists_and_alerts_on_critical(self, fraud_service, db, alert_service, user) -> None:
        assessment = fraud_service.evaluate_risk(_worst_case(user_id=user.id, booking_id=None))

        with patch.object(alert_service, "critical") as mock_critical:
            event = fraud_service.record_fraud_event(assessment)

        assert event is not None
        stored = db.get(FraudEvent, event.id)
        assert stored.risk_score == 100
        assert stored.risk_level == "critical"
        mock_critical.assert_called_once()

    def test_low_risk_is_recorded_without_alert(self, fraud_service, db, alert_service, user) -> None:
        assessment = fraud_service.evaluate_risk(
            FraudContext(user_id=user.id, booking_amount=2500, ip="8.8.8.8", account_age_hours=9999)
        )

        with patch.object(alert_service, "send") as mock_send:
            fraud_service.record_fraud_event(assessment)

        mock_send.assert_not_called()
        assert db.query(FraudEvent).count() == 1

    def test_skipped_without_user(self, fraud_service, db) -> None:
        assessment = fraud_service.evaluate_risk(FraudContext(booking_amount=2500))

        assert fraud_service.record_fraud_event(assessment) is None
        assert db.query(FraudEvent).count() == 0

    def test_persistence_failure_is_swallowed(self, fraud_service, user) -> None:
        assessment = fraud_service.evaluate_risk(_worst_case(user_id=user.id))

        with patch.object(
            fraud_service.fraud_event_repository, "record", side_effect=RepositoryException("x")
        ):
            assert fraud_service.record_fraud_event(assessment) is None
