from __future__ import annotations

from unittest.mock import MagicMock, patch

from redis.exceptions import ConnectionError as RedisConnectionError

from guidepay.core.rate_limit import InMemoryWindowCounter, RateLimiter, RedisWindowCounter
from guidepay.services.alert_service import AlertService
from tests.helpers.fakes import ManualClock


class TestAlertRateLimit:
    def test_twenty_first_identical_alert_is_suppressed(self, alert_service) -> None:
        results = [alert_service.critical("Payment webhook failed") for _ in range(21)]

        assert results[:20] == [True] * 20
        assert results[20] is False

    def test_budget_is_per_key(self, alert_service) -> None:
        for _ in range(20):
            alert_service.critical("A")

        assert alert_service.critical("A") is False
        assert alert_service.critical("B") is True
        assert alert_service.high("A") is True

    def test_dedupe_key_groups_distinct_titles(self, alert_service) -> None:
        for index in range(20):
            alert_service.high(f"Finding {index}", dedupe_key="recon:amount_mismatch")

        assert alert_service.high("Finding 99", dedupe_key="recon:amount_mismatch") is False

    def test_next_window_resets_the_budget(self, alert_service, clock) -> None:
        for _ in range(21):
            alert_service.warning("noisy")

        clock.advance(60)

        assert alert_service.warning("noisy") is True


class TestAlertDelivery:
    def test_sentry_failure_does_not_raise(self, alert_service) -> None:
        with patch(
            "guidepay.services.alert_service.sentry_sdk.capture_message",
            side_effect=RuntimeError("sentry down"),
        ):
            assert alert_service.critical("boom", {"booking_id": 1}) is False

    def test_captures_message_at_matching_level(self, alert_service) -> None:
        with patch("guidepay.services.alert_service.sentry_sdk.capture_message") as mock_capture:
            alert_service.high("Cancelled booking paid")

        mock_capture.assert_called_once_with("Cancelled booking paid", level="error")

    def test_counter_outage_lets_alerts_through(self, test_settings) -> None:
        counter = MagicMock()
        counter.incr.side_effect = RedisConnectionError("redis down")
        service = AlertService(rate_limiter=RateLimiter(counter, limit=1), config=test_settings)

        assert service.critical("still delivered") is True
        assert service.critical("still delivered") is True


class TestWindowCounters:
    def test_in_memory_counter_drops_old_windows(self) -> None:
        clock = ManualClock(start=0.0)
        counter = InMemoryWindowCounter(clock)

        assert counter.incr("k", 60) == 1
        assert counter.incr("k", 60) == 2
        clock.advance(60)
        assert counter.incr("k", 60) == 1
        assert len(counter._counts) == 1

    def test_redis_counter_sets_expiry(self) -> None:
        client = MagicMock()
        client.pipeline.return_value.execute.return_value = [3, True]
        counter = RedisWindowCounter(client, clock=ManualClock(start=120.0), namespace="rl")

        assert counter.incr("critical:x", 60) == 3
        pipe = client.pipeline.return_value
        pipe.incr.assert_called_once_with("rl:critical:x:2")
        pipe.expire.assert_called_once_with("rl:critical:x:2", 120)
