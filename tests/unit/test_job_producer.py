from __future__ import annotations

from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
import pytz
from redis.exceptions import RedisError

from guidepay.tasks.enqueue import (
    TASK_REFRESH_GUIDE_STATS,
    TASK_RUN_RECONCILIATION,
    JobProducer,
    payload_key,
    reconciliation_bucket,
)
from guidepay.tasks.job_claims import JobClaims


@pytest.fixture
def celery_app() -> MagicMock:
    return MagicMock()


@pytest.fixture
def claims() -> JobClaims:
    return JobClaims(use_redis=False)


@pytest.fixture
def producer(celery_app, claims, test_settings) -> JobProducer:
    return JobProducer(app=celery_app, claims=claims, config=test_settings)


class TestHelpers:
    def test_payload_key_ignores_key_order(self) -> None:
        assert payload_key({"a": 1, "b": 2}) == payload_key({"b": 2, "a": 1})
        assert payload_key({"a": 1}) != payload_key({"a": 2})
        assert len(payload_key({"a": 1})) == 24

    def test_reconciliation_bucket_is_hourly(self) -> None:
        now = pytz.UTC.localize(datetime(2030, 1, 8, 3, 59, 59))
        assert reconciliation_bucket(now) == "2030-01-08T03"


class TestJobProducer:
    def test_publishes_with_job_id_as_task_id(self, producer, celery_app) -> None:
        result = producer.enqueue_guide_stats_update(7, idempotency_key="booking:1:paid")

        assert result.accepted is True
        assert result.deduplicated is False
        assert result.job_id == "guide-stats:booking:1:paid"
        celery_app.tasks.__getitem__.assert_called_with(TASK_REFRESH_GUIDE_STATS)
        celery_app.tasks[TASK_REFRESH_GUIDE_STATS].apply_async.assert_called_once_with(
            kwargs={"guide_id": 7}, task_id="guide-stats:booking:1:paid", queue="guide_performance"
        )

    def test_same_key_is_deduplicated(self, producer, celery_app) -> None:
        producer.enqueue_booking_confirmation(3)
        second = producer.enqueue_booking_confirmation(3)

        assert second.accepted is True
        assert second.deduplicated is True
        assert celery_app.tasks["any"].apply_async.call_count == 1

    def test_analytics_without_key_uses_payload_hash(self, producer) -> None:
        result = producer.enqueue_analytics_event("payment_succeeded", {"amount": 10})

        expected = payload_key(
            {"event_name": "payment_succeeded", "properties": {"amount": 10}}
        )
        assert result.job_id == f"analytics:{expected}"

    def test_reconciliation_defaults_to_hour_bucket(self, producer, celery_app, test_settings) -> None:
        with patch("guidepay.tasks.enqueue.reconciliation_bucket", return_value="2030-01-08T03"):
            result = producer.enqueue_reconciliation_run("payment_succeeded")

        assert result.job_id == "reconciliation:recon:2030-01-08T03"
        kwargs = celery_app.tasks[TASK_RUN_RECONCILIATION].apply_async.call_args.kwargs
        assert kwargs["kwargs"] == {
            "trigger": "payment_succeeded",
            "lookback_hours": test_settings.recon_lookback_hours,
        }
        assert kwargs["queue"] == "reconciliation"

    def test_broker_failure_is_reported_and_claim_released(self, producer, celery_app) -> None:
        celery_app.tasks["any"].apply_async.side_effect = ConnectionError("broker down")

        failed = producer.enqueue_booking_confirmation(5)

        assert failed.accepted is False
        assert "broker down" in failed.error

        celery_app.tasks["any"].apply_async.side_effect = None
        retried = producer.enqueue_booking_confirmation(5)
        assert retried.accepted is True
        assert retried.deduplicated is False

    def test_claim_store_outage_fails_open(self, celery_app, test_settings) -> None:
        claims = MagicMock()
        claims.claim.side_effect = RedisError("redis down")
        producer = JobProducer(app=celery_app, claims=claims, config=test_settings)

        result = producer.enqueue_booking_confirmation(9)

        assert result.accepted is True
        celery_app.tasks["any"].apply_async.assert_called_once()


class TestJobClaims:
    def test_claim_is_exclusive_until_released(self, claims) -> None:
        assert claims.claim("job-1", 60) is True
        assert claims.claim("job-1", 60) is False

        claims.release("job-1")
        assert claims.claim("job-1", 60) is True

    def test_completed_job_cannot_begin_again(self, claims) -> None:
        claims.claim("job-2", 60)

        assert claims.begin("job-2") is True
        assert claims.begin("job-2") is False
        claims.complete("job-2", 60)

        assert claims.begin("job-2") is False

    def test_abandoned_job_can_be_retried(self, claims) -> None:
        assert claims.begin("job-3") is True
        claims.abandon("job-3")

        assert claims.begin("job-3") is True

    def test_uses_redis_when_configured(self) -> None:
        client = MagicMock()
        client.set.return_value = True
        store = JobClaims(client=client, namespace="test")

        assert store.claim("job-4", 30) is True
        client.set.assert_called_once_with("test:claim:job-4", "1", nx=True, ex=30)
