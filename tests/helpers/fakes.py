"""Test doubles for the provider, the job queue and the clock."""

from __future__ import annotations

from datetime import datetime
import itertools
import json
from typing import Any, Dict, List, Optional, Union

import pytz

from guidepay.core.exceptions import InvalidWebhookSignatureException
from guidepay.schemas.jobs import EnqueueResult
from guidepay.schemas.payment import ProviderIntent

VALID_SIGNATURE = "t=1,v1=valid"

# Tuesday 10:00 in Bangkok: neither peak nor weekend.
OFF_PEAK_WEEKDAY = pytz.UTC.localize(datetime(2030, 1, 8, 3, 0))


class ManualClock:
    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.current = start

    def now(self) -> float:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += seconds


class FakePaymentGateway:
    """
    In-memory provider double.

    ``create_intent`` honours idempotency keys the way Stripe does: the same
    key always returns the same intent.
    """

    def __init__(self) -> None:
        self.intents: Dict[str, ProviderIntent] = {}
        self.by_key: Dict[str, str] = {}
        self.create_calls: List[Dict[str, Any]] = []
        self.retrieve_calls: List[str] = []
        self.create_error: Optional[Exception] = None
        self.retrieve_error: Optional[Exception] = None
        self._ids = itertools.count(1)

    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProviderIntent:
        self.create_calls.append(
            {
                "amount_minor": amount_minor,
                "currency": currency,
                "metadata": metadata,
                "idempotency_key": idempotency_key,
            }
        )
        if self.create_error is not None:
            raise self.create_error
        if idempotency_key in self.by_key:
            return self.intents[self.by_key[idempotency_key]]
        intent_id = f"pi_test_{next(self._ids)}"
        intent = ProviderIntent(
            id=intent_id,
            status="requires_payment_method",
            amount=amount_minor,
            currency=currency,
            client_secret=f"{intent_id}_secret",
            metadata=metadata,
        )
        self.intents[intent_id] = intent
        self.by_key[idempotency_key] = intent_id
        return intent

    def retrieve_intent(self, intent_id: str) -> ProviderIntent:
        self.retrieve_calls.append(intent_id)
        if self.retrieve_error is not None:
            raise self.retrieve_error
        return self.intents[intent_id]

    def set_intent(self, intent_id: str, *, status: str, amount: int, currency: str = "thb") -> None:
        self.intents[intent_id] = ProviderIntent(
            id=intent_id, status=status, amount=amount, currency=currency
        )

    def construct_event(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        if signature != VALID_SIGNATURE:
            raise InvalidWebhookSignatureException()
        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        return json.loads(raw)


class RecordingJobProducer:
    """Stands in for ``JobProducer``; records jobs and dedupes on job id."""

    def __init__(self, fail: bool = False) -> None:
        self.jobs: List[Dict[str, Any]] = []
        self.seen: set = set()
        self.fail = fail

    def _record(self, queue: str, job_name: str, key: str, payload: Dict[str, Any]) -> EnqueueResult:
        job_id = f"{job_name}:{key}"
        if self.fail:
            return EnqueueResult(
                accepted=False, queue=queue, job_name=job_name, job_id=job_id, error="broker down"
            )
        if job_id in self.seen:
            return EnqueueResult(
                accepted=True, queue=queue, job_name=job_name, job_id=job_id, deduplicated=True
            )
        self.seen.add(job_id)
        self.jobs.append({"queue": queue, "job_name": job_name, "job_id": job_id, "payload": payload})
        return EnqueueResult(accepted=True, queue=queue, job_name=job_name, job_id=job_id)

    def enqueue_guide_stats_update(self, guide_id: int, *, idempotency_key: Optional[str] = None):
        return self._record(
            "guide_performance", "guide-stats", idempotency_key or f"guide:{guide_id}", {"guide_id": guide_id}
        )

    def enqueue_analytics_event(
        self, event_name: str, properties: Dict[str, Any], *, idempotency_key: Optional[str] = None
    ):
        return self._record(
            "analytics",
            "analytics",
            idempotency_key or event_name,
            {"event_name": event_name, "properties": properties},
        )

    def enqueue_reconciliation_run(
        self,
        reason: str,
        *,
        lookback_hours: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ):
        return self._record(
            "reconciliation", "reconciliation", idempotency_key or "recon:bucket", {"trigger": reason}
        )

    def enqueue_booking_confirmation(self, booking_id: int, *, idempotency_key: Optional[str] = None):
        return self._record(
            "notifications",
            "booking-confirmation",
            idempotency_key or f"booking:{booking_id}",
            {"booking_id": booking_id},
        )

    def names(self) -> List[str]:
        return [job["job_name"] for job in self.jobs]


def provider_event(
    event_type: str,
    intent_id: str,
    *,
    event_id: str = "evt_1",
    amount: int = 200000,
    metadata: Optional[Dict[str, Any]] = None,
    last_payment_error: Optional[Dict[str, Any]] = None,
) -> bytes:
    body: Dict[str, Any] = {
        "id": event_id,
        "type": event_type,
        "created": 1_700_000_000,
        "data": {
            "object": {
                "id": intent_id,
                "object": "payment_intent",
                "status": "succeeded" if event_type.endswith("succeeded") else "requires_payment_method",
                "amount": amount,
                "currency": "thb",
                "metadata": metadata or {},
                "last_payment_error": last_payment_error,
            }
        },
    }
    return json.dumps(body).encode("utf-8")
