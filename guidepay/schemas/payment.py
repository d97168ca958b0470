"""
Payment intent results and provider webhook event models.

Provider events are parsed into a tagged union keyed on ``type`` so handlers
match on a concrete class instead of probing raw dictionaries.
"""

from decimal import Decimal
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from ._strict_base import StrictModel

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"


class ProviderIntent(BaseModel):
    """Provider-side view of a payment intent, normalized by the gateway."""

    model_config = ConfigDict(extra="ignore")

    id: str
    status: str
    amount: int = Field(..., description="Minor units")
    currency: str
    client_secret: Optional[str] = None
    metadata: Dict[str, str] = Field(default_factory=dict)


class PaymentIntentResult(StrictModel):
    booking_id: int
    payment_id: int
    intent_id: str
    client_secret: Optional[str] = None
    status: str
    amount: Decimal
    currency: str
    reused: bool


class IntentPayload(BaseModel):
    """``data.object`` of a payment_intent.* event."""

    model_config = ConfigDict(extra="allow")

    id: str
    status: Optional[str] = None
    amount: Optional[int] = None
    amount_received: Optional[int] = None
    currency: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    last_payment_error: Optional[Dict[str, Any]] = None


class _EventData(BaseModel):
    model_config = ConfigDict(extra="allow")

    object: IntentPayload


class _ProviderEventBase(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    created: Optional[int] = None
    data: _EventData

    @property
    def intent(self) -> IntentPayload:
        return self.data.object

    def payload_snapshot(self) -> Dict[str, Any]:
        return self.data.object.model_dump(mode="json")


class PaymentSucceededEvent(_ProviderEventBase):
    type: Literal["payment_intent.succeeded"]


class PaymentFailedEvent(_ProviderEventBase):
    type: Literal["payment_intent.payment_failed"]


class UnhandledProviderEvent(BaseModel):
    """Any verified event type the state machine does not act on."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str


HandledProviderEvent = Annotated[
    Union[PaymentSucceededEvent, PaymentFailedEvent], Field(discriminator="type")
]
ProviderEvent = Union[PaymentSucceededEvent, PaymentFailedEvent, UnhandledProviderEvent]

_handled_adapter: TypeAdapter = TypeAdapter(HandledProviderEvent)


def parse_provider_event(raw: Dict[str, Any]) -> ProviderEvent:
    """
    Build the typed event for ``raw``.

    Raises ValidationError when a handled event type is missing the intent
    fields the state machine needs.
    """
    event_type = raw.get("type")
    if event_type in (PAYMENT_SUCCEEDED, PAYMENT_FAILED):
        return _handled_adapter.validate_python(raw)
    return UnhandledProviderEvent.model_validate(raw)


class WebhookResult(StrictModel):
    event_id: str
    event_type: str
    outcome: Literal["processed", "skipped", "ignored"]
    reason: Optional[str] = None
    booking_id: Optional[int] = None
    payment_id: Optional[int] = None
    enqueued_jobs: List[str] = Field(default_factory=list)


__all__ = [
    "PAYMENT_FAILED",
    "PAYMENT_SUCCEEDED",
    "IntentPayload",
    "PaymentFailedEvent",
    "PaymentIntentResult",
    "PaymentSucceededEvent",
    "ProviderEvent",
    "ProviderIntent",
    "UnhandledProviderEvent",
    "WebhookResult",
    "parse_provider_event",
]
