from .booking import BookingCreate, BookingResponse, PremiumOption, PriceBreakdown
from .fraud import FraudAssessment, FraudContext, RiskSnapshot
from .jobs import EnqueueResult
from .payment import (
    PaymentFailedEvent,
    PaymentIntentResult,
    PaymentSucceededEvent,
    ProviderEvent,
    ProviderIntent,
    UnhandledProviderEvent,
    WebhookResult,
    parse_provider_event,
)
from .reconciliation import ReconciliationRunResult

__all__ = [
    "BookingCreate",
    "BookingResponse",
    "EnqueueResult",
    "FraudAssessment",
    "FraudContext",
    "PaymentFailedEvent",
    "PaymentIntentResult",
    "PaymentSucceededEvent",
    "PremiumOption",
    "PriceBreakdown",
    "ProviderEvent",
    "ProviderIntent",
    "ReconciliationRunResult",
    "RiskSnapshot",
    "UnhandledProviderEvent",
    "WebhookResult",
    "parse_provider_event",
]
