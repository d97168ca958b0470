# guidepay/services/payment_gateway.py
"""
Payment provider boundary.

Services depend on the ``PaymentGateway`` protocol; ``StripePaymentGateway``
is the production implementation. Provider failures are translated into two
buckets: unavailable (timeouts, connection problems, 5xx, rate limits; safe
to retry) and rejected (anything the provider refused on its merits).
"""

import json
import logging
from typing import Any, Dict, Optional, Protocol, Union

import stripe

from ..core.config import Settings, settings as default_settings
from ..core.exceptions import (
    InvalidWebhookSignatureException,
    PaymentProviderRejectedException,
    PaymentProviderUnavailableException,
    ServiceException,
)
from ..schemas.payment import ProviderIntent

logger = logging.getLogger(__name__)

_TRANSIENT_STRIPE_ERRORS = (
    stripe.APIConnectionError,
    stripe.RateLimitError,
    stripe.APIError,
)


class PaymentGateway(Protocol):
    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProviderIntent:
        ...

    def retrieve_intent(self, intent_id: str) -> ProviderIntent:
        ...

    def construct_event(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        """Verify the signature and return the decoded event body."""
        ...


def _to_provider_intent(pi: Any) -> ProviderIntent:
    metadata = getattr(pi, "metadata", None) or {}
    return ProviderIntent(
        id=pi.id,
        status=pi.status,
        amount=int(pi.amount),
        currency=str(pi.currency),
        client_secret=getattr(pi, "client_secret", None),
        metadata={str(k): str(v) for k, v in dict(metadata).items()},
    )


class StripePaymentGateway:
    """Stripe-backed gateway with a bounded request timeout."""

    def __init__(self, config: Optional[Settings] = None):
        self.config = config or default_settings
        secret = self.config.stripe_secret_key
        if not self.config.stripe_configured or secret is None:
            raise ServiceException(
                "Stripe secret key not configured", code="PAYMENT_PROVIDER_NOT_CONFIGURED"
            )
        self.api_key = secret.get_secret_value()
        try:
            stripe.default_http_client = stripe.RequestsClient(
                timeout=self.config.stripe_timeout_seconds
            )
            # Retries are owned by callers so idempotency stays explicit.
            stripe.max_network_retries = 0
        except Exception as exc:
            logger.warning(f"Could not customize Stripe HTTP client: {exc}")

    def create_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        metadata: Dict[str, str],
        idempotency_key: str,
    ) -> ProviderIntent:
        try:
            pi = stripe.PaymentIntent.create(
                amount=amount_minor,
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                idempotency_key=idempotency_key,
                api_key=self.api_key,
            )
        except stripe.StripeError as exc:
            raise self._translate(exc, "create_intent") from exc
        return _to_provider_intent(pi)

    def retrieve_intent(self, intent_id: str) -> ProviderIntent:
        try:
            pi = stripe.PaymentIntent.retrieve(intent_id, api_key=self.api_key)
        except stripe.StripeError as exc:
            raise self._translate(exc, "retrieve_intent") from exc
        return _to_provider_intent(pi)

    def construct_event(self, payload: Union[bytes, str], signature: Optional[str]) -> Dict[str, Any]:
        secret = self.config.stripe_webhook_secret
        if not secret or not secret.get_secret_value():
            raise ServiceException("Webhook secret not configured", code="WEBHOOK_NOT_CONFIGURED")
        if not signature:
            raise InvalidWebhookSignatureException("Missing webhook signature")

        raw = payload.decode("utf-8") if isinstance(payload, bytes) else payload
        try:
            stripe.Webhook.construct_event(raw, signature, secret.get_secret_value())
        except stripe.SignatureVerificationError as exc:
            logger.warning(f"Invalid webhook signature: {str(exc)}")
            raise InvalidWebhookSignatureException() from exc
        except ValueError as exc:
            raise InvalidWebhookSignatureException("Invalid webhook payload") from exc
        return json.loads(raw)

    @staticmethod
    def _translate(exc: "stripe.StripeError", operation: str) -> Exception:
        if isinstance(exc, _TRANSIENT_STRIPE_ERRORS):
            logger.warning(
                "payment_provider_unavailable",
                extra={"event": "payment_provider_unavailable", "operation": operation, "error": str(exc)},
            )
            return PaymentProviderUnavailableException(details={"operation": operation})
        logger.error(
            "payment_provider_rejected",
            extra={"event": "payment_provider_rejected", "operation": operation, "error": str(exc)},
        )
        return PaymentProviderRejectedException(
            getattr(exc, "user_message", None) or "Payment provider rejected the request",
            details={"operation": operation, "provider_code": getattr(exc, "code", None)},
        )
