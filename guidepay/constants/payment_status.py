"""Shared payment status mapping helpers."""

from __future__ import annotations

from typing import Optional

from guidepay.core.enums import PaymentStatus

STRIPE_TO_PAYMENT_STATUS = {
    "requires_payment_method": PaymentStatus.INITIATED,
    "requires_confirmation": PaymentStatus.INITIATED,
    "requires_action": PaymentStatus.INITIATED,
    "requires_capture": PaymentStatus.PROCESSING,
    "processing": PaymentStatus.PROCESSING,
    "succeeded": PaymentStatus.SUCCEEDED,
    "canceled": PaymentStatus.CANCELLED,
    "cancelled": PaymentStatus.CANCELLED,
}

# Provider and legacy row statuses that count as money received.
SUCCESS_STATUSES = frozenset({"succeeded", "paid"})


def map_provider_status(stripe_status: Optional[str]) -> str:
    """Map a Stripe PaymentIntent status to the persisted Payment status."""
    if not stripe_status:
        return PaymentStatus.INITIATED.value
    mapped = STRIPE_TO_PAYMENT_STATUS.get(stripe_status.strip().lower())
    if mapped is None:
        return PaymentStatus.INITIATED.value
    return mapped.value


def is_success_status(status: Optional[str]) -> bool:
    return (status or "").strip().lower() in SUCCESS_STATUSES
