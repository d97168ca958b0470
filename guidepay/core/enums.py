# guidepay/core/enums.py
"""
Core enums for the guidepay transactional core.

Values are persisted as plain lowercase strings; always store ``.value``.
"""

from enum import Enum
from typing import Dict, FrozenSet


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"
    CONFIRMED = "confirmed"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class BookingPaymentStatus(str, Enum):
    UNPAID = "unpaid"
    REQUIRES_PAYMENT = "requires_payment"
    PAID = "paid"
    FAILED = "failed"


class PaymentStatus(str, Enum):
    INITIATED = "initiated"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELLED = "cancelled"


class CommissionStatus(str, Enum):
    PENDING = "pending"
    SETTLED = "settled"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class RiskAction(str, Enum):
    ALLOW = "allow"
    ALLOW_FLAG = "allow_flag"
    BLOCK_OR_REVIEW = "block_or_review"


class AnomalyType(str, Enum):
    MISSING_PAYMENT_RECORD = "missing_payment_record"
    STATUS_MISMATCH = "status_mismatch"
    AMOUNT_MISMATCH = "amount_mismatch"
    ORPHAN_PAYMENT = "orphan_payment"
    DUPLICATE_INTENT = "duplicate_intent"
    BOOKING_WITHOUT_SUCCESSFUL_PAYMENT = "booking_without_successful_payment"


class Severity(str, Enum):
    LOW = "low"
    WARNING = "warning"
    HIGH = "high"
    CRITICAL = "critical"


# Statuses that occupy a guide's calendar for conflict checks.
BLOCKING_BOOKING_STATUSES: FrozenSet[str] = frozenset(
    {BookingStatus.PENDING.value, BookingStatus.CONFIRMED.value, BookingStatus.COMPLETED.value}
)

ALLOWED_BOOKING_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    BookingStatus.PENDING.value: frozenset(
        {BookingStatus.CONFIRMED.value, BookingStatus.CANCELLED.value}
    ),
    BookingStatus.CONFIRMED.value: frozenset(
        {BookingStatus.COMPLETED.value, BookingStatus.CANCELLED.value}
    ),
    BookingStatus.COMPLETED.value: frozenset(),
    BookingStatus.CANCELLED.value: frozenset(),
}

ACTIVE_PAYMENT_STATUSES: FrozenSet[str] = frozenset(
    {PaymentStatus.INITIATED.value, PaymentStatus.PROCESSING.value}
)
TERMINAL_PAYMENT_STATUSES: FrozenSet[str] = frozenset(
    {PaymentStatus.SUCCEEDED.value, PaymentStatus.FAILED.value, PaymentStatus.CANCELLED.value}
)
