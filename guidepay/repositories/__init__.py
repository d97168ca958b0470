"""Data access layer. Repositories flush but never commit."""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .commission_repository import CommissionRepository
from .factory import RepositoryFactory
from .fraud_event_repository import FraudEventRepository
from .guide_repository import GuideRepository
from .payment_repository import PaymentRepository
from .reconciliation_repository import ReconciliationRepository
from .user_repository import UserRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "CommissionRepository",
    "FraudEventRepository",
    "GuideRepository",
    "PaymentRepository",
    "ReconciliationRepository",
    "RepositoryFactory",
    "UserRepository",
]
