# guidepay/repositories/factory.py
"""
Repository Factory for guidepay

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .booking_repository import BookingRepository
from .commission_repository import CommissionRepository
from .fraud_event_repository import FraudEventRepository
from .guide_repository import GuideRepository
from .payment_repository import PaymentRepository
from .reconciliation_repository import ReconciliationRepository
from .user_repository import UserRepository


class RepositoryFactory:
    """
    Factory class for creating repository instances.

    Centralizes repository creation to ensure consistent initialization
    and makes it easy to swap implementations if needed.
    """

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_payment_repository(db: Session) -> PaymentRepository:
        return PaymentRepository(db)

    @staticmethod
    def create_commission_repository(db: Session) -> CommissionRepository:
        return CommissionRepository(db)

    @staticmethod
    def create_guide_repository(db: Session) -> GuideRepository:
        return GuideRepository(db)

    @staticmethod
    def create_user_repository(db: Session) -> UserRepository:
        return UserRepository(db)

    @staticmethod
    def create_fraud_event_repository(db: Session) -> FraudEventRepository:
        return FraudEventRepository(db)

    @staticmethod
    def create_reconciliation_repository(db: Session) -> ReconciliationRepository:
        return ReconciliationRepository(db)
