# guidepay/core/exceptions.py
"""
Domain-specific exceptions for the guidepay transactional core.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, List, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

    status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR
    retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        self.message = message
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=self.status_code,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    status_code = status.HTTP_400_BAD_REQUEST


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    status_code = status.HTTP_404_NOT_FOUND


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    status_code = status.HTTP_409_CONFLICT


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


# Specific business exceptions


class BookingConflictException(ConflictException):
    """Raised when a booking overlaps an existing booking for the same guide."""

    def __init__(
        self,
        message: Optional[str] = None,
        *,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(
            message=message or "Selected time slot is not available",
            code="BOOKING_CONFLICT",
            details=details or {},
        )


class GuideUnavailableException(ConflictException):
    def __init__(self, guide_id: int):
        super().__init__(
            message="Guide is currently unavailable",
            code="GUIDE_UNAVAILABLE",
            details={"guide_id": guide_id},
        )


class InvalidStatusTransitionException(ConflictException):
    """Raised when a booking status change is not allowed by the lifecycle."""

    def __init__(self, current: str, target: str, allowed: List[str]):
        super().__init__(
            message=f"Invalid status transition from {current} to {target}",
            code="INVALID_STATUS_TRANSITION",
            details={"from": current, "to": target, "allowed": allowed},
        )


class BookingAlreadyPaidException(ConflictException):
    def __init__(self, booking_id: int):
        super().__init__(
            message="Booking already paid",
            code="BOOKING_ALREADY_PAID",
            details={"booking_id": booking_id},
        )


class PaymentProviderUnavailableException(ServiceException):
    """Provider timed out or could not be reached. Safe to retry."""

    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    retryable = True

    def __init__(self, message: str = "Unable to reach the payment provider right now", **kwargs: Any):
        super().__init__(message, code="PAYMENT_PROVIDER_UNAVAILABLE", **kwargs)


class PaymentProviderRejectedException(ServiceException):
    """Provider refused the request outright. Retrying will not help."""

    status_code = status.HTTP_502_BAD_GATEWAY

    def __init__(self, message: str = "Payment provider rejected the request", **kwargs: Any):
        super().__init__(message, code="PAYMENT_PROVIDER_REJECTED", **kwargs)


class InvalidWebhookSignatureException(ValidationException):
    def __init__(self, message: str = "Invalid webhook signature"):
        super().__init__(message, code="INVALID_WEBHOOK_SIGNATURE")


class WebhookProcessingException(ServiceException):
    """
    Raised when a verified webhook could not be applied after all retries.

    Surfaced to the provider as a 5xx so it redelivers the event.
    """

    retryable = True

    def __init__(self, message: str, **kwargs: Any):
        super().__init__(message, code="WEBHOOK_PROCESSING_FAILED", **kwargs)


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    Used when data access operations fail, such as query failures or
    constraint violations.
    """
