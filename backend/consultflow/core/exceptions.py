# backend/consultflow/core/exceptions.py
"""
Domain-specific exceptions for the Consultflow platform.

These exceptions provide clear, business-focused error messages
that can be caught and handled appropriately at the API layer.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status


class DomainException(Exception):
    """Base exception for all domain-specific errors."""

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
        """Default conversion to HTTPException (override in subclasses)."""
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ValidationException(DomainException):
    """Raised when business validation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class NotFoundException(DomainException):
    """Raised when a requested resource is not found."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ConflictException(DomainException):
    """Raised when there's a conflict with existing data."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


class ServiceException(DomainException):
    """Raised when a service operation fails."""

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail={
                "message": self.message or "An error occurred processing your request",
                "code": self.code,
                "details": self.details if self.details else {},
            },
        )


class ExternalServiceException(ServiceException):
    """
    Raised when a payment processor, calendar, email or PDF call fails.

    ``authoritative`` failures abort the calling workflow; advisory ones are
    expected to be caught by ``run_advisory`` before they reach a caller.
    """

    def __init__(
        self,
        message: str,
        *,
        service: str,
        authoritative: bool = True,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(
            message,
            code=code or "EXTERNAL_SERVICE_ERROR",
            details={"service": service, **(details or {})},
        )
        self.service = service
        self.authoritative = authoritative

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={
                "message": self.message,
                "code": self.code,
                "details": self.details,
            },
        )


# Specific business exceptions


class PaymentEmailSendException(ExternalServiceException):
    """Raised when the creation-time payment request email could not be delivered."""

    def __init__(self, recipient: str, reason: Optional[str] = None):
        super().__init__(
            f"Unable to send payment email to {recipient}",
            service="email",
            authoritative=True,
            code="EMAIL_SEND_FAILED",
            details={"recipient": recipient, "reason": reason},
        )


class NoPaidBillException(ConflictException):
    """Raised when a refund is requested for a booking without a paid bill."""

    def __init__(self, booking_id: str):
        super().__init__(
            "No paid bill found for this booking",
            code="NO_PAID_BILL",
            details={"booking_id": booking_id},
        )


class BillAlreadyRefundedException(ConflictException):
    """Raised when a refund is requested twice for the same bill."""

    def __init__(self, booking_id: str, bill_id: str):
        super().__init__(
            "Bill already refunded",
            code="BILL_ALREADY_REFUNDED",
            details={"booking_id": booking_id, "bill_id": bill_id},
        )


class ConsistencyViolation(Exception):
    """
    Unexpected but survivable data state (e.g. an empty monthly candidate set).

    Never raised past the component that detects it; it is logged and
    reported for investigation.
    """

    def __init__(self, message: str, *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}


class RepositoryException(Exception):
    """
    Exception raised for repository layer errors.

    This exception is used when data access operations fail,
    such as database connection issues, query failures, or
    constraint violations.
    """
