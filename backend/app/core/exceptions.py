# backend/app/core/exceptions.py
"""
Error taxonomy for booking payment operations.

The orchestrator reports these in its structured results (``error_code``
is the exception ``code``); the HTTP layer maps them to status codes via
``to_http_exception``.
"""

from typing import Any, Dict, Optional

from fastapi import HTTPException, status

HTTP_422_UNPROCESSABLE: int = getattr(status, "HTTP_422_UNPROCESSABLE_CONTENT", 422)


class DomainException(Exception):
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

    def _detail(self) -> Dict[str, Any]:
        return {
            "message": self.message,
            "code": self.code,
            "details": self.details,
        }

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=self._detail(),
        )


class NotFoundException(DomainException):
    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=self._detail())


class ConflictException(DomainException):
    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=status.HTTP_409_CONFLICT, detail=self._detail())


class BusinessRuleException(DomainException):
    def to_http_exception(self) -> HTTPException:
        return HTTPException(status_code=HTTP_422_UNPROCESSABLE, detail=self._detail())


class ServiceUnavailableException(DomainException):
    """Raised when a dependency is temporarily unavailable; callers should retry."""

    retryable = True
    retry_after_seconds = 2

    def to_http_exception(self) -> HTTPException:
        return HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=self._detail(),
            headers={"Retry-After": str(self.retry_after_seconds)},
        )


class ServiceException(DomainException):
    """An operation failed for a reason the caller cannot fix; maps to 500."""


# Booking payment taxonomy


class BookingNotFound(NotFoundException):
    """Raised when the booking an operation targets does not exist."""

    def __init__(self, booking_id: str):
        super().__init__(
            message=f"Booking {booking_id} not found",
            details={"booking_id": booking_id},
        )


class InvalidBookingState(ConflictException):
    """Raised when a booking's status does not allow the requested operation."""

    def __init__(self, booking_id: str, current_status: str, operation: str):
        super().__init__(
            message=f"Cannot {operation} booking {booking_id} in status {current_status}",
            details={
                "booking_id": booking_id,
                "status": current_status,
                "operation": operation,
            },
        )


class MissingPaymentMethod(BusinessRuleException):
    """Raised when a new authorization is needed but no stored payment method exists."""

    def __init__(self, authorization_id: Optional[str] = None, message: Optional[str] = None):
        super().__init__(
            message=message or "No payment method or gateway customer on file for this booking",
            details={"authorization_id": authorization_id} if authorization_id else {},
        )


class UnexpectedGatewayState(BusinessRuleException):
    """Raised when an authorization is in a state the operation cannot act on."""

    def __init__(self, authorization_id: Optional[str], state: Optional[str], operation: str):
        super().__init__(
            message=f"Payment {authorization_id} is in unexpected state '{state}' for {operation}",
            details={
                "authorization_id": authorization_id,
                "state": state,
                "operation": operation,
            },
        )


class FeeChargeFailed(BusinessRuleException):
    """Raised when the platform fee charge is declined or errors."""


class ServiceAmountChargeFailed(BusinessRuleException):
    """Raised when the service amount charge is declined or errors."""


class RefundTargetNotCaptured(BusinessRuleException):
    """Raised when a refund is required but the payment was never captured."""

    def __init__(self, authorization_id: Optional[str], state: Optional[str]):
        super().__init__(
            message=f"Cannot refund payment {authorization_id}: it has not been captured ({state})",
            details={"authorization_id": authorization_id, "state": state},
        )


class GatewayUnavailable(ServiceUnavailableException):
    """Raised on payment gateway network, rate limit, or 5xx failures."""


class LedgerWriteFailed(ServiceException):
    """Raised when a ledger write fails after money already moved; reported as a warning."""


class RepositoryException(Exception):
    """A query or flush failed in the data access layer."""
