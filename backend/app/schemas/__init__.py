# backend/app/schemas/__init__.py
"""Pydantic schemas for the booking payments service."""

from .booking_payment import (
    BookingPaymentResult,
    CancelBookingRequest,
    DeclineBookingRequest,
    OperationStage,
    PaymentIssue,
)

__all__ = [
    "BookingPaymentResult",
    "CancelBookingRequest",
    "DeclineBookingRequest",
    "OperationStage",
    "PaymentIssue",
]
