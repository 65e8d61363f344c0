"""Gateway authorization states, booking statuses and accept policies."""

from __future__ import annotations

from enum import Enum


class AuthorizationState(str, Enum):
    """Gateway authorization lifecycle states (Stripe PaymentIntent statuses)."""

    REQUIRES_PAYMENT_METHOD = "requires_payment_method"
    REQUIRES_CONFIRMATION = "requires_confirmation"
    REQUIRES_ACTION = "requires_action"
    PROCESSING = "processing"
    REQUIRES_CAPTURE = "requires_capture"
    SUCCEEDED = "succeeded"
    CANCELED = "canceled"


# States in which money has not been captured and the authorization can be voided.
CANCELLABLE_STATES = frozenset(
    {
        AuthorizationState.REQUIRES_PAYMENT_METHOD.value,
        AuthorizationState.REQUIRES_CONFIRMATION.value,
        AuthorizationState.REQUIRES_CAPTURE.value,
    }
)

# States from which Accept re-creates the payment as separate fee and service amount charges.
RECREATE_STATES = frozenset(
    {
        AuthorizationState.REQUIRES_PAYMENT_METHOD.value,
        AuthorizationState.REQUIRES_CONFIRMATION.value,
    }
)


class BookingPaymentStatus(str, Enum):
    """Payment status as stored on the booking row."""

    PENDING = "pending"
    AUTHORIZED = "authorized"
    PAID = "paid"
    PARTIALLY_REFUNDED = "partially_refunded"
    REFUNDED = "refunded"
