"""External service integrations for the booking payments service."""

from .payment_gateway import (
    Authorization,
    GatewayNotFoundError,
    GatewayUnavailableError,
    PaymentGatewayClient,
    PaymentGatewayError,
    Refund,
    Reversal,
)
from .stripe_gateway import StripePaymentGateway

__all__ = [
    "Authorization",
    "GatewayNotFoundError",
    "GatewayUnavailableError",
    "PaymentGatewayClient",
    "PaymentGatewayError",
    "Refund",
    "Reversal",
    "StripePaymentGateway",
]
