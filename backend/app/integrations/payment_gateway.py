"""Payment gateway contract used by the booking payment orchestrator."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Literal, Optional, Protocol

CaptureMethod = Literal["automatic", "manual"]


class PaymentGatewayError(RuntimeError):
    """Raised when the payment gateway rejects or fails a call."""

    def __init__(
        self,
        message: str,
        *,
        code: str | None = None,
        decline_code: str | None = None,
        http_status: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.decline_code = decline_code
        self.http_status = http_status


class GatewayNotFoundError(PaymentGatewayError):
    """The referenced gateway object does not exist."""


class GatewayUnavailableError(PaymentGatewayError):
    """Network failure, rate limiting, or a gateway-side 5xx; safe to retry."""


@dataclass(frozen=True)
class Authorization:
    """Gateway-side reservation or charge of customer funds. Amounts are minor units."""

    id: str
    state: str
    amount: int
    currency: str = "usd"
    amount_received: int = 0
    amount_refunded: int = 0
    payment_method_id: Optional[str] = None
    customer_id: Optional[str] = None
    # Transfer to the business's connected account created by a destination charge
    transfer_id: Optional[str] = None


@dataclass(frozen=True)
class Refund:
    id: str
    amount: int
    status: str = "succeeded"


@dataclass(frozen=True)
class Reversal:
    id: str
    amount: int


class PaymentGatewayClient(Protocol):
    """Operations the orchestrator needs from a payment gateway."""

    def get_authorization(self, authorization_id: str) -> Authorization:
        ...

    def confirm_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        ...

    def capture_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        ...

    def cancel_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        ...

    def create_and_confirm_authorization(
        self,
        *,
        amount: int,
        currency: str,
        customer_id: str,
        payment_method_id: str,
        metadata: Dict[str, Any],
        capture_method: CaptureMethod = "automatic",
        destination_account_id: Optional[str] = None,
        idempotency_key: Optional[str] = None,
    ) -> Authorization:
        ...

    def create_refund(
        self,
        authorization_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        """Refund ``amount`` minor units, or the full captured amount when omitted."""
        ...

    def reverse_transfer(
        self,
        transfer_id: str,
        *,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reversal:
        ...
