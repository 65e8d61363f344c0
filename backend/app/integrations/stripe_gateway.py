"""Stripe implementation of the payment gateway contract."""

from __future__ import annotations

import logging
import time
from typing import Any, Callable, Dict, Optional, TypeVar

from pydantic import SecretStr
import stripe

from ..monitoring.prometheus_metrics import prometheus_metrics
from .payment_gateway import (
    Authorization,
    CaptureMethod,
    GatewayNotFoundError,
    GatewayUnavailableError,
    PaymentGatewayError,
    Refund,
    Reversal,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

_EXPAND_CHARGE = ["latest_charge"]


def _field(obj: Any, name: str, default: Any = None) -> Any:
    """Read a field from a StripeObject, dict, or plain object."""
    if obj is None:
        return default
    if isinstance(obj, dict):
        return obj.get(name, default)
    value = getattr(obj, name, None)
    if value is None and hasattr(obj, "get"):
        try:
            value = obj.get(name)
        except (AttributeError, KeyError, TypeError):
            value = None
    return default if value is None else value


def _object_id(value: Any) -> Optional[str]:
    """Stripe references are either an id string or an expanded object."""
    if value is None:
        return None
    if isinstance(value, str):
        return value
    return _field(value, "id")


def _to_authorization(pi: Any) -> Authorization:
    charge = _field(pi, "latest_charge")
    amount_refunded = 0
    transfer_id = None
    if charge is not None and not isinstance(charge, str):
        amount_refunded = int(_field(charge, "amount_refunded", 0) or 0)
        transfer_id = _object_id(_field(charge, "transfer"))

    return Authorization(
        id=str(_field(pi, "id")),
        state=str(_field(pi, "status")),
        amount=int(_field(pi, "amount", 0) or 0),
        currency=str(_field(pi, "currency", "usd")),
        amount_received=int(_field(pi, "amount_received", 0) or 0),
        amount_refunded=amount_refunded,
        payment_method_id=_object_id(_field(pi, "payment_method")),
        customer_id=_object_id(_field(pi, "customer")),
        transfer_id=transfer_id,
    )


def _translate_error(operation: str, exc: stripe.StripeError) -> PaymentGatewayError:
    code = getattr(exc, "code", None)
    http_status = getattr(exc, "http_status", None)
    message = getattr(exc, "user_message", None) or str(exc)
    decline_code = getattr(exc, "decline_code", None)

    if isinstance(exc, stripe.InvalidRequestError) and code == "resource_missing":
        return GatewayNotFoundError(
            f"{operation}: {message}", code=code, http_status=http_status
        )
    if isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError)) or (
        http_status is not None and http_status >= 500
    ):
        return GatewayUnavailableError(
            f"{operation}: {message}", code=code, http_status=http_status
        )
    return PaymentGatewayError(
        f"{operation}: {message}", code=code, decline_code=decline_code, http_status=http_status
    )


class StripePaymentGateway:
    """Payment gateway backed by Stripe PaymentIntents, Refunds and Transfer reversals."""

    def __init__(
        self,
        *,
        api_key: str | SecretStr | None = None,
        max_network_retries: int = 2,
        timeout_seconds: Optional[int] = None,
        default_currency: str = "usd",
    ) -> None:
        if api_key is not None:
            secret_value = (
                api_key.get_secret_value() if isinstance(api_key, SecretStr) else api_key
            )
            if secret_value:
                stripe.api_key = secret_value
        stripe.max_network_retries = max_network_retries
        if timeout_seconds:
            # Per-request HTTP timeout
            stripe.default_http_client = stripe.RequestsClient(timeout=timeout_seconds)
        self.default_currency = default_currency
        self.logger = logging.getLogger(self.__class__.__name__)

    def _call(self, operation: str, func: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        start = time.time()
        outcome = "success"
        try:
            return func(*args, **kwargs)
        except stripe.StripeError as e:
            translated = _translate_error(operation, e)
            outcome = type(translated).__name__
            self.logger.error(f"Stripe error during {operation}: {str(e)}")
            raise translated from e
        finally:
            prometheus_metrics.record_gateway_call(operation, outcome, time.time() - start)

    def get_authorization(self, authorization_id: str) -> Authorization:
        pi = self._call(
            "retrieve_payment_intent",
            stripe.PaymentIntent.retrieve,
            authorization_id,
            expand=_EXPAND_CHARGE,
        )
        return _to_authorization(pi)

    def confirm_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        pi = self._call(
            "confirm_payment_intent",
            stripe.PaymentIntent.confirm,
            authorization_id,
            idempotency_key=idempotency_key,
            expand=_EXPAND_CHARGE,
        )
        return _to_authorization(pi)

    def capture_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        pi = self._call(
            "capture_payment_intent",
            stripe.PaymentIntent.capture,
            authorization_id,
            idempotency_key=idempotency_key,
            expand=_EXPAND_CHARGE,
        )
        return _to_authorization(pi)

    def cancel_authorization(
        self, authorization_id: str, *, idempotency_key: Optional[str] = None
    ) -> Authorization:
        pi = self._call(
            "cancel_payment_intent",
            stripe.PaymentIntent.cancel,
            authorization_id,
            idempotency_key=idempotency_key,
        )
        return _to_authorization(pi)

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
        params: Dict[str, Any] = {
            "amount": amount,
            "currency": currency or self.default_currency,
            "customer": customer_id,
            "payment_method": payment_method_id,
            "capture_method": capture_method,
            "confirm": True,
            "off_session": True,
            "metadata": {key: str(value) for key, value in metadata.items()},
            "expand": _EXPAND_CHARGE,
        }
        if destination_account_id:
            params["transfer_data"] = {"destination": destination_account_id}
        pi = self._call(
            "create_payment_intent",
            stripe.PaymentIntent.create,
            idempotency_key=idempotency_key,
            **params,
        )
        return _to_authorization(pi)

    def create_refund(
        self,
        authorization_id: str,
        *,
        amount: Optional[int] = None,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Refund:
        params: Dict[str, Any] = {
            "payment_intent": authorization_id,
            "reason": "requested_by_customer",
        }
        if amount is not None:
            params["amount"] = amount
        if metadata:
            params["metadata"] = {key: str(value) for key, value in metadata.items()}
        refund = self._call(
            "create_refund", stripe.Refund.create, idempotency_key=idempotency_key, **params
        )
        return Refund(
            id=str(_field(refund, "id")),
            amount=int(_field(refund, "amount", 0) or 0),
            status=str(_field(refund, "status", "succeeded")),
        )

    def reverse_transfer(
        self,
        transfer_id: str,
        *,
        amount: int,
        metadata: Optional[Dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> Reversal:
        kwargs: Dict[str, Any] = {"amount": amount}
        if metadata:
            kwargs["metadata"] = {key: str(value) for key, value in metadata.items()}
        # stripe.Transfer.create_reversal expects transfer id as positional arg
        reversal = self._call(
            "reverse_transfer",
            stripe.Transfer.create_reversal,
            transfer_id,
            idempotency_key=idempotency_key,
            **kwargs,
        )
        reversed_amount = int(_field(reversal, "amount", 0) or 0)
        if reversed_amount and reversed_amount < amount:
            self.logger.warning(
                f"Partial reversal for transfer {transfer_id}: requested={amount} reversed={reversed_amount}"
            )
        return Reversal(id=str(_field(reversal, "id")), amount=reversed_amount)
