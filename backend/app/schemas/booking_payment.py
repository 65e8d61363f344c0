"""Request and result models for booking payment operations."""

from __future__ import annotations

from decimal import Decimal
from enum import Enum
from typing import List, Literal, Optional

from pydantic import Field

from ..events.booking_events import BookingPaymentEvent
from ._strict_base import StrictModel, StrictRequestModel


class OperationStage(str, Enum):
    """How far an accept/decline/cancel operation progressed."""

    START = "start"
    LOADED = "loaded"
    DISPATCHED = "dispatched"  # gateway calls issued
    RECORDED = "recorded"  # ledger and booking written
    DONE = "done"
    FAILED = "failed"


class PaymentIssue(StrictModel):
    """A best-effort sub-step that failed, or a ledger write that needs repair."""

    step: str = Field(..., description="Sub-step name, e.g. refund, cancel, transfer_reversal")
    code: str = Field(..., description="Error code from the payment error taxonomy")
    message: str
    authorization_id: Optional[str] = None


class BookingPaymentResult(StrictModel):
    """Structured outcome of an accept, decline or cancel operation."""

    success: bool
    operation: Literal["accept", "decline", "cancel"]
    booking_id: str
    stage: OperationStage = OperationStage.START

    error_code: Optional[str] = None
    message: Optional[str] = None
    retryable: bool = False

    booking_status: Optional[str] = None
    payment_status: Optional[str] = None
    fee_charged: Optional[bool] = None
    service_amount_charged: Optional[bool] = None
    service_amount_authorized: Optional[bool] = None
    refund_amount: Optional[Decimal] = None
    cancellation_fee: Optional[Decimal] = None
    authorization_ids: List[str] = Field(default_factory=list)

    sub_step_failures: List[PaymentIssue] = Field(default_factory=list)
    ledger_warnings: List[PaymentIssue] = Field(default_factory=list)
    event: Optional[BookingPaymentEvent] = None


class DeclineBookingRequest(StrictRequestModel):
    declined_by: Optional[str] = Field(None, description="User id of the business member declining")
    reason: Optional[str] = Field(None, max_length=500)


class CancelBookingRequest(StrictRequestModel):
    cancelled_by: Optional[str] = Field(None, description="User id of the customer cancelling")
    reason: Optional[str] = Field(None, max_length=500)
