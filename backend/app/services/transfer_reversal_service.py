# backend/app/services/transfer_reversal_service.py
"""Claw back a business payout before refunding the customer."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from ..domain.money import to_decimal, to_minor_units
from ..integrations.payment_gateway import PaymentGatewayClient, PaymentGatewayError
from ..models.booking import Booking
from ..models.payment import BusinessPayoutRecord, TransactionDirection
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..schemas.booking_payment import BookingPaymentResult, PaymentIssue
from .base import BaseService
from .payment_ledger_service import PaymentLedgerService


@dataclass(frozen=True)
class ReversalOutcome:
    attempted: bool
    reversed: bool = False
    reversal_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    error: Optional[str] = None

    def as_metadata(self) -> dict[str, str]:
        metadata = {
            "transfer_reversed": "true" if self.reversed else "false",
            "transfer_reversal_id": self.reversal_id or "",
        }
        if self.error:
            metadata["transfer_reversal_error"] = self.error[:450]
        return metadata


NOT_ATTEMPTED = ReversalOutcome(attempted=False)


class TransferReversalService(BaseService):
    """Reverses the transfer to a business's connected account for a refunded booking."""

    def __init__(
        self,
        db: Session,
        gateway: PaymentGatewayClient,
        ledger: PaymentLedgerService,
    ):
        super().__init__(db)
        self.gateway = gateway
        self.ledger = ledger

    @staticmethod
    def should_reverse(booking: Booking, payout: BusinessPayoutRecord) -> bool:
        """A reversal is due when the service amount was charged and funds reached the business."""
        return bool(payout.transfer_id and booking.service_amount_charged)

    @BaseService.measure_operation("reverse_business_transfer")
    def reverse_for_refund(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        payout: BusinessPayoutRecord,
        amount: Decimal,
    ) -> ReversalOutcome:
        """
        Attempt one reversal of ``amount`` from the payout's transfer; a reversal
        already in the ledger is returned instead of reversing again.

        Failures are recorded on the result and returned, never raised: the
        customer refund that follows must not depend on the business having
        the funds to give back.
        """
        transfer_id = payout.transfer_id
        if not transfer_id:
            return NOT_ATTEMPTED

        previous = self.ledger.ledger_repo.find_transaction(booking.id, "transfer_reversal")
        if previous is not None:
            self.logger.info(
                f"Transfer {transfer_id} for booking {booking.id} already reversed "
                f"({previous.gateway_reference_id})"
            )
            return ReversalOutcome(
                attempted=True,
                reversed=True,
                reversal_id=previous.gateway_reference_id,
                amount=to_decimal(previous.amount),
            )

        try:
            reversal = self.gateway.reverse_transfer(
                transfer_id,
                amount=to_minor_units(amount),
                metadata={
                    "booking_id": booking.id,
                    "reason": "customer_cancellation",
                    "original_transfer_id": transfer_id,
                },
                idempotency_key=f"booking:{booking.id}:transfer_reversal:{transfer_id}",
            )
        except PaymentGatewayError as exc:
            self.logger.warning(
                f"Transfer reversal failed for booking {booking.id} transfer {transfer_id}: {exc}",
                exc_info=exc,
            )
            prometheus_metrics.inc_transfer_reversal("failed")
            result.sub_step_failures.append(
                PaymentIssue(
                    step="transfer_reversal",
                    code="TransferReversalFailed",
                    message=str(exc),
                    authorization_id=transfer_id,
                )
            )
            return ReversalOutcome(attempted=True, amount=amount, error=str(exc))

        prometheus_metrics.inc_transfer_reversal("success")
        self.logger.info(
            f"Reversed {amount} of transfer {transfer_id} for booking {booking.id} ({reversal.id})"
        )
        self.ledger.record_transaction(
            result,
            booking,
            gateway_reference_id=reversal.id,
            amount=amount,
            direction=TransactionDirection.REFUND,
            transaction_type="transfer_reversal",
            description=f"Transfer reversal for cancelled booking {booking.booking_reference or booking.id}",
            payment_method="transfer_reversal",
            metadata={
                "transfer_id": transfer_id,
                "reversal_id": reversal.id,
                "reason": "customer_cancellation",
            },
        )
        return ReversalOutcome(
            attempted=True, reversed=True, reversal_id=reversal.id, amount=amount
        )
