# backend/app/services/payment_ledger_service.py
"""
Ledger writes that follow a money movement.

By the time these run the gateway has already charged or refunded, so a
failed write is never raised: it is logged, counted, and attached to the
operation result as a ``LedgerWriteFailed`` warning for out-of-band repair.
"""

from __future__ import annotations

from datetime import datetime, timezone
from decimal import Decimal
import logging
from typing import Any, Dict, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import LedgerWriteFailed, RepositoryException
from ..models.booking import Booking
from ..models.payment import (
    AuthorizationRole,
    BusinessPayoutRecord,
    FinancialTransaction,
    TransactionDirection,
)
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.payment_ledger_repository import PaymentLedgerRepository
from ..schemas.booking_payment import BookingPaymentResult, PaymentIssue
from .base import BaseService

logger = logging.getLogger(__name__)


class PaymentLedgerService(BaseService):
    """Idempotent, non-fatal writes to the payment ledger."""

    def __init__(
        self,
        db: Session,
        ledger_repository: Optional[PaymentLedgerRepository] = None,
        currency: str = "usd",
    ):
        super().__init__(db)
        self.ledger_repo = ledger_repository or PaymentLedgerRepository(db)
        self.currency = currency

    def report_failure(
        self,
        result: BookingPaymentResult,
        record_type: str,
        exc: Exception,
        reference: Optional[str] = None,
    ) -> None:
        """Attach a LedgerWriteFailed warning to the result and log it for repair."""
        error = LedgerWriteFailed(
            f"Failed to record {record_type} for booking {result.booking_id}: {exc}",
            details={"record_type": record_type, "reference": reference},
        )
        self.logger.error(error.message, exc_info=exc)
        prometheus_metrics.inc_ledger_write_failure(record_type)
        result.ledger_warnings.append(
            PaymentIssue(
                step=record_type,
                code=error.code,
                message=error.message,
                authorization_id=reference,
            )
        )

    def record_transaction(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        *,
        gateway_reference_id: str,
        amount: Decimal,
        direction: TransactionDirection,
        transaction_type: str,
        description: str,
        payment_method: str = "card",
        metadata: Optional[Dict[str, Any]] = None,
    ) -> Optional[FinancialTransaction]:
        """Append a financial transaction unless this gateway reference is already recorded."""
        try:
            row, created = self.ledger_repo.insert_transaction(
                booking_id=booking.id,
                amount=amount,
                currency=self.currency,
                direction=direction.value,
                gateway_reference_id=gateway_reference_id,
                transaction_type=transaction_type,
                description=description,
                status="completed",
                payment_method=payment_method,
                transaction_metadata=metadata or {},
                processed_at=datetime.now(timezone.utc),
            )
        except (RepositoryException, SQLAlchemyError) as exc:
            self.report_failure(result, "financial_transaction", exc, gateway_reference_id)
            return None

        if not created:
            self.logger.info(
                f"Financial transaction for {gateway_reference_id} already recorded; skipping"
            )
        return row

    def record_payout(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        *,
        gateway_reference_id: str,
        gross_amount: Decimal,
        platform_fee: Decimal,
        net_amount: Decimal,
        transfer_id: Optional[str] = None,
        payment_date: Optional[datetime] = None,
    ) -> Optional[BusinessPayoutRecord]:
        """Append the business payout split for a captured payment."""
        if not booking.business_id:
            self.logger.info(f"Booking {booking.id} has no business; payout record skipped")
            return None

        paid_at = payment_date or datetime.now(timezone.utc)
        try:
            row, created = self.ledger_repo.insert_payout(
                booking_id=booking.id,
                business_id=booking.business_id,
                payment_date=paid_at,
                tax_year=paid_at.year,
                gross_payment_amount=gross_amount,
                platform_fee=platform_fee,
                net_payment_amount=net_amount,
                gateway_reference_id=gateway_reference_id,
                connect_account_id=booking.business_connect_account_id,
                transfer_id=transfer_id,
                booking_reference=booking.booking_reference,
                transaction_type="initial_booking",
                description=f"Service payment for booking {booking.booking_reference or booking.id}",
            )
        except (RepositoryException, SQLAlchemyError) as exc:
            self.report_failure(result, "business_payout", exc, gateway_reference_id)
            return None

        if not created:
            self.logger.info(f"Payout record for {gateway_reference_id} already exists; skipping")
        return row

    def record_authorization(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        gateway_authorization_id: str,
        role: AuthorizationRole,
        amount: Optional[Decimal] = None,
    ) -> None:
        try:
            self.ledger_repo.record_authorization(
                booking.id, gateway_authorization_id, role, amount
            )
        except (RepositoryException, SQLAlchemyError) as exc:
            self.report_failure(result, "authorization_reference", exc, gateway_authorization_id)

    def schedule_capture(
        self,
        result: BookingPaymentResult,
        booking: Booking,
        gateway_authorization_id: str,
        amount: Decimal,
        scheduled_at: datetime,
    ) -> None:
        try:
            self.ledger_repo.upsert_schedule(
                booking.id,
                gateway_authorization_id,
                amount,
                scheduled_at.astimezone(timezone.utc),
            )
        except (RepositoryException, SQLAlchemyError) as exc:
            self.report_failure(result, "payment_schedule", exc, gateway_authorization_id)
