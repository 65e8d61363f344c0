# backend/app/repositories/payment_ledger_repository.py
"""
Payment Ledger Repository.

Data access for the append-only payment ledger: authorization references,
financial transaction records, business payout records and deferred
payment schedules. All inserts keyed on a gateway reference are
idempotent: an existing row with the same reference is returned instead
of raising.
"""

from datetime import datetime
import logging
from typing import Any, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.exceptions import RepositoryException
from ..models.payment import (
    AuthorizationRole,
    BookingPaymentAuthorization,
    BookingPaymentSchedule,
    BusinessPayoutRecord,
    FinancialTransaction,
    PaymentScheduleStatus,
)
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class PaymentLedgerRepository:
    """Repository facade over the four ledger tables."""

    def __init__(self, db: Session):
        self.db = db
        self.authorizations = BaseRepository(db, BookingPaymentAuthorization)
        self.transactions = BaseRepository(db, FinancialTransaction)
        self.payouts = BaseRepository(db, BusinessPayoutRecord)
        self.schedules = BaseRepository(db, BookingPaymentSchedule)
        self.logger = logging.getLogger(__name__)

    # Authorization references

    def get_authorization_references(self, booking_id: str) -> List[BookingPaymentAuthorization]:
        """All authorization references for a booking, newest first."""
        try:
            return (
                self.db.query(BookingPaymentAuthorization)
                .filter(BookingPaymentAuthorization.booking_id == booking_id)
                .order_by(
                    BookingPaymentAuthorization.created_at.desc(),
                    BookingPaymentAuthorization.id.desc(),
                )
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading authorizations for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load authorizations: {str(e)}")

    def get_latest_authorization_id(self, booking_id: str) -> Optional[str]:
        """
        Most recent payment reference for a booking.

        Prefers the authorization ledger; falls back to the gateway reference of
        the newest payout record for bookings paid before references were kept.
        """
        for reference in self.get_authorization_references(booking_id):
            if reference.role == AuthorizationRole.PRIMARY.value:
                return reference.gateway_authorization_id

        payout = self.get_payout_for_booking(booking_id)
        return payout.gateway_reference_id if payout else None

    def record_authorization(
        self,
        booking_id: str,
        gateway_authorization_id: str,
        role: AuthorizationRole,
        amount: Any = None,
    ) -> BookingPaymentAuthorization:
        row, _ = self.authorizations._insert_idempotent(
            "gateway_authorization_id",
            {
                "booking_id": booking_id,
                "gateway_authorization_id": gateway_authorization_id,
                "role": role.value,
                "amount": amount,
            },
        )
        return row

    # Financial transactions

    def get_transactions_for_booking(self, booking_id: str) -> List[FinancialTransaction]:
        try:
            return (
                self.db.query(FinancialTransaction)
                .filter(FinancialTransaction.booking_id == booking_id)
                .order_by(FinancialTransaction.created_at.asc(), FinancialTransaction.id.asc())
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading transactions for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load transactions: {str(e)}")

    def find_transaction(
        self, booking_id: str, transaction_type: str
    ) -> Optional[FinancialTransaction]:
        return self.transactions.find_one_by(
            booking_id=booking_id, transaction_type=transaction_type
        )

    def insert_transaction(self, **values: Any) -> tuple[FinancialTransaction, bool]:
        """Insert a financial transaction unless its gateway reference is already recorded."""
        return self.transactions._insert_idempotent("gateway_reference_id", values)

    # Business payouts

    def get_payout_for_booking(self, booking_id: str) -> Optional[BusinessPayoutRecord]:
        try:
            return (
                self.db.query(BusinessPayoutRecord)
                .filter(BusinessPayoutRecord.booking_id == booking_id)
                .order_by(BusinessPayoutRecord.created_at.desc(), BusinessPayoutRecord.id.desc())
                .first()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading payout for booking {booking_id}: {str(e)}")
            raise RepositoryException(f"Failed to load payout record: {str(e)}")

    def insert_payout(self, **values: Any) -> tuple[BusinessPayoutRecord, bool]:
        """Insert a payout record unless its gateway reference is already recorded."""
        return self.payouts._insert_idempotent("gateway_reference_id", values)

    # Payment schedules

    def upsert_schedule(
        self,
        booking_id: str,
        gateway_authorization_id: str,
        amount: Any,
        scheduled_at: datetime,
    ) -> BookingPaymentSchedule:
        row, _ = self.schedules._insert_idempotent(
            "gateway_authorization_id",
            {
                "booking_id": booking_id,
                "gateway_authorization_id": gateway_authorization_id,
                "amount": amount,
                "scheduled_at": scheduled_at,
                "status": PaymentScheduleStatus.SCHEDULED.value,
            },
        )
        return row

    def get_due_schedules(self, now: datetime, limit: int = 100) -> List[BookingPaymentSchedule]:
        try:
            return (
                self.db.query(BookingPaymentSchedule)
                .filter(
                    BookingPaymentSchedule.status == PaymentScheduleStatus.SCHEDULED.value,
                    BookingPaymentSchedule.scheduled_at <= now,
                )
                .order_by(BookingPaymentSchedule.scheduled_at.asc())
                .limit(limit)
                .all()
            )
        except SQLAlchemyError as e:
            self.logger.error(f"Error loading due payment schedules: {str(e)}")
            raise RepositoryException(f"Failed to load payment schedules: {str(e)}")

    def get_scheduled_for_booking(self, booking_id: str) -> List[BookingPaymentSchedule]:
        return self.schedules.find_by(
            booking_id=booking_id, status=PaymentScheduleStatus.SCHEDULED.value
        )

    def cancel_schedules(self, booking_id: str, reason: str) -> int:
        """Cancel every still-scheduled payment for a booking; returns the count."""
        schedules = self.get_scheduled_for_booking(booking_id)
        for schedule in schedules:
            schedule.status = PaymentScheduleStatus.CANCELLED.value
            schedule.failure_reason = reason
        if schedules:
            self.db.flush()
        return len(schedules)

    def mark_schedule(
        self,
        schedule: BookingPaymentSchedule,
        status: PaymentScheduleStatus,
        processed_at: datetime,
        failure_reason: Optional[str] = None,
    ) -> None:
        schedule.status = status.value
        schedule.processed_at = processed_at
        if failure_reason:
            schedule.failure_reason = failure_reason[:1000]
            schedule.retry_count = (schedule.retry_count or 0) + 1
        self.db.flush()

    def complete_schedules(self, booking_id: str, processed_at: datetime) -> int:
        """Mark a booking's outstanding schedules processed once the capture happened."""
        schedules = self.get_scheduled_for_booking(booking_id)
        for schedule in schedules:
            schedule.status = PaymentScheduleStatus.PROCESSED.value
            schedule.processed_at = processed_at
        if schedules:
            self.db.flush()
        return len(schedules)
