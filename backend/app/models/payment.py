"""
Payment ledger models.

The ledger is the durable mirror of money movement at the payment gateway:
- BookingPaymentAuthorization: which gateway authorizations belong to a booking
- FinancialTransaction: append-only charge/refund audit records
- BusinessPayoutRecord: platform fee / business net split of a captured amount
- BookingPaymentSchedule: deferred service amount captures

Every gateway reference column is unique, which is what makes ledger
writes idempotent.
"""

from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import DateTime, Integer, Numeric, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import JSON
import ulid

from app.database import Base


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AuthorizationRole(str, Enum):
    PRIMARY = "primary"
    FEE = "fee"
    SERVICE_AMOUNT = "service_amount"


class TransactionDirection(str, Enum):
    CHARGE = "charge"
    REFUND = "refund"


class PaymentScheduleStatus(str, Enum):
    SCHEDULED = "scheduled"
    PROCESSED = "processed"
    CANCELLED = "cancelled"
    FAILED = "failed"


class BookingPaymentAuthorization(Base):
    """Gateway authorization attached to a booking (checkout writes the primary one)."""

    __tablename__ = "booking_payment_authorizations"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    gateway_authorization_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    role: Mapped[str] = mapped_column(String(20), nullable=False, default=AuthorizationRole.PRIMARY.value)
    amount: Mapped[Optional[Decimal]] = mapped_column(Numeric(10, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc, nullable=False)

    def __repr__(self) -> str:
        return f"<BookingPaymentAuthorization(booking_id={self.booking_id}, role={self.role}, id={self.gateway_authorization_id})>"


class FinancialTransaction(Base):
    """Immutable audit entry for a charge or refund."""

    __tablename__ = "financial_transactions"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="usd")
    direction: Mapped[str] = mapped_column(String(10), nullable=False)
    gateway_reference_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(50), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="completed")
    payment_method: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    transaction_metadata: Mapped[Dict[str, Any]] = mapped_column(
        "metadata", JSONB(astext_type=Text()).with_variant(JSON(), "sqlite"), nullable=False, default=dict
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc, nullable=False)

    def __repr__(self) -> str:
        return f"<FinancialTransaction(booking_id={self.booking_id}, {self.direction} {self.amount}, ref={self.gateway_reference_id})>"


class BusinessPayoutRecord(Base):
    """Split of a captured amount between the platform fee and the business's net payment."""

    __tablename__ = "business_payout_records"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    business_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    payment_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    tax_year: Mapped[int] = mapped_column(Integer, nullable=False)
    gross_payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    platform_fee: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    net_payment_amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    gateway_reference_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    connect_account_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    transfer_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, comment="Stripe transfer to the business")
    booking_reference: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    transaction_type: Mapped[str] = mapped_column(String(30), nullable=False, default="initial_booking")
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_now_utc, nullable=False)

    def __repr__(self) -> str:
        return f"<BusinessPayoutRecord(booking_id={self.booking_id}, net={self.net_payment_amount}, transfer={self.transfer_id})>"


class BookingPaymentSchedule(Base):
    """Deferred capture of the service amount at the 24-hour mark."""

    __tablename__ = "booking_payment_schedules"

    id: Mapped[str] = mapped_column(String(26), primary_key=True, default=lambda: str(ulid.ULID()))
    booking_id: Mapped[str] = mapped_column(String(26), nullable=False, index=True)
    gateway_authorization_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    payment_type: Mapped[str] = mapped_column(String(30), nullable=False, default="remaining_balance")
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    scheduled_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=PaymentScheduleStatus.SCHEDULED.value, index=True
    )
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=func.now())

    def __repr__(self) -> str:
        return f"<BookingPaymentSchedule(booking_id={self.booking_id}, {self.status} at {self.scheduled_at})>"
