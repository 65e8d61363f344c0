# backend/app/models/booking.py
"""
Booking model for the booking payments service.

Bookings are created by the booking flow before checkout completes. The
payment orchestrator only reads and updates them: it moves the status
through accepted, declined and cancelled, and keeps the charge flags and
gateway references in step with what happened at the payment gateway.
"""

from enum import Enum

from sqlalchemy import Boolean, Column, Date, DateTime, Index, Numeric, String, Text, Time
from sqlalchemy.sql import func
import ulid

from ..constants.payment_status import BookingPaymentStatus
from ..database import Base


class BookingStatus(str, Enum):
    """Booking lifecycle statuses."""

    PENDING = "pending"  # Awaiting the business's decision
    ACCEPTED = "accepted"
    DECLINED = "declined"
    CANCELLED = "cancelled"
    COMPLETED = "completed"  # Set by fulfillment, never by payments


class Booking(Base):
    """Booking row as seen by the payment orchestrator."""

    __tablename__ = "bookings"

    # Primary key
    id = Column(String(26), primary_key=True, index=True, default=lambda: str(ulid.ULID()))

    # Parties
    customer_id = Column(String(26), nullable=False, index=True)
    business_id = Column(String(26), nullable=True, index=True)
    booking_reference = Column(String(32), nullable=True)

    # Schedule (local date/time in the booking's timezone)
    booking_date = Column(Date, nullable=False, index=True)
    start_time = Column(Time, nullable=False)
    timezone = Column(String(64), nullable=False, default="UTC")

    # Money
    total_amount = Column(Numeric(10, 2), nullable=False)
    service_fee = Column(Numeric(10, 2), nullable=True, comment="Platform fee")
    service_amount = Column(Numeric(10, 2), nullable=True, comment="Amount owed to the business")

    # Status
    status = Column(String(20), nullable=False, default=BookingStatus.PENDING.value, index=True)
    payment_status = Column(
        String(30), nullable=False, default=BookingPaymentStatus.PENDING.value
    )

    # Charge flags
    fee_charged = Column(Boolean, nullable=False, default=False)
    fee_charged_at = Column(DateTime(timezone=True), nullable=True)
    service_amount_charged = Column(Boolean, nullable=False, default=False)
    service_amount_charged_at = Column(DateTime(timezone=True), nullable=True)
    service_amount_authorized = Column(Boolean, nullable=False, default=False)

    # Gateway references
    payment_method_id = Column(String(255), nullable=True, comment="Stripe payment method ID")
    gateway_customer_id = Column(String(255), nullable=True, comment="Stripe customer ID")
    business_connect_account_id = Column(
        String(255), nullable=True, comment="Stripe connected account of the business"
    )
    fee_payment_intent_id = Column(String(255), nullable=True)
    service_amount_payment_intent_id = Column(String(255), nullable=True)

    # Cancellation outcome
    cancellation_fee = Column(Numeric(10, 2), nullable=True)
    refund_amount = Column(Numeric(10, 2), nullable=True)
    cancelled_by = Column(String(26), nullable=True)
    cancellation_reason = Column(Text, nullable=True)
    declined_by = Column(String(26), nullable=True)
    decline_reason = Column(Text, nullable=True)

    # Timestamps
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    declined_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (Index("ix_bookings_business_status", "business_id", "status"),)

    def __repr__(self) -> str:
        return f"<Booking {self.id} {self.booking_date} {self.start_time} {self.status}>"

    @property
    def was_accepted(self) -> bool:
        """Accepted bookings, or bookings whose fee was already charged."""
        return self.status == BookingStatus.ACCEPTED.value or bool(self.fee_charged)

    def is_terminal(self) -> bool:
        return self.status in {
            BookingStatus.DECLINED.value,
            BookingStatus.CANCELLED.value,
            BookingStatus.COMPLETED.value,
        }
