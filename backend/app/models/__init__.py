"""
Database models for the booking payments service.

- Booking: the booking row the orchestrator reads and updates
- Payment ledger: authorization references, financial transactions,
  business payout records and deferred payment schedules
- EventOutbox: pending booking payment notifications
"""

from .booking import Booking, BookingStatus
from .event_outbox import EventOutbox, EventOutboxStatus
from .payment import (
    AuthorizationRole,
    BookingPaymentAuthorization,
    BookingPaymentSchedule,
    BusinessPayoutRecord,
    FinancialTransaction,
    PaymentScheduleStatus,
    TransactionDirection,
)

__all__ = [
    "Booking",
    "BookingStatus",
    "EventOutbox",
    "EventOutboxStatus",
    "AuthorizationRole",
    "BookingPaymentAuthorization",
    "BookingPaymentSchedule",
    "BusinessPayoutRecord",
    "FinancialTransaction",
    "PaymentScheduleStatus",
    "TransactionDirection",
]
