"""
Repository layer for the booking payments service.

Repositories own data access; services own transactions.
"""

from .base_repository import BaseRepository
from .booking_repository import BookingRepository
from .event_outbox_repository import EventOutboxRepository
from .factory import RepositoryFactory
from .payment_ledger_repository import PaymentLedgerRepository

__all__ = [
    "BaseRepository",
    "BookingRepository",
    "EventOutboxRepository",
    "PaymentLedgerRepository",
    "RepositoryFactory",
]
