# backend/app/repositories/factory.py
"""
Repository Factory for the booking payments service.

Provides centralized creation of repository instances,
ensuring consistent initialization and dependency injection.
"""

from sqlalchemy.orm import Session

from .booking_repository import BookingRepository
from .event_outbox_repository import EventOutboxRepository
from .payment_ledger_repository import PaymentLedgerRepository


class RepositoryFactory:
    """Factory class for creating repository instances."""

    @staticmethod
    def create_booking_repository(db: Session) -> BookingRepository:
        return BookingRepository(db)

    @staticmethod
    def create_payment_ledger_repository(db: Session) -> PaymentLedgerRepository:
        return PaymentLedgerRepository(db)

    @staticmethod
    def create_event_outbox_repository(db: Session) -> EventOutboxRepository:
        return EventOutboxRepository(db)
