# backend/app/repositories/booking_repository.py
"""
Booking Repository for the booking payments service.

The payment orchestrator reads bookings by id and writes back status,
charge flags, gateway references and cancellation outcome. It never
creates or deletes bookings; ``create`` exists for the booking flow and
for tests.
"""

import logging
from typing import Any, Optional

from sqlalchemy.orm import Session

from ..models.booking import Booking
from .base_repository import BaseRepository

logger = logging.getLogger(__name__)


class BookingRepository(BaseRepository[Booking]):
    """Repository for booking payment state."""

    def __init__(self, db: Session):
        super().__init__(db, Booking)

    def get_for_payment_update(self, booking_id: str) -> Optional[Booking]:
        """Load a booking and lock its row for the rest of the transaction (PostgreSQL)."""
        return self.get_by_id(booking_id, for_update=True)

    def apply_payment_state(self, booking: Booking, **changes: Any) -> Booking:
        """Set payment columns on an already-loaded booking and flush."""
        for key, value in changes.items():
            if not hasattr(booking, key):
                raise AttributeError(f"Booking has no attribute {key}")
            setattr(booking, key, value)
        self.db.flush()
        return booking
