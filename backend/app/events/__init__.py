"""Booking payment events and the outbox publisher."""

from app.events.booking_events import ACCEPTED, CANCELLED, DECLINED, BookingPaymentEvent
from app.events.publisher import EventPublisher

__all__ = [
    "ACCEPTED",
    "CANCELLED",
    "DECLINED",
    "BookingPaymentEvent",
    "EventPublisher",
]
