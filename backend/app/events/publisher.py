"""Event publisher - writes events to the outbox for background dispatch."""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Protocol

from app.repositories.event_outbox_repository import EventOutboxRepository


class Event(Protocol):
    """Protocol for event types."""

    booking_id: str
    event_type: str

    @property
    def name(self) -> str:
        ...

    def to_dict(self) -> Dict[str, Any]:
        ...


class EventPublisher:
    """Publishes booking payment events to the outbox for async dispatch."""

    def __init__(self, outbox_repository: EventOutboxRepository):
        self.outbox_repo = outbox_repository

    def publish(self, event: Event) -> str:
        """
        Queue an event for background dispatch.

        One outbox row per booking and event type, so re-publishing after a
        retried operation does not notify twice. Returns the outbox row id.
        """
        payload = event.to_dict()

        # JSON-safe payload for the outbox column
        for key, value in payload.items():
            if isinstance(value, datetime):
                payload[key] = value.isoformat()
            elif isinstance(value, Decimal):
                payload[key] = str(value)

        row = self.outbox_repo.enqueue(
            event_type=event.name,
            aggregate_id=event.booking_id,
            payload=payload,
            idempotency_key=f"{event.name}:{event.booking_id}",
        )
        return str(row.id)
