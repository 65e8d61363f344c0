# backend/app/services/notification_dispatcher.py
"""
Delivery of booking payment events from the outbox.

The dispatcher itself (email, push, SMS) lives outside this service; here we
only hand it each pending event and track delivery attempts. Dispatch
failures never touch bookings or the payment ledger.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, TypedDict

from sqlalchemy.orm import Session

from ..events.booking_events import BookingPaymentEvent
from ..monitoring.prometheus_metrics import prometheus_metrics
from ..repositories.event_outbox_repository import EventOutboxRepository
from .base import BaseService

logger = logging.getLogger(__name__)

BACKOFF_SECONDS = [30, 120, 600, 1800, 7200]


def next_backoff(attempt_number: int) -> int:
    """Return backoff delay for the given attempt (1-indexed)."""
    index = max(0, min(attempt_number - 1, len(BACKOFF_SECONDS) - 1))
    return BACKOFF_SECONDS[index]


class NotificationDispatcher(Protocol):
    def dispatch(self, event: BookingPaymentEvent) -> None:
        ...


class LoggingNotificationDispatcher:
    """Default dispatcher: records the event in the application log."""

    def dispatch(self, event: BookingPaymentEvent) -> None:
        logger.info(
            "Booking payment notification %s for booking %s (refund=%s)",
            event.name,
            event.booking_id,
            event.refund_amount,
        )


class DispatchResults(TypedDict):
    sent: int
    retried: int
    failed: int


class NotificationOutboxService(BaseService):
    """Drains pending booking payment events into a NotificationDispatcher."""

    def __init__(
        self,
        db: Session,
        dispatcher: Optional[NotificationDispatcher] = None,
        outbox_repository: Optional[EventOutboxRepository] = None,
        max_attempts: int = 5,
    ):
        super().__init__(db)
        self.dispatcher = dispatcher or LoggingNotificationDispatcher()
        self.outbox_repo = outbox_repository or EventOutboxRepository(db)
        self.max_attempts = max_attempts

    @BaseService.measure_operation("dispatch_pending_notifications")
    def dispatch_pending(self, limit: int = 100) -> DispatchResults:
        results: DispatchResults = {"sent": 0, "retried": 0, "failed": 0}

        with self.transaction():
            for row in self.outbox_repo.fetch_pending(limit=limit):
                attempt_number = (row.attempt_count or 0) + 1
                try:
                    self.dispatcher.dispatch(BookingPaymentEvent.from_dict(dict(row.payload or {})))
                except Exception as exc:
                    terminal = attempt_number >= self.max_attempts
                    self.outbox_repo.mark_failed(
                        row.id,
                        attempt_count=attempt_number,
                        backoff_seconds=next_backoff(attempt_number),
                        error=str(exc),
                        terminal=terminal,
                    )
                    if terminal:
                        results["failed"] += 1
                        prometheus_metrics.record_notification_outcome(row.event_type, "failed")
                        self.logger.error(
                            "Outbox event %s failed permanently after %s attempts",
                            row.id,
                            attempt_number,
                            exc_info=exc,
                        )
                    else:
                        results["retried"] += 1
                        self.logger.warning(
                            "Dispatch of outbox event %s failed (attempt %s): %s",
                            row.id,
                            attempt_number,
                            exc,
                        )
                    continue

                self.outbox_repo.mark_sent(row.id, attempt_number)
                results["sent"] += 1
                prometheus_metrics.record_notification_outcome(row.event_type, "sent")

        return results
