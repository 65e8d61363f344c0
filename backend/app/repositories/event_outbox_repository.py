# backend/app/repositories/event_outbox_repository.py
"""
Storage for booking notification events awaiting delivery.

Rows are keyed by ``{event_name}:{booking_id}``, so publishing the same
booking event twice leaves a single row behind.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Optional, cast

from sqlalchemy import Select, insert, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.orm import Session
import ulid

from app.database.session_utils import get_dialect_name
from app.models.event_outbox import EventOutbox, EventOutboxStatus

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 1000


class EventOutboxRepository:
    def __init__(self, db: Session):
        self.db = db
        self._dialect = get_dialect_name(db, default="postgresql").lower()

    def _insert_ignoring_duplicates(self, values: dict[str, Any]) -> None:
        if self._dialect == "postgresql":
            stmt = (
                pg_insert(EventOutbox)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["idempotency_key"])
            )
        else:
            stmt = insert(EventOutbox).values(**values)
            if self._dialect == "sqlite":
                stmt = stmt.prefix_with("OR IGNORE")
        self.db.execute(stmt)
        self.db.flush()

    def enqueue(
        self,
        event_type: str,
        aggregate_id: str,
        payload: Optional[dict[str, Any]] = None,
        idempotency_key: Optional[str] = None,
    ) -> EventOutbox:
        """Store a pending event and return its row, which may predate this call."""
        key = idempotency_key or f"{event_type}:{aggregate_id}"
        self._insert_ignoring_duplicates(
            {
                "id": str(ulid.ULID()),
                "event_type": event_type,
                "aggregate_id": aggregate_id,
                "payload": payload or {},
                "idempotency_key": key,
                "status": EventOutboxStatus.PENDING.value,
                "attempt_count": 0,
                "next_attempt_at": datetime.now(timezone.utc),
            }
        )
        row = self.get_by_key(key)
        if row is None:
            raise RuntimeError(f"Outbox event {key} missing after insert")
        return row

    def get_by_key(self, idempotency_key: str) -> Optional[EventOutbox]:
        result = self.db.execute(
            select(EventOutbox).where(EventOutbox.idempotency_key == idempotency_key)
        )
        return cast(Optional[EventOutbox], result.scalar_one_or_none())

    def fetch_pending(self, limit: int = 100) -> list[EventOutbox]:
        """Due events, oldest first. PostgreSQL skips rows another worker holds."""
        stmt: Select[Any] = (
            select(EventOutbox)
            .where(EventOutbox.status == EventOutboxStatus.PENDING.value)
            .where(EventOutbox.next_attempt_at <= datetime.now(timezone.utc))
            .order_by(EventOutbox.next_attempt_at.asc(), EventOutbox.id.asc())
            .limit(limit)
        )
        if self._dialect == "postgresql":
            stmt = stmt.with_for_update(skip_locked=True)
        return cast(list[EventOutbox], list(self.db.execute(stmt).scalars().all()))

    def _set_state(self, event_id: str, **values: Any) -> None:
        values["updated_at"] = datetime.now(timezone.utc)
        self.db.execute(update(EventOutbox).where(EventOutbox.id == event_id).values(**values))
        self.db.flush()

    def mark_sent(self, event_id: str, attempt_count: int) -> None:
        self._set_state(
            event_id,
            status=EventOutboxStatus.SENT.value,
            attempt_count=attempt_count,
            last_error=None,
        )

    def mark_failed(
        self,
        event_id: str,
        *,
        attempt_count: int,
        backoff_seconds: int,
        error: str | None = None,
        terminal: bool = False,
    ) -> None:
        """Record a failed delivery; non-terminal failures go back to PENDING after the backoff."""
        delay = 0 if terminal else max(backoff_seconds, 1)
        self._set_state(
            event_id,
            status=(EventOutboxStatus.FAILED if terminal else EventOutboxStatus.PENDING).value,
            attempt_count=attempt_count,
            last_error=error[:MAX_ERROR_LENGTH] if error else None,
            next_attempt_at=datetime.now(timezone.utc) + timedelta(seconds=delay),
        )
