"""
Celery tasks for booking payment processing.

- capture_due_payment_schedules: capture service amounts whose deferred
  capture time (24 hours before the booking) has arrived
- dispatch_booking_payment_events: deliver queued accept/decline/cancel
  notifications from the event outbox
"""

from contextlib import contextmanager
from datetime import datetime, timezone
import logging
from typing import Any, Callable, Iterator, ParamSpec, Protocol, TypedDict, TypeVar, cast

from celery.result import AsyncResult
from sqlalchemy.orm import Session

from app.core.config import settings
from app.database import SessionLocal
from app.services.booking_payment_service import BookingPaymentService
from app.services.dependencies import get_payment_gateway
from app.services.notification_dispatcher import NotificationOutboxService
from app.tasks.celery_app import celery_app

P = ParamSpec("P")
R = TypeVar("R", covariant=True)


class TaskWrapper(Protocol[P, R]):
    def __call__(self, *args: P.args, **kwargs: P.kwargs) -> R:
        ...

    delay: Callable[..., AsyncResult]
    apply_async: Callable[..., AsyncResult]


def typed_task(
    *task_args: Any, **task_kwargs: Any
) -> Callable[[Callable[P, R]], TaskWrapper[P, R]]:
    """Return a typed Celery task decorator for mypy."""

    return cast(
        Callable[[Callable[P, R]], TaskWrapper[P, R]],
        celery_app.task(*task_args, **task_kwargs),
    )


class CaptureJobResults(TypedDict):
    captured: int
    failed: int
    cancelled: int
    retry: int
    processed_at: str


class DispatchJobResults(TypedDict):
    sent: int
    retried: int
    failed: int
    processed_at: str


logger = logging.getLogger(__name__)


@contextmanager
def _session_scope() -> Iterator[Session]:
    """Provide a session for one task run; services commit their own work."""
    session = SessionLocal()
    try:
        yield session
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


@typed_task(name="app.tasks.payment_tasks.capture_due_payment_schedules", max_retries=0)
def capture_due_payment_schedules(limit: int = 100) -> CaptureJobResults:
    """
    Capture deferred service amounts that are now inside the cutoff window.

    Runs every 15 minutes. Each schedule is settled through the same accept
    path the API uses, so the idempotency keys protect against a capture
    racing a manual accept.
    """
    now = datetime.now(timezone.utc)
    with _session_scope() as db:
        service = BookingPaymentService(db, get_payment_gateway(), config=settings)
        outcome = service.capture_due_schedules(now=now, limit=limit)

    results: CaptureJobResults = {
        "captured": outcome["processed"],
        "failed": outcome["failed"],
        "cancelled": outcome["cancelled"],
        "retry": outcome["retry"],
        "processed_at": now.isoformat(),
    }
    if outcome["failed"]:
        logger.warning(f"Deferred capture finished with failures: {results}")
    return results


@typed_task(name="app.tasks.payment_tasks.dispatch_booking_payment_events", max_retries=0)
def dispatch_booking_payment_events(limit: int = 0) -> DispatchJobResults:
    """Deliver pending booking payment notifications from the outbox."""
    with _session_scope() as db:
        service = NotificationOutboxService(db, max_attempts=settings.outbox_max_attempts)
        outcome = service.dispatch_pending(limit=limit or settings.outbox_batch_size)

    if outcome["sent"] or outcome["failed"]:
        logger.info(f"Outbox dispatch: {outcome}")
    return {
        "sent": outcome["sent"],
        "retried": outcome["retried"],
        "failed": outcome["failed"],
        "processed_at": datetime.now(timezone.utc).isoformat(),
    }
