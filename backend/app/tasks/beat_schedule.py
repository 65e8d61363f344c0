# backend/app/tasks/beat_schedule.py
"""Periodic jobs: deferred service-amount captures and outbox delivery."""

import os
from typing import Any

from celery.schedules import crontab

CAPTURE_TASK = "app.tasks.payment_tasks.capture_due_payment_schedules"
DISPATCH_TASK = "app.tasks.payment_tasks.dispatch_booking_payment_events"


def _entry(task: str, schedule: Any, queue: str, priority: int) -> dict[str, Any]:
    return {"task": task, "schedule": schedule, "options": {"queue": queue, "priority": priority}}


CELERYBEAT_SCHEDULE: dict[str, dict[str, Any]] = {
    # Only finds work under the authorize_until_24h accept policy
    "capture-due-payment-schedules": _entry(CAPTURE_TASK, crontab(minute="*/15"), "payments", 9),
    "dispatch-booking-payment-events": _entry(DISPATCH_TASK, crontab(), "notifications", 6),
}

# Per-environment replacements for entries above
SCHEDULE_CONFIG: dict[str, dict[str, dict[str, Any]]] = {
    "development": {
        "dispatch-booking-payment-events": _entry(
            DISPATCH_TASK, crontab(minute="*/5"), "notifications", 6
        ),
    },
}


def get_beat_schedule(environment: str = "production") -> dict[str, dict[str, Any]]:
    """
    Beat entries for ``environment``.

    Setting DISABLE_DEFERRED_CAPTURE drops the capture job, e.g. on a
    replica that should only deliver notifications.
    """
    schedule = {**CELERYBEAT_SCHEDULE, **SCHEDULE_CONFIG.get(environment, {})}
    if os.getenv("DISABLE_DEFERRED_CAPTURE", "").lower() in {"1", "true", "yes"}:
        schedule.pop("capture-due-payment-schedules", None)
    return schedule
