# backend/app/tasks/__init__.py
"""
Celery tasks package for the booking payments service.

This package contains the periodic payment tasks:
- Deferred capture of service amounts at the 24-hour mark
- Dispatch of booking payment notifications from the outbox
"""

from app.tasks.celery_app import BaseTask, celery_app
from app.tasks.payment_tasks import (
    capture_due_payment_schedules,
    dispatch_booking_payment_events,
)

__all__ = [
    "celery_app",
    "BaseTask",
    "capture_due_payment_schedules",
    "dispatch_booking_payment_events",
]

# This allows running celery with: celery -A app.tasks worker
