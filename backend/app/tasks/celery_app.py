# backend/app/tasks/celery_app.py
"""
Celery worker and beat configuration.

Two queues are used: ``payments`` for deferred captures and
``notifications`` for draining the booking event outbox. Both share
a single Redis broker.
"""

import logging
import os
from typing import Any, Type, cast

from celery import Celery, Task
from celery.signals import setup_logging

from app.core.config import settings

TASK_MODULES = ("app.tasks.payment_tasks",)

TASK_ROUTES = {
    "app.tasks.payment_tasks.capture_due_payment_schedules": {"queue": "payments"},
    "app.tasks.payment_tasks.dispatch_booking_payment_events": {"queue": "notifications"},
}


def _broker_url() -> str:
    url = os.getenv("CELERY_BROKER_URL") or os.getenv("REDIS_URL") or settings.redis_url
    # Redis URLs without a database index default to db 0
    if not url.rstrip("/").rsplit("/", 1)[-1].isdigit():
        url = f"{url.rstrip('/')}/0"
    return url


def create_celery_app() -> Celery:
    broker_url = _broker_url()
    app = Celery(
        "booking_payments",
        broker=broker_url,
        backend=os.getenv("CELERY_RESULT_BACKEND") or broker_url,
        include=list(TASK_MODULES),
    )

    # A capture must not be lost to a worker crash, hence late acks
    app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone="UTC",
        enable_utc=True,
        task_acks_late=True,
        task_reject_on_worker_lost=True,
        worker_prefetch_multiplier=1,
        task_soft_time_limit=120,
        task_time_limit=300,
        task_default_retry_delay=60,
        worker_hijack_root_logger=False,
        broker_transport_options={"visibility_timeout": 3600},
        task_routes=TASK_ROUTES,
    )

    from app.tasks.beat_schedule import get_beat_schedule

    app.conf.beat_schedule = get_beat_schedule(settings.environment)
    return app


@setup_logging.connect  # type: ignore[misc]
def config_loggers(*args: Any, **kwargs: Any) -> None:
    """Use the service's log format instead of Celery's."""
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


celery_app = create_celery_app()


class BaseTask(Task):  # type: ignore[misc]
    """Logs failures and retries with the task id attached."""

    def on_failure(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).error(
            f"{self.name}[{task_id}] failed: {exc}",
            exc_info=True,
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_failure(exc, task_id, args, kwargs, einfo)

    def on_retry(self, exc: Exception, task_id: str, args: Any, kwargs: Any, einfo: Any) -> None:
        logging.getLogger(__name__).warning(
            f"{self.name}[{task_id}] retrying (attempt {self.request.retries}): {exc}",
            extra={"task_id": task_id, "task_name": self.name},
        )
        super().on_retry(exc, task_id, args, kwargs, einfo)


celery_app.Task = cast(Type[Task], BaseTask)
