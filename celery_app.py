"""Celery application factory for queued dispatch cycles."""
from __future__ import annotations

import os
from celery import Celery

from notify_dispatch.config import DEFAULT_QUEUE_TIME_LIMIT

DEFAULT_BROKER_URL = os.getenv("CELERY_BROKER_URL", os.getenv("REDIS_URL", "redis://localhost:6379/0"))
DEFAULT_BACKEND_URL = os.getenv("CELERY_RESULT_BACKEND", DEFAULT_BROKER_URL)


def create_celery_app() -> Celery:
    """Create and configure the Celery app for the project."""
    time_limit = int(os.getenv("NOTIFY_QUEUE_TIME_LIMIT", str(DEFAULT_QUEUE_TIME_LIMIT)))
    celery_app = Celery(
        "notify_dispatch",
        broker=DEFAULT_BROKER_URL,
        backend=DEFAULT_BACKEND_URL,
        include=["notify_dispatch.tasks"],
    )

    celery_app.conf.update(
        task_serializer="json",
        result_serializer="json",
        accept_content=["json"],
        timezone=os.getenv("CELERY_TIMEZONE", "UTC"),
        enable_utc=True,
        task_acks_late=True,
        # cycles stop at time_limit themselves; this is the hard kill
        task_time_limit=time_limit * 2,
    )

    return celery_app


celery_app = create_celery_app()
