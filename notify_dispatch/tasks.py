from __future__ import annotations

import logging
import time
from typing import Any, Dict, Optional

from celery import shared_task

from .config import DEFAULT_QUEUE_TIME_LIMIT
from .models import QueueTask
from .worker import QueueWorker

LOGGER = logging.getLogger(__name__)

_worker: Optional[QueueWorker] = None
_time_limit: int = DEFAULT_QUEUE_TIME_LIMIT


def configure_worker(worker: QueueWorker, time_limit: int = DEFAULT_QUEUE_TIME_LIMIT) -> None:
    """Bind the worker the Celery task hands its payloads to."""
    global _worker, _time_limit
    _worker = worker
    _time_limit = time_limit


def get_worker() -> QueueWorker:
    if _worker is None:
        raise RuntimeError("notify_dispatch worker not configured; call configure_worker() at startup")
    return _worker


@shared_task(name="notify_dispatch.tasks.run_queue_task")
def run_queue_task(payload: Dict[str, Any]) -> str:
    task = QueueTask.from_payload(payload)
    deadline = time.time() + _time_limit
    get_worker().run_task(task, deadline=deadline)
    LOGGER.info("Processed dispatch cycle for message %s after user %s", task.message_id, task.cursor_user_id)
    return str(task.message_id)


class CeleryTaskQueue:
    """TaskQueue that ships each QueueTask to Celery as a JSON payload."""

    def __init__(self, task=None, queue_name: Optional[str] = None) -> None:
        self.task = task or run_queue_task
        self.queue_name = queue_name

    def enqueue(self, task: QueueTask) -> None:
        kwargs: Dict[str, Any] = {}
        if self.queue_name:
            kwargs["queue"] = self.queue_name
        self.task.apply_async(args=[task.to_payload()], **kwargs)
