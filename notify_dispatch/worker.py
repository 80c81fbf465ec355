from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Optional, Tuple

from .engine import DispatchEngine
from .entities import EntityGateway
from .errors import MissingResourceError
from .models import Message, QueueTask

LOGGER = logging.getLogger(__name__)


class QueueWorker:
    """Re-entry point for one queued dispatch cycle."""

    def __init__(self, engine: DispatchEngine, gateway: EntityGateway, message_store) -> None:
        self.engine = engine
        self.gateway = gateway
        self.message_store = message_store

    def _load_targets(self, task: QueueTask) -> Tuple[Any, Message]:
        entity = self.gateway.load(task.entity_type, task.entity_id)
        if entity is None:
            raise MissingResourceError(task.entity_type, task.entity_id)
        message = self.message_store.load(task.message_id)
        if message is None:
            raise MissingResourceError("message", task.message_id)
        return entity, message

    def run_task(self, task: QueueTask, deadline: Optional[float] = None) -> None:
        """Run one cycle of ``task``; ``deadline`` is an absolute time.time() value."""
        try:
            entity, message = self._load_targets(task)
        except MissingResourceError as exc:
            LOGGER.info("Dropping queued dispatch for message %s: %s", task.message_id, exc)
            return

        cursor = task.subscribe_options.last_user_id
        if cursor is None:
            cursor = task.cursor_user_id
        options = replace(
            task.subscribe_options,
            use_queue=True,
            inside_queue_cycle=True,
            deadline=deadline,
            last_user_id=cursor,
        )
        self.engine.send(task.entity_type, entity, message, task.notify_options, options, task.context)
