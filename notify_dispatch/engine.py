"""Dispatch of one event's message to its subscribers.

A dispatch either runs to completion in the calling process or, in queued
mode, is chopped into worker cycles. Each cycle resolves one page of
subscribers past the cursor, delivers until the page is done or the cycle's
deadline passes, and hands a new task carrying the advanced cursor back to
the queue. The chain ends on the first cycle that resolves nobody.
"""
from __future__ import annotations

import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, Mapping, Optional, Protocol

from .config import DispatchSettings
from .errors import InvalidStateError
from .models import ChannelOptions, Context, DispatchOptions, Message, QueueTask, context_is_empty, copy_context
from .resolver import SubscriberMap, SubscriberResolver

LOGGER = logging.getLogger(__name__)


class TaskQueue(Protocol):
    def enqueue(self, task: QueueTask) -> None:
        ...


def _ahead(candidate: Optional[Any], cursor: Optional[Any]) -> bool:
    if candidate is None:
        return False
    return cursor is None or candidate > cursor


class DispatchEngine:
    def __init__(
        self,
        resolver: SubscriberResolver,
        invoker,
        settings: DispatchSettings,
        *,
        message_store,
        queue: Optional[TaskQueue] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.resolver = resolver
        self.invoker = invoker
        self.settings = settings
        self.message_store = message_store
        self.queue = queue
        self.clock = clock

    def send(
        self,
        entity_type: str,
        entity: Any,
        message: Message,
        notify_options: Optional[Mapping[str, Any]] = None,
        options: Optional[DispatchOptions] = None,
        context: Optional[Context] = None,
    ) -> Message:
        """Notify every subscriber of ``entity`` about ``message``.

        Returns the canonical message, saved first when ``save_message`` is
        set. Raises :class:`InvalidStateError` when queued mode is requested
        for a message that has not been saved. A ``deadline`` passed to a
        top-level queued call is not stored on the task; each worker cycle
        gets its own deadline from the scheduler.
        """
        options = (options or DispatchOptions()).normalized(self.settings)
        channel_options: Dict[str, ChannelOptions] = {
            name: ChannelOptions.from_value(value) for name, value in (notify_options or {}).items()
        }

        if not message.is_saved and options.save_message:
            self.message_store.save(message)

        if options.use_queue and not options.inside_queue_cycle:
            # derive once here so worker cycles never redo it
            context = self.resolver.extractor.extract(entity_type, entity, options, context)
            if options.deadline is not None:
                LOGGER.debug(
                    "Discarding deadline %s for queued message %s; cycles set their own",
                    options.deadline,
                    message.id,
                )
            options = replace(options, skip_context=True)
            self._enqueue(entity_type, entity, message, channel_options, options, context)
            return message

        if context_is_empty(context) and not options.explicit_recipients:
            context = self.resolver.extractor.extract(entity_type, entity, options, context)

        recipients = self._recipients(entity_type, entity, message, options, context)
        if not recipients:
            if options.use_queue and _ahead(recipients.high_water, options.last_user_id):
                # the whole page was filtered out, skip past it
                cursor_options = replace(options, last_user_id=recipients.high_water)
                self._enqueue(entity_type, entity, message, channel_options, cursor_options, context)
            elif options.use_queue:
                LOGGER.info("No subscribers left for message %s, queue chain complete", message.id)
            return message

        entity_id = self.resolver.gateway.entity_id(entity_type, entity)
        last_user_id = None
        interrupted = False
        for user_id in sorted(recipients):
            record = recipients[user_id]
            last_user_id = user_id
            clone = message.clone_for(user_id)
            clone.delivery_state.update(
                entity_type=entity_type,
                entity_id=entity_id,
                flags=list(record.flags),
            )
            for channel in record.notifiers:
                delivered = self.invoker.invoke(clone, channel_options.get(channel), channel)
                LOGGER.debug("Message %s to user %s via %s: %s", message.id, user_id, channel, delivered)
                if options.use_queue and self._deadline_passed(options.deadline):
                    interrupted = True
                    break
            if interrupted:
                LOGGER.info("Deadline reached for message %s after user %s", message.id, user_id)
                break

        if options.use_queue:
            cursor = last_user_id
            if not interrupted and _ahead(recipients.high_water, cursor):
                cursor = recipients.high_water
            self._enqueue(entity_type, entity, message, channel_options, replace(options, last_user_id=cursor), context)
        return message

    def _recipients(
        self,
        entity_type: str,
        entity: Any,
        message: Message,
        options: DispatchOptions,
        context: Optional[Context],
    ) -> SubscriberMap:
        if not options.explicit_recipients:
            return self.resolver.resolve(entity_type, entity, message, options, context)

        user_ids = sorted(
            user_id for user_id in options.explicit_recipients if _ahead(user_id, options.last_user_id)
        )
        if options.range:
            user_ids = user_ids[: options.range]
        return SubscriberMap((user_id, options.explicit_recipients[user_id]) for user_id in user_ids)

    def _deadline_passed(self, deadline: Optional[float]) -> bool:
        return deadline is not None and self.clock() >= deadline

    def _enqueue(
        self,
        entity_type: str,
        entity: Any,
        message: Message,
        channel_options: Dict[str, ChannelOptions],
        options: DispatchOptions,
        context: Optional[Context],
    ) -> QueueTask:
        if not message.is_saved:
            raise InvalidStateError("Cannot add a non saved message to the queue.")
        if self.queue is None:
            raise InvalidStateError("Queued dispatch requested but no task queue is configured.")

        snapshot = replace(options, inside_queue_cycle=False, deadline=None)
        task = QueueTask(
            message_id=message.id,
            entity_type=entity_type,
            entity_id=self.resolver.gateway.entity_id(entity_type, entity),
            notify_options=dict(channel_options),
            subscribe_options=snapshot,
            context=copy_context(context),
            cursor_user_id=snapshot.last_user_id,
        )
        self.queue.enqueue(task)
        LOGGER.info(
            "Queued message %s for %s %s after user %s",
            message.id,
            entity_type,
            task.entity_id,
            snapshot.last_user_id,
        )
        return task
