from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from sqlalchemy.orm import sessionmaker

from .channels import DiscordNotifier, EmailNotifier, NotifierInvoker
from .config import DispatchSettings, load_settings
from .context import ContextExtractor
from .engine import DispatchEngine, TaskQueue
from .entities import EntityGateway
from .models import Message
from .providers import ChannelOptInTransform, FlagSubscriptionProvider
from .resolver import SubscriberResolver
from .store import SqlMessageStore, SqlSubscriptionStore, create_session_factory
from .tasks import CeleryTaskQueue, configure_worker
from .worker import QueueWorker

LOGGER = logging.getLogger(__name__)


def create_message(
    user_id: Any,
    subject: str,
    body_lines: Iterable[str],
    *,
    template: str = "general",
    **arguments: Any,
) -> Message:
    body_text = "\n".join(body_lines)
    return Message(user_id=user_id, subject=subject, body_text=body_text, template=template, arguments=arguments)


@dataclass(slots=True)
class DispatchService:
    settings: DispatchSettings
    engine: DispatchEngine
    worker: QueueWorker
    resolver: SubscriberResolver
    messages: SqlMessageStore
    subscriptions: SqlSubscriptionStore

    def send(self, entity_type: str, entity: Any, message: Message, notify_options=None, options=None, context=None) -> Message:
        return self.engine.send(entity_type, entity, message, notify_options, options, context)


def build_dispatch_service(
    gateway: EntityGateway,
    settings: Optional[DispatchSettings] = None,
    *,
    session_factory: Optional[sessionmaker] = None,
    queue: Optional[TaskQueue] = None,
    notifiers: Optional[Iterable[Any]] = None,
    extractor: Optional[ContextExtractor] = None,
    channel_opt_in: bool = False,
    bind_celery: bool = False,
) -> DispatchService:
    """Wire stores, resolver, notifiers, engine and worker from settings.

    ``bind_celery`` routes queued cycles through Celery and registers the
    worker with :mod:`notify_dispatch.tasks`.
    """
    settings = settings or load_settings()
    session_factory = session_factory or create_session_factory(settings.database_url)
    messages = SqlMessageStore(session_factory)
    subscriptions = SqlSubscriptionStore(session_factory)

    resolver = SubscriberResolver(
        gateway,
        settings,
        extractor=extractor or ContextExtractor(gateway),
        providers=[FlagSubscriptionProvider(subscriptions, settings.flag_prefix)],
    )
    if channel_opt_in:
        resolver.register_transform(
            ChannelOptInTransform(subscriptions, opt_in_prefix=settings.opt_in_prefix, subscribe_prefix=settings.flag_prefix)
        )

    if notifiers is None:
        notifiers = [EmailNotifier(gateway), DiscordNotifier(gateway)]
    invoker = NotifierInvoker(notifiers, message_store=messages)

    if queue is None and bind_celery:
        queue = CeleryTaskQueue()
    engine = DispatchEngine(resolver, invoker, settings, message_store=messages, queue=queue)
    worker = QueueWorker(engine, gateway, messages)
    if bind_celery:
        configure_worker(worker, settings.queue_time_limit)
        LOGGER.info("Bound dispatch worker to Celery with %ss cycles", settings.queue_time_limit)

    return DispatchService(
        settings=settings,
        engine=engine,
        worker=worker,
        resolver=resolver,
        messages=messages,
        subscriptions=subscriptions,
    )
