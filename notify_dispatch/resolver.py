from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional

from .config import DispatchSettings
from .context import ContextExtractor
from .entities import EntityGateway
from .models import Context, DispatchOptions, Message, SubscriptionRecord, context_is_empty
from .providers import Candidates, PostResolutionTransform, ResolutionContext, SubscriberProvider

LOGGER = logging.getLogger(__name__)


def _past_cursor(user_id: Any, cursor: Optional[Any]) -> bool:
    return cursor is None or user_id > cursor


class SubscriberMap(dict):
    """Resolved subscribers keyed by user id.

    ``high_water`` is the highest user id past the cursor that any provider
    returned, including candidates that were filtered out afterwards. Paging
    uses it to move the cursor past a page whose candidates were all excluded.
    """

    high_water: Optional[Any] = None


class SubscriberResolver:
    def __init__(
        self,
        gateway: EntityGateway,
        settings: DispatchSettings,
        *,
        extractor: Optional[ContextExtractor] = None,
        providers: Optional[Iterable[SubscriberProvider]] = None,
        transforms: Optional[Iterable[PostResolutionTransform]] = None,
    ) -> None:
        self.gateway = gateway
        self.settings = settings
        self.extractor = extractor or ContextExtractor(gateway)
        self.providers: List[SubscriberProvider] = list(providers or [])
        self.transforms: List[PostResolutionTransform] = list(transforms or [])

    def register_provider(self, provider: SubscriberProvider) -> None:
        if provider not in self.providers:
            self.providers.append(provider)

    def register_transform(self, transform: PostResolutionTransform) -> None:
        if transform not in self.transforms:
            self.transforms.append(transform)

    def resolve(
        self,
        entity_type: str,
        entity: Any,
        message: Message,
        options: DispatchOptions,
        context: Optional[Context] = None,
    ) -> SubscriberMap:
        options = options.normalized(self.settings)
        if context_is_empty(context):
            context = self.extractor.extract(entity_type, entity, options)

        cursor = options.last_user_id
        result: Candidates = {}
        high_water = None
        for provider in self.providers:
            for user_id, value in provider.provide(message, options, context).items():
                if not _past_cursor(user_id, cursor):
                    continue
                if high_water is None or user_id > high_water:
                    high_water = user_id
                if not options.notify_message_owner and user_id == message.user_id:
                    continue
                if options.entity_access_check and not self.gateway.can_view(user_id, entity_type, entity):
                    LOGGER.debug("Skipping user %s: no view access to %s", user_id, entity_type)
                    continue
                record = SubscriptionRecord.from_value(value)
                if user_id in result:
                    result[user_id].merge(record)
                else:
                    result[user_id] = record

        for record in result.values():
            record.add_notifiers(self.settings.default_notifiers)

        resolution = ResolutionContext(
            entity_type=entity_type,
            entity=entity,
            message=message,
            options=options,
            context=context,
        )
        for transform in self.transforms:
            result = transform.transform(result, resolution)

        # transforms may reintroduce users the cursor has already passed
        subscribers = SubscriberMap(
            (user_id, record) for user_id, record in result.items() if _past_cursor(user_id, cursor)
        )
        subscribers.high_water = high_water
        LOGGER.debug("Resolved %d subscribers for %s message %s", len(subscribers), entity_type, message.id)
        return subscribers
