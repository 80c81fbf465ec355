"""Extension points of subscriber resolution and their bundled implementations.

Providers contribute candidate subscribers for a context; transforms rewrite
the merged candidate set after default channels have been applied. Both are
invoked in registration order.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

from .config import DEFAULT_FLAG_PREFIX, DEFAULT_OPT_IN_PREFIX
from .models import Context, DispatchOptions, Message, SubscriptionRecord

LOGGER = logging.getLogger(__name__)

Candidates = Dict[Any, SubscriptionRecord]


@dataclass(slots=True)
class ResolutionContext:
    """What a transform gets to see about the dispatch being resolved."""

    entity_type: str
    entity: Any
    message: Message
    options: DispatchOptions
    context: Context


@runtime_checkable
class SubscriberProvider(Protocol):
    def provide(self, message: Message, options: DispatchOptions, context: Context) -> Candidates:
        """Return candidate subscribers keyed by user id."""
        ...


@runtime_checkable
class PostResolutionTransform(Protocol):
    def transform(self, candidates: Candidates, resolution: ResolutionContext) -> Candidates:
        """Return the candidate set to use; may add, drop or relabel entries."""
        ...


class FlagSubscriptionProvider:
    """Candidates from subscription rules whose name starts with ``prefix``.

    Rows are read in ascending user id order past ``options.last_user_id``
    and capped at ``options.range`` rows, so successive calls with the
    cursor advanced to the last returned user page through every subscriber
    exactly once.
    """

    def __init__(self, store, prefix: str = DEFAULT_FLAG_PREFIX) -> None:
        self.store = store
        self.prefix = prefix

    def provide(self, message: Message, options: DispatchOptions, context: Context) -> Candidates:
        entity_types = [entity_type for entity_type, ids in context.items() if ids]
        if not entity_types:
            return {}

        flags = self.store.flags_by_prefix(self.prefix, entity_types)
        if not flags:
            return {}

        scopes = {}
        for entity_type in entity_types:
            flag_ids = [flag_id for flag_id, (_, flag_type) in flags.items() if flag_type == entity_type]
            if flag_ids:
                scopes[entity_type] = (list(context[entity_type]), flag_ids)

        rows = self.store.subscription_rows(scopes, after_user_id=options.last_user_id, limit=options.range)
        candidates: Candidates = {}
        for flag_id, user_id in rows:
            record = candidates.setdefault(user_id, SubscriptionRecord())
            flag_name = flags[flag_id][0]
            if flag_name not in record.flags:
                record.flags.append(flag_name)

        LOGGER.debug(
            "Flag provider matched %d rows for %d users after cursor %s",
            len(rows),
            len(candidates),
            options.last_user_id,
        )
        return candidates


class ChannelOptInTransform:
    """Restrict one channel to users who opted in to it per subscription.

    A user subscribed through ``subscribe_node`` only keeps ``channel`` if they
    also hold ``email_node`` on one of the context entities.
    """

    def __init__(
        self,
        store,
        channel: str = "email",
        opt_in_prefix: str = DEFAULT_OPT_IN_PREFIX,
        subscribe_prefix: str = DEFAULT_FLAG_PREFIX,
    ) -> None:
        self.store = store
        self.channel = channel
        self.opt_in_prefix = opt_in_prefix
        self.subscribe_prefix = subscribe_prefix

    def opt_in_name(self, flag_name: str) -> Optional[str]:
        if not flag_name.startswith(self.subscribe_prefix):
            return None
        return self.opt_in_prefix + flag_name[len(self.subscribe_prefix):]

    def transform(self, candidates: Candidates, resolution: ResolutionContext) -> Candidates:
        wanted: Dict[Any, List[str]] = {}
        for user_id, record in candidates.items():
            if self.channel in record.notifiers:
                record.notifiers.remove(self.channel)
            names = [name for name in map(self.opt_in_name, record.flags) if name]
            if names:
                wanted[user_id] = names
        if not wanted:
            return candidates

        all_names = sorted({name for names in wanted.values() for name in names})
        held = self.store.users_with_flags(wanted.keys(), all_names, resolution.context)
        for user_id, names in wanted.items():
            if set(names) & set(held.get(user_id, [])):
                candidates[user_id].add_notifiers([self.channel])
        return candidates
