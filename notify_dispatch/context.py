"""Derivation of the entity context an event's subscribers are looked up in.

The context starts with the event entity itself and is widened by one hop
along well-known relations: the author of a comment-like entity, the parent
container it is attached to, and for each container its owner, its groups
and the category terms it references. Each relation is an augmenter so a
deployment can add or remove relation kinds.
"""
from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Sequence

from .entities import EntityGateway
from .models import Context, DispatchOptions, context_is_empty

LOGGER = logging.getLogger(__name__)

USER_TYPE = "user"
CONTAINER_TYPE = "node"
CATEGORY_TYPE = "taxonomy_term"


def _add(context: Context, entity_type: str, ids: Iterable[Any]) -> None:
    bucket = context.setdefault(entity_type, set())
    for entity_id in ids:
        if entity_id is not None:
            bucket.add(entity_id)


class AttachmentAugmenter:
    """Adds the parent container and author of an attached entity (e.g. a comment)."""

    def __init__(
        self,
        entity_type: str = "comment",
        parent_field: str = "node_id",
        parent_type: str = CONTAINER_TYPE,
        author_field: str = "user_id",
    ) -> None:
        self.entity_type = entity_type
        self.parent_field = parent_field
        self.parent_type = parent_type
        self.author_field = author_field

    def augment_entity(self, entity_type: str, entity: Any, context: Context, gateway: EntityGateway) -> None:
        if entity_type != self.entity_type:
            return
        _add(context, self.parent_type, [gateway.field_value(entity_type, entity, self.parent_field)])
        _add(context, USER_TYPE, [gateway.field_value(entity_type, entity, self.author_field)])


class OwnerAugmenter:
    def augment_container(self, container_type: str, container: Any, context: Context, gateway: EntityGateway) -> None:
        _add(context, USER_TYPE, [gateway.owner_id(container_type, container)])


class GroupAugmenter:
    """Adds the groups a container belongs to, when the host has groups at all."""

    def augment_container(self, container_type: str, container: Any, context: Context, gateway: EntityGateway) -> None:
        memberships = gateway.group_memberships(container_type, container)
        if memberships is None:
            return
        for group_type, group_ids in memberships.items():
            _add(context, group_type, group_ids)


class CategoryAugmenter:
    """Adds category terms referenced by any category-reference field of a container."""

    def __init__(self, category_type: str = CATEGORY_TYPE) -> None:
        self.category_type = category_type

    def augment_container(self, container_type: str, container: Any, context: Context, gateway: EntityGateway) -> None:
        for definition in gateway.field_definitions(container_type, container):
            if not definition.references_categories:
                continue
            value = gateway.field_value(container_type, container, definition.name)
            if value is None:
                continue
            if not definition.multiple or not isinstance(value, (list, tuple, set, frozenset)):
                value = [value]
            _add(context, self.category_type, value)


DEFAULT_ENTITY_AUGMENTERS = (AttachmentAugmenter(),)
DEFAULT_CONTAINER_AUGMENTERS = (OwnerAugmenter(), GroupAugmenter(), CategoryAugmenter())


class ContextExtractor:
    def __init__(
        self,
        gateway: EntityGateway,
        *,
        container_type: str = CONTAINER_TYPE,
        entity_augmenters: Optional[Sequence[Any]] = None,
        container_augmenters: Optional[Sequence[Any]] = None,
    ) -> None:
        self.gateway = gateway
        self.container_type = container_type
        self.entity_augmenters: List[Any] = list(
            DEFAULT_ENTITY_AUGMENTERS if entity_augmenters is None else entity_augmenters
        )
        self.container_augmenters: List[Any] = list(
            DEFAULT_CONTAINER_AUGMENTERS if container_augmenters is None else container_augmenters
        )

    def extract(
        self,
        entity_type: str,
        entity: Any,
        options: Optional[DispatchOptions] = None,
        context: Optional[Context] = None,
    ) -> Context:
        if not context_is_empty(context):
            return context

        derived: Context = {entity_type: {self.gateway.entity_id(entity_type, entity)}}
        if options is not None and options.skip_context:
            return derived

        for augmenter in self.entity_augmenters:
            augmenter.augment_entity(entity_type, entity, derived, self.gateway)

        container_ids = derived.get(self.container_type)
        if not container_ids:
            return derived

        containers = self.gateway.load_many(self.container_type, sorted(container_ids))
        # iterate a snapshot; augmenters may add to the container bucket itself
        for container in list(containers.values()):
            for augmenter in self.container_augmenters:
                augmenter.augment_container(self.container_type, container, derived, self.gateway)

        LOGGER.debug(
            "Derived context for %s %s: %s",
            entity_type,
            self.gateway.entity_id(entity_type, entity),
            {key: len(ids) for key, ids in derived.items()},
        )
        return derived

