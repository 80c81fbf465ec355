"""Boundary to the host application's entities.

Loading entities, checking view access and describing entity fields belong to
the host application. The dispatcher only talks to them through
:class:`EntityGateway`.
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set

CATEGORY_REFERENCE = "category_reference"


@dataclass(frozen=True, slots=True)
class FieldDefinition:
    """Declared shape of an entity field."""

    name: str
    type: str
    target_type: Optional[str] = None
    multiple: bool = False

    @property
    def references_categories(self) -> bool:
        if self.type == CATEGORY_REFERENCE:
            return True
        return self.type == "entity_reference" and self.target_type == "taxonomy_term"


class EntityGateway(ABC):
    """Read-only access to host entities.

    Only :meth:`load` and :meth:`can_view` are required. The other hooks have
    attribute-based defaults; ``group_memberships`` returning ``None`` means
    the host has no grouping subsystem.
    """

    @abstractmethod
    def load(self, entity_type: str, entity_id: Any) -> Optional[Any]:
        ...

    @abstractmethod
    def can_view(self, user_id: Any, entity_type: str, entity: Any) -> bool:
        ...

    def load_many(self, entity_type: str, entity_ids: Iterable[Any]) -> Dict[Any, Any]:
        loaded: Dict[Any, Any] = {}
        for entity_id in entity_ids:
            entity = self.load(entity_type, entity_id)
            if entity is not None:
                loaded[entity_id] = entity
        return loaded

    def entity_id(self, entity_type: str, entity: Any) -> Any:
        return getattr(entity, "id")

    def owner_id(self, entity_type: str, entity: Any) -> Optional[Any]:
        return getattr(entity, "user_id", None)

    def field_definitions(self, entity_type: str, entity: Any) -> List[FieldDefinition]:
        return []

    def field_value(self, entity_type: str, entity: Any, field_name: str) -> Any:
        return getattr(entity, field_name, None)

    def group_memberships(self, entity_type: str, entity: Any) -> Optional[Dict[str, Set[Any]]]:
        return None
