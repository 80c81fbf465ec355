from __future__ import annotations

import weakref
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Set

from .config import DispatchSettings

# entity type name -> set of entity ids relevant to an event
Context = Dict[str, Set[Any]]


def copy_context(context: Optional[Mapping[str, Iterable[Any]]]) -> Context:
    return {entity_type: set(ids) for entity_type, ids in (context or {}).items()}


def context_is_empty(context: Optional[Mapping[str, Iterable[Any]]]) -> bool:
    return not context or not any(context.values())


@dataclass(slots=True, weakref_slot=True)
class Message:
    """Notification payload handed to the notifiers.

    A persisted message is never mutated by the dispatcher; each recipient
    gets a clone (see :meth:`clone_for`) whose ``id`` is cleared and whose
    ``user_id`` is the recipient.
    """

    user_id: Optional[Any]
    template: str = "general"
    subject: str = ""
    body_text: str = ""
    body_html: Optional[str] = None
    arguments: Dict[str, Any] = field(default_factory=dict)
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    delivery_state: Dict[str, Any] = field(default_factory=dict, compare=False)
    _original: Optional[weakref.ref] = field(default=None, repr=False, compare=False)

    @property
    def is_saved(self) -> bool:
        return self.id is not None

    @property
    def original(self) -> Optional["Message"]:
        """The canonical message this clone was made from, if still alive."""
        if self._original is None:
            return None
        return self._original()

    def clone_for(self, user_id: Any) -> "Message":
        return replace(
            self,
            id=None,
            user_id=user_id,
            arguments=dict(self.arguments),
            delivery_state={},
            _original=weakref.ref(self),
        )


@dataclass(slots=True)
class SubscriptionRecord:
    """Per-user subscription data: matched rule names and requested channels."""

    flags: List[str] = field(default_factory=list)
    notifiers: List[str] = field(default_factory=list)

    def merge(self, other: "SubscriptionRecord") -> None:
        for flag in other.flags:
            if flag not in self.flags:
                self.flags.append(flag)
        self.add_notifiers(other.notifiers)

    def add_notifiers(self, channels: Iterable[str]) -> None:
        for channel in channels:
            if channel not in self.notifiers:
                self.notifiers.append(channel)

    def to_dict(self) -> Dict[str, List[str]]:
        return {"flags": list(self.flags), "notifiers": list(self.notifiers)}

    @classmethod
    def from_value(cls, value: Any) -> "SubscriptionRecord":
        if isinstance(value, SubscriptionRecord):
            return cls(flags=list(value.flags), notifiers=list(value.notifiers))
        value = value or {}
        return cls(flags=list(value.get("flags") or []), notifiers=list(value.get("notifiers") or []))


@dataclass(slots=True)
class ChannelOptions:
    """Per-channel delivery options."""

    save_on_failure: bool = False
    save_on_success: bool = False

    def to_dict(self) -> Dict[str, bool]:
        return {"save_on_failure": self.save_on_failure, "save_on_success": self.save_on_success}

    @classmethod
    def from_value(cls, value: Any) -> "ChannelOptions":
        if isinstance(value, ChannelOptions):
            return value
        value = value or {}
        return cls(
            save_on_failure=bool(value.get("save_on_failure", False)),
            save_on_success=bool(value.get("save_on_success", False)),
        )


@dataclass(slots=True)
class DispatchOptions:
    """Options for one dispatch call.

    ``use_queue`` and ``notify_message_owner`` default to ``None`` meaning
    "take the process setting"; ``range`` of ``None`` means unbounded unless
    the queue is in use. Call :meth:`normalized` to resolve them.
    """

    save_message: bool = True
    skip_context: bool = False
    last_user_id: Optional[Any] = None
    explicit_recipients: Dict[Any, SubscriptionRecord] = field(default_factory=dict)
    range: Optional[int] = None
    deadline: Optional[float] = None
    use_queue: Optional[bool] = None
    inside_queue_cycle: bool = False
    entity_access_check: bool = True
    notify_message_owner: Optional[bool] = None

    def normalized(self, settings: DispatchSettings) -> "DispatchOptions":
        use_queue = settings.use_queue if self.use_queue is None else self.use_queue
        owner = settings.notify_message_owner if self.notify_message_owner is None else self.notify_message_owner
        range_ = self.range
        if range_ is None and use_queue:
            range_ = settings.queue_range
        recipients = {
            user_id: SubscriptionRecord.from_value(value)
            for user_id, value in (self.explicit_recipients or {}).items()
        }
        return replace(
            self,
            use_queue=use_queue,
            notify_message_owner=owner,
            range=range_,
            explicit_recipients=recipients,
        )

    def to_dict(self) -> Dict[str, Any]:
        # deadline belongs to a single worker cycle and is never persisted
        return {
            "save_message": self.save_message,
            "skip_context": self.skip_context,
            "last_user_id": self.last_user_id,
            "explicit_recipients": [
                [user_id, SubscriptionRecord.from_value(record).to_dict()]
                for user_id, record in self.explicit_recipients.items()
            ],
            "range": self.range,
            "use_queue": self.use_queue,
            "inside_queue_cycle": self.inside_queue_cycle,
            "entity_access_check": self.entity_access_check,
            "notify_message_owner": self.notify_message_owner,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DispatchOptions":
        recipients = {
            user_id: SubscriptionRecord.from_value(record)
            for user_id, record in data.get("explicit_recipients") or []
        }
        return cls(
            save_message=bool(data.get("save_message", True)),
            skip_context=bool(data.get("skip_context", False)),
            last_user_id=data.get("last_user_id"),
            explicit_recipients=recipients,
            range=data.get("range"),
            use_queue=data.get("use_queue"),
            inside_queue_cycle=bool(data.get("inside_queue_cycle", False)),
            entity_access_check=bool(data.get("entity_access_check", True)),
            notify_message_owner=data.get("notify_message_owner"),
        )


@dataclass(slots=True)
class QueueTask:
    """Resumable unit of work persisted to the external queue."""

    message_id: int
    entity_type: str
    entity_id: Any
    notify_options: Dict[str, ChannelOptions] = field(default_factory=dict)
    subscribe_options: DispatchOptions = field(default_factory=DispatchOptions)
    context: Context = field(default_factory=dict)
    cursor_user_id: Optional[Any] = None

    def to_payload(self) -> Dict[str, Any]:
        """JSON-safe form; context sets become sorted lists."""
        return {
            "message_id": self.message_id,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "notify_options": {name: opts.to_dict() for name, opts in self.notify_options.items()},
            "subscribe_options": self.subscribe_options.to_dict(),
            "context": {
                entity_type: sorted(ids, key=lambda value: (str(type(value)), value))
                for entity_type, ids in self.context.items()
            },
            "cursor_user_id": self.cursor_user_id,
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "QueueTask":
        return cls(
            message_id=payload["message_id"],
            entity_type=payload["entity_type"],
            entity_id=payload["entity_id"],
            notify_options={
                name: ChannelOptions.from_value(opts)
                for name, opts in (payload.get("notify_options") or {}).items()
            },
            subscribe_options=DispatchOptions.from_dict(payload.get("subscribe_options") or {}),
            context=copy_context(payload.get("context")),
            cursor_user_id=payload.get("cursor_user_id"),
        )
