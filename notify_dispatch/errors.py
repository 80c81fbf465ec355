from __future__ import annotations


class DispatchError(RuntimeError):
    """Base class for dispatch failures."""


class InvalidStateError(DispatchError):
    """Raised when an operation needs a persisted message and got an unsaved one."""


class MissingResourceError(DispatchError):
    """Raised when a queued task references an entity or message that no longer loads."""

    def __init__(self, kind: str, identifier) -> None:
        super().__init__(f"{kind} {identifier!r} could not be loaded")
        self.kind = kind
        self.identifier = identifier
