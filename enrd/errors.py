"""Error taxonomy for the routing core.

Every failure a client can observe is reported through the acknowledgment of
the inbound event that caused it. None of these are fatal to the hub.
"""

from __future__ import annotations


class RouterError(Exception):
    """Base class for errors reported back to the sender of an event."""

    @property
    def name(self) -> str:
        return type(self).__name__

    def to_ack(self, event: str) -> dict:
        return {"event": event, "error": self.name, "message": str(self)}


class InvalidPayload(RouterError, ValueError):
    """Malformed inbound event. Raised before any state is touched."""


class RoomNotOpen(RouterError):
    """A visitor tried to enter a room whose own connection has not opened it."""

    def __init__(self, room: str) -> None:
        super().__init__(f"room {room!r} must be open before you can enter")
        self.room = room


class DuplicateIdentity(RouterError):
    """A second live connection claimed a name the registry keeps unique."""

    def __init__(self, kind: str, name: str) -> None:
        super().__init__(f"{kind} {name!r} is already connected")
        self.kind = kind
        self.identity_name = name


class InternalInconsistency(RouterError):
    """State disagreed with an operation (e.g. leaving a group never joined).

    Logged and treated as a no-op by the router.
    """
