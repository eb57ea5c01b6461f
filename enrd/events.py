"""Typed payloads for every protocol event.

Inbound bodies arrive as loosely shaped maps. ``parse_event`` turns them into
one dataclass per event name and raises ``InvalidPayload`` for anything that
is missing a room or visitor identity, so routing code never sees a
half-formed event.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, ClassVar

from .constants import (
    E_ALERT_VISITOR,
    E_CLOSE_ROOM,
    E_DISCONNECT_ALL,
    E_ENTER_ROOM,
    E_EXPOSE_ALL_CONNECTIONS,
    E_EXPOSE_AVAILABLE_ROOMS,
    E_EXPOSE_OPEN_ROOMS,
    E_EXPOSE_PENDING,
    E_EXPOSE_STATS,
    E_EXPOSE_VISITORS,
    E_EXPOSURE_WARNING,
    E_LEAVE_ROOM,
    E_OPEN_ROOM,
    E_PING_SERVER,
    NAME_MAX_CHARS,
    O_CHECK_IN,
    O_CHECK_OUT,
    O_EXPOSURE_ALERT,
    O_NOTIFY_ROOM,
    O_UPDATED_OCCUPANCY,
)
from .errors import InvalidPayload
from .names import normalize_name

ADMIN_QUERIES = frozenset(
    {
        E_EXPOSE_ALL_CONNECTIONS,
        E_EXPOSE_OPEN_ROOMS,
        E_EXPOSE_PENDING,
        E_EXPOSE_AVAILABLE_ROOMS,
        E_EXPOSE_VISITORS,
        E_EXPOSE_STATS,
        E_PING_SERVER,
        E_DISCONNECT_ALL,
    }
)


# Inbound


@dataclass(frozen=True)
class OpenRoom:
    event: ClassVar[str] = E_OPEN_ROOM

    room: str
    id: str | None = None


@dataclass(frozen=True)
class CloseRoom:
    event: ClassVar[str] = E_CLOSE_ROOM

    room: str
    id: str | None = None


@dataclass(frozen=True)
class EnterRoom:
    event: ClassVar[str] = E_ENTER_ROOM

    room: str
    visitor: str
    room_id: str | None = None
    sent_time: Any = None


@dataclass(frozen=True)
class LeaveRoom:
    event: ClassVar[str] = E_LEAVE_ROOM

    room: str
    visitor: str
    room_id: str | None = None
    sent_time: Any = None
    message: Any = None


@dataclass(frozen=True)
class ExposureWarning:
    event: ClassVar[str] = E_EXPOSURE_WARNING

    visitor: str
    # room name -> exposure dates, in the order the visitor sent them
    warnings: dict[str, list[Any]] = field(default_factory=dict)
    reason: str | None = None


@dataclass(frozen=True)
class AlertVisitor:
    event: ClassVar[str] = E_ALERT_VISITOR

    visitor: str
    message: Any
    id: str | None = None


@dataclass(frozen=True)
class AdminQuery:
    name: str
    data: Any = None

    @property
    def event(self) -> str:
        return self.name


InboundEvent = (
    OpenRoom | CloseRoom | EnterRoom | LeaveRoom | ExposureWarning | AlertVisitor | AdminQuery
)


def _require_map(body: Any, event: str) -> dict:
    if not isinstance(body, dict):
        raise InvalidPayload(f"{event} payload must be a map")
    return body


def _require_name(value: Any, what: str, event: str, max_chars: int) -> str:
    name = normalize_name(value, max_chars=max_chars)
    if name is None:
        raise InvalidPayload(f"{event} requires a {what} name")
    return name


def _optional_str(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value).strip()
    return s or None


def _room_ref(value: Any, event: str, max_chars: int) -> tuple[str, str | None]:
    # Clients send either {"room": name, "id": ...} or a bare room name.
    if isinstance(value, dict):
        room = _require_name(value.get("room"), "room", event, max_chars)
        return room, _optional_str(value.get("id"))
    return _require_name(value, "room", event, max_chars), None


def _visitor_ref(value: Any, event: str, max_chars: int) -> str:
    if isinstance(value, dict):
        value = value.get("visitor", value.get("name"))
    return _require_name(value, "visitor", event, max_chars)


def _dates(value: Any, room: str) -> list[Any]:
    if isinstance(value, dict):
        value = value.get("dates")
    if isinstance(value, (list, tuple)):
        return list(value)
    if isinstance(value, str) and value:
        return [value]
    raise InvalidPayload(f"exposureWarning for {room!r} carries no dates")


def parse_event(
    name: str, body: Any, *, max_chars: int = NAME_MAX_CHARS
) -> InboundEvent:
    """Validate an inbound body and return its typed event."""
    if name in ADMIN_QUERIES:
        return AdminQuery(name=name, data=body)

    if name in (E_OPEN_ROOM, E_CLOSE_ROOM):
        data = _require_map(body, name)
        room = _require_name(data.get("room"), "room", name, max_chars)
        cls = OpenRoom if name == E_OPEN_ROOM else CloseRoom
        return cls(room=room, id=_optional_str(data.get("id")))

    if name == E_ENTER_ROOM:
        data = _require_map(body, name)
        room, room_id = _room_ref(data.get("room"), name, max_chars)
        return EnterRoom(
            room=room,
            room_id=room_id,
            visitor=_visitor_ref(data.get("visitor"), name, max_chars),
            sent_time=data.get("sentTime"),
        )

    if name == E_LEAVE_ROOM:
        data = _require_map(body, name)
        room, room_id = _room_ref(data.get("room"), name, max_chars)
        return LeaveRoom(
            room=room,
            room_id=room_id,
            visitor=_visitor_ref(data.get("visitor"), name, max_chars),
            sent_time=data.get("sentTime"),
            message=data.get("message"),
        )

    if name == E_EXPOSURE_WARNING:
        data = _require_map(body, name)
        visitor = _visitor_ref(data.get("visitor"), name, max_chars)
        raw = data.get("warnings")
        if not isinstance(raw, dict) or not raw:
            raise InvalidPayload("exposureWarning requires a warnings map")
        warnings: dict[str, list[Any]] = {}
        for raw_room, raw_dates in raw.items():
            room = _require_name(raw_room, "room", name, max_chars)
            warnings[room] = _dates(raw_dates, room)
        reason = data.get("reason")
        return ExposureWarning(
            visitor=visitor,
            warnings=warnings,
            reason=reason if isinstance(reason, str) else None,
        )

    if name == E_ALERT_VISITOR:
        data = _require_map(body, name)
        message = data.get("message")
        if message is None or message == "":
            raise InvalidPayload("No message to process")
        if data.get("visitor") is None:
            raise InvalidPayload("Missing visitor identity")
        return AlertVisitor(
            visitor=_visitor_ref(data.get("visitor"), name, max_chars),
            message=message,
            id=_optional_str(data.get("id")),
        )

    raise InvalidPayload(f"unknown event {name!r}")


# Outbound


@dataclass(frozen=True)
class CheckIn:
    event: ClassVar[str] = O_CHECK_IN

    visitor: str
    room: str
    sent_time: Any
    connection_id: str

    def as_body(self) -> dict:
        return {
            "visitor": self.visitor,
            "room": self.room,
            "sentTime": self.sent_time,
            "message": "Entered",
            "socketId": self.connection_id,
        }


@dataclass(frozen=True)
class CheckOut:
    event: ClassVar[str] = O_CHECK_OUT

    visitor: str
    room: str
    sent_time: Any
    message: Any

    def as_body(self) -> dict:
        return {
            "visitor": self.visitor,
            "room": self.room,
            "sentTime": self.sent_time,
            "message": self.message,
        }


@dataclass(frozen=True)
class NotifyRoom:
    event: ClassVar[str] = O_NOTIFY_ROOM

    room: str
    reason: str
    exposure_dates: list[Any]
    visitor: str

    def as_body(self) -> dict:
        return {
            "room": self.room,
            "reason": self.reason,
            "exposureDates": list(self.exposure_dates),
            "visitor": self.visitor,
        }


@dataclass(frozen=True)
class ExposureAlert:
    event: ClassVar[str] = O_EXPOSURE_ALERT

    visitor: str
    exposure_dates: Any
    room: str

    def as_body(self) -> dict:
        return {
            "visitor": self.visitor,
            "exposureDates": self.exposure_dates,
            "room": self.room,
        }


@dataclass(frozen=True)
class UpdatedOccupancy:
    event: ClassVar[str] = O_UPDATED_OCCUPANCY

    room: str
    occupancy: int

    def as_body(self) -> dict:
        return {"room": self.room, "occupancy": self.occupancy}
