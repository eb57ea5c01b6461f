"""Open-room and occupancy derivation.

"Open" is decided here and nowhere else: a room is open iff a live room
connection with that name exists AND that connection is a member of the
group of the same name.
"""

from __future__ import annotations

from dataclasses import dataclass

from .constants import KIND_ROOM, KIND_VISITOR
from .groups import GroupMembership
from .registry import Connection, ConnectionRegistry


@dataclass(frozen=True)
class OpenRoom:
    room: str
    connection_id: str

    def as_dict(self) -> dict:
        return {"room": self.room, "id": self.connection_id}


class OccupancyTracker:
    def __init__(self, registry: ConnectionRegistry, groups: GroupMembership) -> None:
        self.registry = registry
        self.groups = groups

    def is_open(self, room: str) -> bool:
        return any(
            self.groups.contains(room, cid)
            for cid in self.registry.find(KIND_ROOM, room)
        )

    def opened_among(self, room: str, members: set[str]) -> bool:
        """Open test against a membership set the caller already holds."""
        return any(cid in members for cid in self.registry.find(KIND_ROOM, room))

    def open_rooms(self) -> list[OpenRoom]:
        return [
            OpenRoom(room=conn.name, connection_id=conn.connection_id)
            for conn in self.registry.list_all(KIND_ROOM)
            if self.groups.contains(conn.name, conn.connection_id)
        ]

    def available_rooms(self) -> list[Connection]:
        """Room connections that are online, whether or not they are open."""
        return self.registry.list_all(KIND_ROOM)

    def occupancy(self, room: str) -> int:
        if not self.is_open(room):
            return 0
        # Only live visitors count: the room's own connection, admins and
        # stale members of disconnected sessions are excluded.
        count = 0
        for cid in self.groups.members(room):
            conn = self.registry.get(cid)
            if conn is not None and conn.kind == KIND_VISITOR:
                count += 1
        return count
