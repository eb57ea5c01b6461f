"""Group membership for the enrd hub.

A group is a named set of connection ids; the name is a room name. Each group
carries its own lock so joins and leaves on unrelated rooms never contend.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable

from .errors import InternalInconsistency


class _Group:
    __slots__ = ("lock", "members", "dead")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.members: set[str] = set()
        # Set once the group has been pruned from the index; a caller holding
        # a stale reference must look the group up again.
        self.dead = False


class GroupMembership:
    """Manages named groups of connection ids."""

    def __init__(self) -> None:
        self.log = logging.getLogger("enrd.groups")
        self._index_lock = threading.Lock()
        self._groups: dict[str, _Group] = {}

    def _get(self, room: str) -> _Group | None:
        with self._index_lock:
            return self._groups.get(room)

    def _get_or_create(self, room: str) -> _Group:
        with self._index_lock:
            group = self._groups.get(room)
            if group is None:
                group = _Group()
                self._groups[room] = group
            return group

    def _prune_if_empty(self, room: str, group: _Group) -> None:
        # Lock order is always index -> group.
        with self._index_lock:
            with group.lock:
                if group.members or self._groups.get(room) is not group:
                    return
                self._groups.pop(room, None)
                group.dead = True

    def join(self, connection_id: str, room: str) -> bool:
        """Add a connection to a group. Returns False if it was already a member."""
        while True:
            group = self._get_or_create(room)
            with group.lock:
                if group.dead:
                    continue
                if connection_id in group.members:
                    return False
                group.members.add(connection_id)
                return True

    def join_if(
        self, connection_id: str, room: str, allowed: Callable[[set[str]], bool]
    ) -> bool:
        """Join only if ``allowed(members)`` holds, checked under the group lock.

        Returns False if the join was refused. An existing member is left in
        place and counts as joined.
        """
        while True:
            group = self._get_or_create(room)
            with group.lock:
                if group.dead:
                    continue
                ok = allowed(group.members)
                if ok:
                    group.members.add(connection_id)
                empty = not group.members
                break

        if empty:
            self._prune_if_empty(room, group)
        return ok

    def leave(self, connection_id: str, room: str) -> bool:
        """Remove a connection from a group. Returns False if it was not a member."""
        group = self._get(room)
        removed = False
        empty = False
        if group is not None:
            with group.lock:
                if connection_id in group.members:
                    group.members.discard(connection_id)
                    removed = True
                empty = not group.members

        if not removed:
            err = InternalInconsistency(f"{connection_id} is not a member of {room!r}")
            self.log.debug("Ignoring leave: %s", err)
        if group is not None and empty:
            self._prune_if_empty(room, group)
        return removed

    def contains(self, room: str, connection_id: str) -> bool:
        group = self._get(room)
        if group is None:
            return False
        with group.lock:
            return connection_id in group.members

    def members(self, room: str) -> set[str]:
        group = self._get(room)
        if group is None:
            return set()
        with group.lock:
            return set(group.members)

    def rooms(self) -> list[str]:
        with self._index_lock:
            return list(self._groups)

    def groups_of(self, connection_id: str) -> list[str]:
        return [room for room in self.rooms() if self.contains(room, connection_id)]

    def leave_all(self, connection_id: str) -> list[str]:
        """Remove a connection from every group it belongs to."""
        left = self.groups_of(connection_id)
        for room in left:
            self.leave(connection_id, room)
        return left

    def prune(self, is_live: Callable[[str], bool]) -> int:
        """Drop memberships whose connection is no longer live. Returns count removed.

        Liveness is checked while the group lock is held, so a connection that
        registers and joins concurrently is never pruned by mistake.
        """
        removed = 0
        for room in self.rooms():
            group = self._get(room)
            if group is None:
                continue
            with group.lock:
                stale = {cid for cid in group.members if not is_live(cid)}
                group.members -= stale
                empty = not group.members
            removed += len(stale)
            if empty:
                self._prune_if_empty(room, group)
        if removed:
            self.log.info("Pruned %s stale group membership(s)", removed)
        return removed

    def clear_all(self) -> None:
        with self._index_lock:
            for group in self._groups.values():
                with group.lock:
                    group.members.clear()
                    group.dead = True
            self._groups.clear()

    def get_stats(self) -> dict:
        snapshot = {room: len(self.members(room)) for room in self.rooms()}
        top_rooms = sorted(snapshot.items(), key=lambda x: (-x[1], x[0]))[:5]
        return {
            "groups_total": len(snapshot),
            "memberships": sum(snapshot.values()),
            "top_rooms": top_rooms,
        }
