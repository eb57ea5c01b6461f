from __future__ import annotations

import threading
from typing import Any

import pytest

from enrd.constants import KIND_ADMIN, KIND_ROOM, KIND_VISITOR
from enrd.groups import GroupMembership
from enrd.pending import PendingCache
from enrd.registry import ConnectionRegistry
from enrd.router import Router
from enrd.stats import StatsManager


class RecordingTransport:
    """In-memory transport: records every send and who it reached."""

    def __init__(self, registry: ConnectionRegistry, groups: GroupMembership) -> None:
        self.registry = registry
        self.groups = groups
        self._lock = threading.Lock()
        self.unicasts: list[tuple[str, str, Any]] = []
        self.broadcasts: list[tuple[str, str, Any]] = []
        self.hub_wide: list[tuple[str, Any]] = []
        # connection id -> [(event, payload)]
        self.inbox: dict[str, list[tuple[str, Any]]] = {}
        self.fail_unicast: set[str] = set()
        self.closed: list[str] = []

    def _deliver(self, cid: str, event: str, payload: Any) -> None:
        self.inbox.setdefault(cid, []).append((event, payload))

    def unicast(self, connection_id: str, event: str, payload: Any) -> None:
        if connection_id in self.fail_unicast:
            raise ConnectionError(f"link for {connection_id} is gone")
        if not self.registry.is_live(connection_id):
            raise LookupError(connection_id)
        with self._lock:
            self.unicasts.append((connection_id, event, payload))
            self._deliver(connection_id, event, payload)

    def broadcast(self, group: str, event: str, payload: Any) -> None:
        with self._lock:
            self.broadcasts.append((group, event, payload))
            for cid in self.groups.members(group):
                if self.registry.is_live(cid):
                    self._deliver(cid, event, payload)

    def broadcast_all(self, event: str, payload: Any) -> None:
        with self._lock:
            self.hub_wide.append((event, payload))
            for conn in self.registry.list_all():
                self._deliver(conn.connection_id, event, payload)

    def close(self, connection_id: str) -> None:
        with self._lock:
            self.closed.append(connection_id)

    def received(self, connection_id: str, event: str) -> list[Any]:
        return [p for e, p in self.inbox.get(connection_id, []) if e == event]

    def group_sends(self, event: str) -> list[tuple[str, Any]]:
        return [(g, p) for g, e, p in self.broadcasts if e == event]


class Hub:
    """A wired router plus helpers for driving it like clients would."""

    def __init__(self, *, unique_names: bool = False, max_pending: int = 0) -> None:
        self.registry = ConnectionRegistry(unique_names=unique_names)
        self.groups = GroupMembership()
        self.pending = PendingCache(max_per_key=max_pending)
        self.stats = StatsManager()
        self.transport = RecordingTransport(self.registry, self.groups)
        self.router = Router(
            self.registry,
            self.groups,
            self.pending,
            self.transport,
            stats=self.stats,
        )

    def room(self, name: str, cid: str | None = None, **kw) -> str:
        cid = cid or f"room-{name}"
        self.router.connect(cid, KIND_ROOM, name, **kw)
        return cid

    def visitor(self, name: str, cid: str | None = None) -> str:
        cid = cid or f"visitor-{name}"
        self.router.connect(cid, KIND_VISITOR, name)
        return cid

    def admin(self, name: str = "ops", cid: str | None = None) -> str:
        cid = cid or f"admin-{name}"
        self.router.connect(cid, KIND_ADMIN, name)
        return cid

    def send(self, cid: str, event: str, body: Any) -> dict:
        return self.router.dispatch(cid, event, body)

    def open(self, name: str) -> str:
        cid = self.room(name)
        ack = self.send(cid, "openRoom", {"room": name, "id": cid})
        assert ack["result"] is True
        return cid


@pytest.fixture
def hub() -> Hub:
    return Hub()


@pytest.fixture
def make_hub():
    return Hub
