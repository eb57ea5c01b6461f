"""Connection registry for the enrd hub.

Tracks every live connection and the identity it claimed when it connected.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass

from .constants import IDENTITY_KINDS
from .errors import DuplicateIdentity, InvalidPayload


@dataclass(frozen=True)
class Connection:
    connection_id: str
    kind: str
    name: str
    connected_at: float

    def as_dict(self) -> dict:
        return {
            "id": self.connection_id,
            self.kind: self.name,
            "kind": self.kind,
            "connectedAt": self.connected_at,
        }


class ConnectionRegistry:
    """
    Owns Connection records, keyed by connection id.

    This class is responsible for:
    - Registering and deregistering connections (both idempotent)
    - Indexing connections by (kind, name) for reachability checks
    - Optionally refusing a second live connection for the same identity
    """

    def __init__(self, *, unique_names: bool = False) -> None:
        self.log = logging.getLogger("enrd.registry")
        self.unique_names = unique_names
        self._lock = threading.Lock()
        self._connections: dict[str, Connection] = {}
        self._index: dict[tuple[str, str], set[str]] = {}  # (kind, name) -> ids

    def register(self, connection_id: str, kind: str, name: str) -> Connection:
        if not connection_id:
            raise InvalidPayload("connection id must not be empty")
        if kind not in IDENTITY_KINDS:
            raise InvalidPayload(f"unknown identity kind {kind!r}")
        if not name:
            raise InvalidPayload(f"{kind} identity requires a name")

        conn = Connection(
            connection_id=connection_id,
            kind=kind,
            name=name,
            connected_at=time.time(),
        )
        key = (kind, name)

        with self._lock:
            if self.unique_names:
                holders = self._index.get(key, set()) - {connection_id}
                if holders:
                    raise DuplicateIdentity(kind, name)

            previous = self._connections.pop(connection_id, None)
            if previous is not None:
                self._unindex(previous)

            self._connections[connection_id] = conn
            self._index.setdefault(key, set()).add(connection_id)

        if previous is not None:
            self.log.info(
                "Connection resumed id=%s %s=%r (was %s=%r)",
                connection_id,
                kind,
                name,
                previous.kind,
                previous.name,
            )
        else:
            self.log.debug("Registered id=%s %s=%r", connection_id, kind, name)
        return conn

    def deregister(self, connection_id: str) -> Connection | None:
        with self._lock:
            conn = self._connections.pop(connection_id, None)
            if conn is not None:
                self._unindex(conn)
        return conn

    def _unindex(self, conn: Connection) -> None:
        key = (conn.kind, conn.name)
        ids = self._index.get(key)
        if ids is None:
            return
        ids.discard(conn.connection_id)
        if not ids:
            self._index.pop(key, None)

    def get(self, connection_id: str) -> Connection | None:
        with self._lock:
            return self._connections.get(connection_id)

    def find(self, kind: str, name: str) -> set[str]:
        """Ids of live connections for an identity (empty if unreachable)."""
        with self._lock:
            return set(self._index.get((kind, name), ()))

    def is_live(self, connection_id: str) -> bool:
        with self._lock:
            return connection_id in self._connections

    def list_all(self, kind: str | None = None) -> list[Connection]:
        with self._lock:
            conns = list(self._connections.values())
        if kind is None:
            return conns
        return [c for c in conns if c.kind == kind]

    def clear_all(self) -> list[Connection]:
        with self._lock:
            conns = list(self._connections.values())
            self._connections.clear()
            self._index.clear()
        return conns

    def get_stats(self) -> dict[str, int]:
        counts = {k: 0 for k in IDENTITY_KINDS}
        for conn in self.list_all():
            counts[conn.kind] = counts.get(conn.kind, 0) + 1
        return {"total": sum(counts.values()), **counts}
