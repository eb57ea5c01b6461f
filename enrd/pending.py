"""Deferred delivery cache.

Messages for a target that cannot be reached right now are queued here under
the target's key (a room name or a visitor name) and handed back, in enqueue
order, when the target becomes reachable. Each key has its own lock; a drain
takes the whole list and leaves an empty one behind, so an entry enqueued
while a drain is running is either part of that drain or waits for the next.
"""

from __future__ import annotations

import logging
import threading
import time
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class PendingEntry:
    target_key: str
    kind: str
    payload: dict[str, Any]
    enqueued_at: float

    def as_dict(self) -> dict:
        return {
            "target": self.target_key,
            "kind": self.kind,
            "payload": dict(self.payload),
            "enqueuedAt": self.enqueued_at,
        }


class _Queue:
    __slots__ = ("lock", "entries", "dead")

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self.entries: deque[PendingEntry] = deque()
        self.dead = False


class PendingCache:
    """
    Owns PendingEntry queues keyed by target.

    max_per_key bounds each queue (0 means unbounded); when the bound is hit
    the oldest entry for that key is dropped.
    """

    def __init__(self, *, max_per_key: int = 0) -> None:
        self.log = logging.getLogger("enrd.pending")
        self.max_per_key = max(0, int(max_per_key))
        self._index_lock = threading.Lock()
        self._queues: dict[str, _Queue] = {}

    def _get(self, key: str) -> _Queue | None:
        with self._index_lock:
            return self._queues.get(key)

    def _get_or_create(self, key: str) -> _Queue:
        with self._index_lock:
            q = self._queues.get(key)
            if q is None:
                q = _Queue()
                self._queues[key] = q
            return q

    def _retire_if_empty(self, key: str, q: _Queue) -> None:
        with self._index_lock:
            with q.lock:
                if q.entries or self._queues.get(key) is not q:
                    return
                self._queues.pop(key, None)
                q.dead = True

    def enqueue(self, target_key: str, kind: str, payload: dict[str, Any]) -> PendingEntry:
        entry = PendingEntry(
            target_key=target_key,
            kind=kind,
            payload=dict(payload),
            enqueued_at=time.time(),
        )
        dropped: PendingEntry | None = None
        while True:
            q = self._get_or_create(target_key)
            with q.lock:
                if q.dead:
                    continue
                q.entries.append(entry)
                if self.max_per_key and len(q.entries) > self.max_per_key:
                    dropped = q.entries.popleft()
                depth = len(q.entries)
                break

        if dropped is not None:
            self.log.warning(
                "Pending queue for %r is full (%s); dropped oldest %s from %.0f",
                target_key,
                self.max_per_key,
                dropped.kind,
                dropped.enqueued_at,
            )
        self.log.debug("Enqueued %s for %r depth=%s", kind, target_key, depth)
        return entry

    def requeue(self, target_key: str, entries: Iterable[PendingEntry]) -> None:
        """Put undelivered entries back ahead of anything enqueued since."""
        entries = list(entries)
        if not entries:
            return
        while True:
            q = self._get_or_create(target_key)
            with q.lock:
                if q.dead:
                    continue
                q.entries.extendleft(reversed(entries))
                break

    def has_pending(self, target_key: str) -> bool:
        q = self._get(target_key)
        if q is None:
            return False
        with q.lock:
            return bool(q.entries)

    def drain(self, target_key: str) -> list[PendingEntry]:
        q = self._get(target_key)
        if q is None:
            return []
        with q.lock:
            taken = list(q.entries)
            q.entries.clear()
        self._retire_if_empty(target_key, q)
        return taken

    def keys(self) -> list[str]:
        with self._index_lock:
            return list(self._queues)

    def drain_all(self) -> dict[str, list[PendingEntry]]:
        out: dict[str, list[PendingEntry]] = {}
        for key in self.keys():
            taken = self.drain(key)
            if taken:
                out[key] = taken
        return out

    def snapshot(self) -> dict[str, list[PendingEntry]]:
        out: dict[str, list[PendingEntry]] = {}
        for key in self.keys():
            q = self._get(key)
            if q is None:
                continue
            with q.lock:
                if q.entries:
                    out[key] = list(q.entries)
        return out

    def total(self) -> int:
        return sum(len(v) for v in self.snapshot().values())

    def clear_all(self) -> None:
        with self._index_lock:
            for q in self._queues.values():
                with q.lock:
                    q.entries.clear()
                    q.dead = True
            self._queues.clear()
