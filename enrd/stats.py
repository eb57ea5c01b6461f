"""Statistics tracking and reporting for the enrd hub."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from .router import Router


class StatsManager:
    """
    Manages hub statistics collection and reporting.

    Tracks counters for:
    - Bytes and frames in/out
    - Rate limiting events and errors sent
    - Connects and disconnects
    - Rooms opened/closed, visitor entries/exits
    - Routing outcomes (warned, alerted, deferred, flushed)
    - Ping/pong activity and announces
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()

        self.started_wall_time: float | None = None
        self.started_monotonic: float | None = None

        self._counters: dict[str, int] = {
            "bytes_in": 0,
            "bytes_out": 0,
            "pkts_in": 0,
            "pkts_bad": 0,
            "rate_limited": 0,
            "errors_sent": 0,
            "connects": 0,
            "disconnects": 0,
            "rooms_opened": 0,
            "rooms_closed": 0,
            "entries": 0,
            "exits": 0,
            "warned": 0,
            "alerted": 0,
            "deferred": 0,
            "flushed": 0,
            "pings_out": 0,
            "pongs_in": 0,
            "announces": 0,
        }

    def set_start_time(self) -> None:
        """Set the start time for uptime calculations."""
        self.started_wall_time = time.time()
        self.started_monotonic = time.monotonic()

    def inc(self, key: str, delta: int = 1) -> None:
        """Increment a counter by the given delta."""
        with self._lock:
            self._counters[key] = int(self._counters.get(key, 0)) + int(delta)

    def get(self, key: str) -> int:
        with self._lock:
            return int(self._counters.get(key, 0))

    def counters(self) -> dict[str, int]:
        with self._lock:
            return dict(self._counters)

    def format_stats(self, router: Router) -> str:
        """Format current statistics as a human-readable report."""
        from . import __version__

        now_mono = time.monotonic()
        started_mono = self.started_monotonic
        uptime_s = (now_mono - started_mono) if started_mono is not None else 0.0

        conn_stats = router.registry.get_stats()
        group_stats = router.groups.get_stats()
        open_rooms = router.tracker.open_rooms()
        pending = router.pending.snapshot()
        c = self.counters()

        lines: list[str] = []
        lines.append(f"enrd {__version__} stats")
        lines.append(f"uptime_s={uptime_s:.1f}")
        lines.append(
            f"connections_total={conn_stats['total']} "
            f"rooms={conn_stats.get('room', 0)} "
            f"visitors={conn_stats.get('visitor', 0)} "
            f"admins={conn_stats.get('admin', 0)}"
        )
        lines.append(
            f"open_rooms={len(open_rooms)} groups={group_stats['groups_total']} "
            f"memberships={group_stats['memberships']}"
        )

        top_rooms = group_stats["top_rooms"]
        if top_rooms:
            lines.append("top_rooms=" + ", ".join(f"{r}:{n}" for r, n in top_rooms))

        lines.append(
            f"pending: targets={len(pending)} entries={sum(len(v) for v in pending.values())}"
        )
        lines.append(
            "io: pkts_in={} pkts_bad={} bytes_in={} bytes_out={}".format(
                c.get("pkts_in", 0),
                c.get("pkts_bad", 0),
                c.get("bytes_in", 0),
                c.get("bytes_out", 0),
            )
        )
        lines.append(
            "sessions: connects={} disconnects={} errors_sent={} rate_limited={}".format(
                c.get("connects", 0),
                c.get("disconnects", 0),
                c.get("errors_sent", 0),
                c.get("rate_limited", 0),
            )
        )
        lines.append(
            "rooms: opened={} closed={} entries={} exits={}".format(
                c.get("rooms_opened", 0),
                c.get("rooms_closed", 0),
                c.get("entries", 0),
                c.get("exits", 0),
            )
        )
        lines.append(
            "routing: warned={} alerted={} deferred={} flushed={}".format(
                c.get("warned", 0),
                c.get("alerted", 0),
                c.get("deferred", 0),
                c.get("flushed", 0),
            )
        )
        lines.append(
            "liveness: pings_out={} pongs_in={} announces={}".format(
                c.get("pings_out", 0),
                c.get("pongs_in", 0),
                c.get("announces", 0),
            )
        )

        return "\n".join(lines)
