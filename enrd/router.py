from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from .constants import (
    E_DISCONNECT_ALL,
    E_EXPOSE_ALL_CONNECTIONS,
    E_EXPOSE_AVAILABLE_ROOMS,
    E_EXPOSE_OPEN_ROOMS,
    E_EXPOSE_PENDING,
    E_EXPOSE_STATS,
    E_EXPOSE_VISITORS,
    E_PING_SERVER,
    KIND_ADMIN,
    KIND_ROOM,
    KIND_VISITOR,
    O_AVAILABLE_ROOMS_EXPOSED,
    O_OPEN_ROOMS_EXPOSED,
    PENDING_ROOM_WARNING,
    PENDING_VISITOR_ALERT,
    R_ALERTED,
    R_PENDING,
    R_WARNED,
    STATE_OPENED,
)
from .errors import InternalInconsistency, InvalidPayload, RoomNotOpen, RouterError
from .events import (
    AdminQuery,
    AlertVisitor,
    CheckIn,
    CheckOut,
    CloseRoom,
    EnterRoom,
    ExposureAlert,
    ExposureWarning,
    LeaveRoom,
    NotifyRoom,
    OpenRoom,
    UpdatedOccupancy,
    parse_event,
)
from .groups import GroupMembership
from .occupancy import OccupancyTracker
from .pending import PendingCache, PendingEntry
from .registry import Connection, ConnectionRegistry
from .transport import Transport

if TYPE_CHECKING:
    from .stats import StatsManager

DEFAULT_REASON = "exposure"


class Router:
    """
    Protocol state machine for the enrd hub.

    This class is responsible for:
    - Validating inbound events at the boundary
    - Deciding, per message, between immediate delivery and deferral
    - Flushing deferred entries when their target becomes reachable
    - Answering admin queries (read only, except disconnectAll)

    It keeps no mutable state of its own: everything lives in the registry,
    the group membership manager and the pending cache.
    """

    def __init__(
        self,
        registry: ConnectionRegistry,
        groups: GroupMembership,
        pending: PendingCache,
        transport: Transport,
        *,
        stats: StatsManager | None = None,
        reconcile_on_connect: bool = True,
        max_name_len: int = 64,
    ) -> None:
        self.registry = registry
        self.groups = groups
        self.pending = pending
        self.transport = transport
        self.tracker = OccupancyTracker(registry, groups)
        self.stats = stats
        self.reconcile_on_connect = reconcile_on_connect
        self.max_name_len = max_name_len
        self.log = logging.getLogger("enrd.router")

        self._handlers: dict[type, Callable[[Connection, Any], dict]] = {
            OpenRoom: self.open_room,
            CloseRoom: self.close_room,
            EnterRoom: self.enter_room,
            LeaveRoom: self.leave_room,
            ExposureWarning: self.exposure_warning,
            AlertVisitor: self.alert_visitor,
            AdminQuery: self.query,
        }
        self._queries: dict[str, Callable[[Connection, Any], Any]] = {
            E_EXPOSE_ALL_CONNECTIONS: lambda conn, _: self.expose_all_connections(),
            E_EXPOSE_OPEN_ROOMS: lambda conn, _: self.expose_open_rooms(),
            E_EXPOSE_PENDING: lambda conn, _: self.expose_pending(),
            E_EXPOSE_AVAILABLE_ROOMS: lambda conn, _: self.expose_available_rooms(),
            E_EXPOSE_VISITORS: lambda conn, _: self.expose_visitors(),
            E_EXPOSE_STATS: lambda conn, _: self.expose_stats(),
            E_PING_SERVER: lambda conn, data: self.ping_server(data),
            E_DISCONNECT_ALL: lambda conn, _: self.disconnect_all(conn),
        }

    def _inc(self, key: str, delta: int = 1) -> None:
        if self.stats is not None:
            self.stats.inc(key, delta)

    # Inbound dispatch

    def dispatch(self, connection_id: str, event: str, body: Any) -> dict:
        """
        Route one inbound event and return its acknowledgment.

        Router errors are reported in the acknowledgment, never raised.
        """
        try:
            conn = self.registry.get(connection_id)
            if conn is None:
                raise InvalidPayload("connect with an identity before sending events")
            parsed = parse_event(event, body, max_chars=self.max_name_len)
            return self._handlers[type(parsed)](conn, parsed)
        except RouterError as e:
            self.log.info(
                "Rejected %s from id=%s: %s: %s", event, connection_id, e.name, e
            )
            return e.to_ack(event)

    # Connection lifecycle

    def connect(
        self,
        connection_id: str,
        kind: str,
        name: str,
        *,
        state: str | None = None,
    ) -> dict:
        # A resumed id starts from a clean slate; rooms restore their own
        # group below when they say they were open.
        stale = self.groups.leave_all(connection_id)
        if stale:
            self.log.debug("Cleared stale memberships id=%s rooms=%s", connection_id, stale)

        conn = self.registry.register(connection_id, kind, name)
        self._inc("connects")

        if kind == KIND_ROOM and state == STATE_OPENED:
            self.groups.join(connection_id, name)
            self.log.info("Reopened room=%r id=%s", name, connection_id)

        flushed = 0
        if kind in (KIND_ROOM, KIND_VISITOR):
            flushed = self.flush(name)
        if self.reconcile_on_connect:
            flushed += self.reconcile()

        self.log.info(
            "Connected %s=%r id=%s flushed=%s", kind, name, connection_id, flushed
        )
        self._broadcast_open_rooms()

        result: dict[str, Any] = {
            "event": "connect",
            "id": connection_id,
            kind: conn.name,
            "result": flushed,
        }
        if kind == KIND_ROOM:
            result["open"] = self.tracker.is_open(name)
        return result

    def disconnect(self, connection_id: str) -> Connection | None:
        """
        Forget a connection. Group memberships are left for the next
        reconciliation pass to prune.
        """
        was_open = False
        conn = self.registry.get(connection_id)
        if conn is not None and conn.kind == KIND_ROOM:
            was_open = self.groups.contains(conn.name, connection_id)

        conn = self.registry.deregister(connection_id)
        if conn is None:
            return None
        self._inc("disconnects")
        self.log.info("Disconnected %s=%r id=%s", conn.kind, conn.name, connection_id)

        if was_open:
            self._broadcast_open_rooms()
        return conn

    # Room events

    def _require_room_sender(self, conn: Connection, room: str, event: str) -> None:
        if conn.kind != KIND_ROOM:
            raise InvalidPayload(f"{event} must be sent by a room connection")
        if conn.name != room:
            raise InvalidPayload(f"{event} for {room!r} sent by room {conn.name!r}")

    def open_room(self, conn: Connection, ev: OpenRoom) -> dict:
        self._require_room_sender(conn, ev.room, ev.event)

        if self.groups.join(conn.connection_id, ev.room):
            self._inc("rooms_opened")
        flushed = self.flush(ev.room)
        assertion = self.groups.contains(ev.room, conn.connection_id)
        if not assertion:
            self.log.warning("%s unable to join %s", conn.connection_id, ev.room)

        self.log.info("Opened room=%r id=%s flushed=%s", ev.room, conn.connection_id, flushed)
        self._broadcast_open_rooms()
        return {
            "event": ev.event,
            "room": ev.room,
            "result": assertion,
            "flushed": flushed,
        }

    def close_room(self, conn: Connection, ev: CloseRoom) -> dict:
        self._require_room_sender(conn, ev.room, ev.event)

        if self.groups.leave(conn.connection_id, ev.room):
            self._inc("rooms_closed")
        assertion = not self.groups.contains(ev.room, conn.connection_id)

        self.log.info("Closed room=%r id=%s", ev.room, conn.connection_id)
        self._broadcast_open_rooms()
        return {"event": ev.event, "room": ev.room, "result": assertion}

    # Visitor events

    def enter_room(self, conn: Connection, ev: EnterRoom) -> dict:
        # The open check runs under the group lock; closeRoom takes the same
        # lock, so it lands wholly before or after the join.
        if not self.groups.join_if(
            conn.connection_id,
            ev.room,
            lambda members: self.tracker.opened_among(ev.room, members),
        ):
            raise RoomNotOpen(ev.room)
        self._inc("entries")

        check_in = CheckIn(
            visitor=ev.visitor,
            room=ev.room,
            sent_time=ev.sent_time,
            connection_id=conn.connection_id,
        )
        self._send_group(ev.room, check_in.event, check_in.as_body())

        occupancy = self._update_occupancy(ev.room)
        self.log.info(
            "Visitor %r entered room=%r occupancy=%s", ev.visitor, ev.room, occupancy
        )
        return {
            "event": ev.event,
            "room": ev.room,
            "occupancy": occupancy,
            "result": self.groups.contains(ev.room, conn.connection_id),
            "emits": check_in.event,
        }

    def leave_room(self, conn: Connection, ev: LeaveRoom) -> dict:
        self.groups.leave(conn.connection_id, ev.room)
        self._inc("exits")

        check_out = CheckOut(
            visitor=ev.visitor,
            room=ev.room,
            sent_time=ev.sent_time,
            message=ev.message,
        )
        self._send_group(ev.room, check_out.event, check_out.as_body())

        occupancy = self._update_occupancy(ev.room)
        left = not self.groups.contains(ev.room, conn.connection_id)
        self.log.info(
            "Visitor %r %s room=%r occupancy=%s",
            ev.visitor,
            "left" if left else "did not make it out of",
            ev.room,
            occupancy,
        )
        return {
            "event": ev.event,
            "room": ev.room,
            "occupancy": occupancy,
            "result": left,
            "emits": check_out.event,
        }

    # Warnings and alerts

    def exposure_warning(self, conn: Connection, ev: ExposureWarning) -> dict:
        results: list[dict[str, str]] = []
        for room, dates in ev.warnings.items():
            notice = NotifyRoom(
                room=room,
                reason=ev.reason or DEFAULT_REASON,
                exposure_dates=dates,
                visitor=ev.visitor,
            )
            tag = self._warn_room(notice)
            results.append({"room": room, "result": tag})

        return {
            "event": ev.event,
            "result": results,
            "emit": NotifyRoom.event,
        }

    def _warn_room(self, notice: NotifyRoom) -> str:
        if self.tracker.is_open(notice.room) and self._send_group(
            notice.room, notice.event, notice.as_body()
        ):
            self._inc("warned")
            self.log.info("Warned room=%r from visitor=%r", notice.room, notice.visitor)
            return R_WARNED

        self.pending.enqueue(notice.room, PENDING_ROOM_WARNING, notice.as_body())
        self._inc("deferred")
        self.log.warning("%s is closed. Caching warning.", notice.room)
        return R_PENDING

    def alert_visitor(self, conn: Connection, ev: AlertVisitor) -> dict:
        alert = ExposureAlert(
            visitor=ev.visitor,
            exposure_dates=ev.message,
            room=conn.name if conn.kind == KIND_ROOM else "",
        )
        body = alert.as_body()

        if self._send_visitor(ev.visitor, alert.event, body):
            self._inc("alerted")
            self.log.info("Alerted visitor=%r from %s=%r", ev.visitor, conn.kind, conn.name)
            tag = R_ALERTED
        else:
            self.pending.enqueue(ev.visitor, PENDING_VISITOR_ALERT, body)
            self._inc("deferred")
            self.log.warning("%s is offline. Caching alert.", ev.visitor)
            tag = R_PENDING

        return {"event": ev.event, "visitor": ev.visitor, "result": tag}

    # Deferred delivery

    def _reachable(self, entry: PendingEntry) -> bool:
        if entry.kind == PENDING_ROOM_WARNING:
            return self.tracker.is_open(entry.target_key)
        if entry.kind == PENDING_VISITOR_ALERT:
            return bool(self.registry.find(KIND_VISITOR, entry.target_key))
        return True

    def _deliver(self, entry: PendingEntry) -> bool:
        if entry.kind == PENDING_ROOM_WARNING:
            return self._send_group(entry.target_key, NotifyRoom.event, entry.payload)
        if entry.kind == PENDING_VISITOR_ALERT:
            return self._send_visitor(entry.target_key, ExposureAlert.event, entry.payload)

        err = InternalInconsistency(f"unknown pending kind {entry.kind!r}")
        self.log.error("Dropping pending entry for %r: %s", entry.target_key, err)
        return True

    def _deliver_batch(self, key: str, entries: list[PendingEntry], *, retry: bool = True) -> int:
        delivered = 0
        unreached = False
        undelivered: list[PendingEntry] = []
        for entry in entries:
            if not self._reachable(entry):
                unreached = True
                undelivered.append(entry)
            elif self._deliver(entry):
                delivered += 1
            else:
                undelivered.append(entry)
        if undelivered:
            self.pending.requeue(key, undelivered)
        if delivered:
            self._inc("flushed", delivered)
            self.log.info(
                "Flushed %s pending entr%s for %r",
                delivered,
                "y" if delivered == 1 else "ies",
                key,
            )
        # A target that came up while its entries were out of the queue had
        # its own flush find nothing. One more pass picks them up.
        if retry and unreached and any(self._reachable(e) for e in undelivered):
            again = self.pending.drain(key)
            if again:
                delivered += self._deliver_batch(key, again, retry=False)
        return delivered

    def flush(self, target_key: str) -> int:
        """Deliver whatever is pending for one target, in enqueue order."""
        entries = self.pending.drain(target_key)
        if not entries:
            self.log.debug("Nothing pending for %r", target_key)
            return 0
        return self._deliver_batch(target_key, entries)

    def reconcile(self) -> int:
        """
        Re-check every pending target and deliver what is now reachable.

        Room warnings and visitor alerts go through the same reachability
        test. Stale memberships of disconnected sessions are pruned afterwards.
        """
        delivered = 0
        for key, entries in self.pending.drain_all().items():
            delivered += self._deliver_batch(key, entries)
        self.groups.prune(self.registry.is_live)
        return delivered

    # Admin queries

    def query(self, conn: Connection, ev: AdminQuery) -> dict:
        result = self._queries[ev.name](conn, ev.data)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug("Query %s from %s=%r", ev.name, conn.kind, conn.name)
        return {"event": ev.name, "result": result}

    def expose_all_connections(self) -> list[dict]:
        out = []
        for conn in self.registry.list_all():
            d = conn.as_dict()
            d["occupiedRooms"] = self.groups.groups_of(conn.connection_id)
            out.append(d)
        return out

    def expose_open_rooms(self) -> list[dict]:
        return self._broadcast_open_rooms()

    def expose_available_rooms(self) -> list[dict]:
        rooms = [c.as_dict() for c in self.tracker.available_rooms()]
        self._send_all(O_AVAILABLE_ROOMS_EXPOSED, rooms)
        return rooms

    def expose_pending(self) -> dict[str, list[dict]]:
        return {
            key: [e.as_dict() for e in entries]
            for key, entries in self.pending.snapshot().items()
        }

    def expose_visitors(self) -> list[dict]:
        return [c.as_dict() for c in self.registry.list_all(KIND_VISITOR)]

    def expose_stats(self) -> str:
        if self.stats is None:
            return ""
        return self.stats.format_stats(self)

    def ping_server(self, data: Any) -> str:
        return f"Server is at your disposal, {data}"

    def disconnect_all(self, conn: Connection) -> int:
        """Close every connection on the hub, the requesting admin last."""
        if conn.kind != KIND_ADMIN:
            raise InvalidPayload(f"{E_DISCONNECT_ALL} must be sent by an admin connection")

        others = [
            c.connection_id
            for c in self.registry.list_all()
            if c.connection_id != conn.connection_id
        ]
        closed = 0
        for cid in [*others, conn.connection_id]:
            if self.disconnect(cid) is not None:
                closed += 1
            try:
                self.transport.close(cid)
            except Exception:
                self.log.exception("Closing id=%s failed", cid)
        self.log.warning(
            "Disconnected all connections (%s) at the request of %r", closed, conn.name
        )
        return closed

    # Outbound helpers

    def _broadcast_open_rooms(self) -> list[dict]:
        rooms = [r.as_dict() for r in self.tracker.open_rooms()]
        self._send_all(O_OPEN_ROOMS_EXPOSED, rooms)
        return rooms

    def _update_occupancy(self, room: str) -> int:
        update = UpdatedOccupancy(room=room, occupancy=self.tracker.occupancy(room))
        self._send_all(update.event, update.as_body())
        return update.occupancy

    def _send_group(self, room: str, event: str, payload: Any) -> bool:
        try:
            self.transport.broadcast(room, event, payload)
        except Exception:
            self.log.exception("Broadcast of %s to room=%r failed", event, room)
            return False
        return True

    def _send_visitor(self, visitor: str, event: str, payload: Any) -> bool:
        ids = self.registry.find(KIND_VISITOR, visitor)
        if not ids:
            return False
        sent = False
        for cid in sorted(ids):
            try:
                self.transport.unicast(cid, event, payload)
                sent = True
            except Exception:
                self.log.exception("Unicast of %s to id=%s failed", event, cid)
        return sent

    def _send_all(self, event: str, payload: Any) -> None:
        try:
            self.transport.broadcast_all(event, payload)
        except Exception:
            self.log.exception("Hub-wide %s failed", event)
