from __future__ import annotations

import logging
import signal
import threading
import time
from typing import Any

import RNS

from . import __version__
from .codec import decode, encode
from .config import HubRuntimeConfig
from .constants import (
    K_BODY,
    K_EVENT,
    K_ID,
    K_T,
    T_ACK,
    T_ERROR,
    T_EVENT,
    T_HELLO,
    T_PING,
    T_PONG,
    T_WELCOME,
)
from .envelope import make_envelope, validate_envelope
from .errors import InternalInconsistency, RouterError
from .groups import GroupMembership
from .paths import expand_path
from .pending import PendingCache
from .registry import ConnectionRegistry
from .router import Router
from .session import SessionManager, parse_claim
from .stats import StatsManager

Outgoing = list[tuple[RNS.Link, dict]]


class HubService:
    """
    Hosts the router on a Reticulum destination.

    Every established RNS.Link is one connection. Frames are CBOR envelopes;
    inbound EVENT frames are handed to the router and answered with an ACK
    carrying the same message id. The service also implements the router's
    transport: it resolves connection ids and groups to links and sends.
    """

    def __init__(self, config: HubRuntimeConfig) -> None:
        self.config = config
        self.log = logging.getLogger("enrd.hub")

        # Guards session state only. Routing state is owned by the registry,
        # group manager and pending cache, each with its own locks. Never
        # hold this lock while sending.
        self._state_lock = threading.RLock()
        self._shutdown = threading.Event()
        self._local = threading.local()

        self.stats = StatsManager()
        self.registry = ConnectionRegistry(unique_names=config.unique_identity_names)
        self.groups = GroupMembership()
        self.pending = PendingCache(max_per_key=config.max_pending_per_target)
        self.router = Router(
            self.registry,
            self.groups,
            self.pending,
            self,
            stats=self.stats,
            reconcile_on_connect=config.reconcile_on_connect,
            max_name_len=config.max_name_len,
        )
        self.session_manager = SessionManager(self)

        self.identity: RNS.Identity | None = None
        self.destination: RNS.Destination | None = None

        self._announce_thread: threading.Thread | None = None
        self._ping_thread: threading.Thread | None = None
        self._reconcile_thread: threading.Thread | None = None

    def fmt_link_id(self, link: RNS.Link) -> str:
        lid = getattr(link, "link_id", None)
        if isinstance(lid, (bytes, bytearray)):
            return bytes(lid).hex()
        h = getattr(link, "hash", None)
        if isinstance(h, (bytes, bytearray)):
            return bytes(h).hex()
        return "-"

    @property
    def src(self) -> bytes:
        return self.identity.hash if self.identity is not None else b""

    # Lifecycle

    def start(self) -> None:
        self.log.info("Starting Reticulum")
        self.stats.set_start_time()
        RNS.Reticulum(configdir=self.config.configdir, require_shared_instance=False)

        if not self.config.identity_path:
            raise RuntimeError("identity_path is not set")
        self.identity = self._load_identity(self.config.identity_path)

        parts = [p for p in str(self.config.dest_name).split(".") if p]
        if not parts:
            raise ValueError("dest_name must not be empty")
        app_name, aspects = parts[0], parts[1:]

        self.destination = RNS.Destination(
            self.identity,
            RNS.Destination.IN,
            RNS.Destination.SINGLE,
            app_name,
            *aspects,
        )
        self.destination.set_link_established_callback(self._on_link)

        if self.config.announce_on_start:
            self._announce_once()

        self._announce_thread = self._start_loop(
            self.config.announce_period_s, self._announce_loop, "enrd-announce"
        )
        self._ping_thread = self._start_loop(
            self.config.ping_interval_s, self._ping_loop, "enrd-ping"
        )
        self._reconcile_thread = self._start_loop(
            self.config.reconcile_interval_s, self._reconcile_loop, "enrd-reconcile"
        )

        self.log.info(
            "Hub running dest_name=%s dest_hash=%s",
            self.config.dest_name,
            self.destination.hash.hex() if self.destination else "-",
        )
        self.log.info(
            "Policy unique_identity_names=%s max_pending_per_target=%s "
            "reconcile_interval_s=%s rate_limit_msgs_per_minute=%s",
            self.config.unique_identity_names,
            self.config.max_pending_per_target or "unbounded",
            self.config.reconcile_interval_s,
            self.config.rate_limit_msgs_per_minute,
        )

    def _start_loop(self, period: float, target, name: str) -> threading.Thread | None:
        if not period or float(period) <= 0:
            return None
        t = threading.Thread(target=target, name=name, daemon=True)
        t.start()
        return t

    def run_forever(self) -> None:
        if self.destination is None:
            self.start()

        signal.signal(signal.SIGINT, lambda *_: self.stop())
        signal.signal(signal.SIGTERM, lambda *_: self.stop())

        while not self._shutdown.is_set():
            time.sleep(0.25)

    def stop(self) -> None:
        self._shutdown.set()

        with self._state_lock:
            links = self.session_manager.clear_all()

        pending_total = self.pending.total()
        if pending_total:
            self.log.warning(
                "Shutting down with %s undelivered pending entr%s",
                pending_total,
                "y" if pending_total == 1 else "ies",
            )
        self.registry.clear_all()
        self.groups.clear_all()
        self.pending.clear_all()

        for link in links:
            self._teardown(link)

    def _load_identity(self, path: str) -> RNS.Identity:
        p = expand_path(path)
        if not p.exists():
            raise RuntimeError(f"Identity not found at {p}")
        ident = RNS.Identity.from_file(str(p))
        if ident is None:
            raise RuntimeError(f"Failed to load identity from {p}")
        return ident

    # Background loops

    def _announce_once(self) -> None:
        if self.destination is None:
            return
        try:
            self.destination.announce(
                app_data=encode({"proto": "enrd", "v": 1, "hub": self.config.hub_name})
            )
            self.stats.inc("announces")
        except Exception:
            self.log.exception("Announce failed")

    def _announce_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.announce_period_s)):
            self._announce_once()

    def _reconcile_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.reconcile_interval_s)):
            try:
                delivered = self.router.reconcile()
            except Exception:
                self.log.exception("Reconciliation pass failed")
                continue
            if delivered:
                self.log.info("Reconciliation delivered %s pending entr%s",
                              delivered, "y" if delivered == 1 else "ies")

    def _ping_loop(self) -> None:
        while not self._shutdown.wait(float(self.config.ping_interval_s)):
            timeout = float(self.config.ping_timeout_s)
            now = time.monotonic()
            to_teardown: list[RNS.Link] = []
            to_ping: list[RNS.Link] = []

            with self._state_lock:
                for link, sess in list(self.session_manager.sessions.items()):
                    if not sess.get("welcomed"):
                        continue
                    awaiting = sess.get("awaiting_pong")
                    if timeout > 0 and awaiting is not None and (now - float(awaiting)) > timeout:
                        to_teardown.append(link)
                        continue
                    if awaiting is None:
                        sess["awaiting_pong"] = now
                        to_ping.append(link)

            for link in to_teardown:
                self.log.info("Ping timeout link_id=%s", self.fmt_link_id(link))
                self._teardown(link)

            for link in to_ping:
                self.stats.inc("pings_out")
                self._send(link, make_envelope(T_PING, src=self.src, body=now))

    # Link callbacks

    def _on_link(self, link: RNS.Link) -> None:
        with self._state_lock:
            self.session_manager.on_link_established(link)

        link.set_packet_callback(lambda data, pkt: self._on_packet(link, data))
        link.set_link_closed_callback(lambda closed_link: self._on_close(closed_link))

        self.log.info("Link established link_id=%s", self.fmt_link_id(link))

    def _on_close(self, link: RNS.Link) -> None:
        with self._state_lock:
            connection_id = self.session_manager.on_link_closed(link)

        if connection_id is not None:
            self.router.disconnect(connection_id)

        self.log.info(
            "Link closed id=%s link_id=%s",
            connection_id or "-",
            self.fmt_link_id(link),
        )

    def _on_packet(self, link: RNS.Link, data: bytes) -> None:
        # RNS delivers packets on its own threads. Session lookups happen
        # under the state lock; routing and sending happen outside it.
        # Links closed while handling the packet are torn down once the
        # replies are out, so a requester still gets its ACK.
        outgoing: Outgoing = []
        closing: list[RNS.Link] = []
        self._local.closing = closing
        try:
            self._handle_packet(link, data, outgoing)
        except Exception:
            self.log.exception("Unhandled error link_id=%s", self.fmt_link_id(link))
        finally:
            self._local.closing = None
        for out_link, env in outgoing:
            self._send(out_link, env)
        for closed_link in closing:
            self._teardown(closed_link)

    def _handle_packet(self, link: RNS.Link, data: bytes, outgoing: Outgoing) -> None:
        with self._state_lock:
            sess = self.session_manager.get_session(link)
            if sess is None:
                return
            allowed = self.session_manager.refill_and_take(link, 1.0)
            welcomed = bool(sess.get("welcomed"))
            connection_id = sess.get("connection_id")

        self.stats.inc("pkts_in")
        self.stats.inc("bytes_in", len(data))

        if not allowed:
            self.stats.inc("rate_limited")
            self._queue_error(outgoing, link, "rate limited")
            return

        try:
            env = decode(data)
            validate_envelope(env)
        except (TypeError, ValueError) as e:
            self.stats.inc("pkts_bad")
            self.log.debug(
                "Bad frame link_id=%s bytes=%s err=%s", self.fmt_link_id(link), len(data), e
            )
            self._queue_error(outgoing, link, f"bad message: {e}")
            return

        t = env.get(K_T)
        if self.log.isEnabledFor(logging.DEBUG):
            self.log.debug(
                "RX link_id=%s t=%s event=%r bytes=%s",
                self.fmt_link_id(link),
                t,
                env.get(K_EVENT),
                len(data),
            )

        if t == T_PONG:
            with self._state_lock:
                sess["awaiting_pong"] = None
            self.stats.inc("pongs_in")
        elif t == T_PING:
            outgoing.append((link, make_envelope(T_PONG, src=self.src, body=env.get(K_BODY))))
        elif t == T_HELLO:
            self._handle_hello(link, env, outgoing)
        elif not welcomed or connection_id is None:
            self._queue_error(outgoing, link, "send HELLO first")
        elif t == T_EVENT:
            self._handle_event(link, connection_id, env, outgoing)
        else:
            self._queue_error(outgoing, link, f"unexpected frame type {t}")

    def _handle_hello(self, link: RNS.Link, env: dict, outgoing: Outgoing) -> None:
        try:
            claim = parse_claim(
                env.get(K_BODY),
                link_id=self.fmt_link_id(link),
                max_chars=self.config.max_name_len,
            )
        except RouterError as e:
            # A link that cannot say who it is gets disconnected.
            self.log.warning("Odd link, disconnecting link_id=%s: %s", self.fmt_link_id(link), e)
            self._send(link, make_envelope(T_ERROR, src=self.src, body=str(e)))
            self.stats.inc("errors_sent")
            self._teardown(link)
            return

        with self._state_lock:
            sess = self.session_manager.get_session(link) or {}
            previous_id = sess.get("connection_id")
            displaced = self.session_manager.bind(link, claim)

        if previous_id and previous_id != claim.connection_id:
            self.router.disconnect(previous_id)
        if displaced is not None:
            self.log.info(
                "Connection id=%s resumed on a new link; closing link_id=%s",
                claim.connection_id,
                self.fmt_link_id(displaced),
            )
            self._teardown(displaced)

        # WELCOME goes out before any flushed pending entries.
        welcome = make_envelope(
            T_WELCOME,
            src=self.src,
            body={"hub": self.config.hub_name, "version": __version__, "id": claim.connection_id},
        )
        self._send(link, welcome)

        try:
            result = self.router.connect(
                claim.connection_id, claim.kind, claim.name, state=claim.state
            )
        except RouterError as e:
            self.log.warning("Connect refused id=%s: %s", claim.connection_id, e)
            with self._state_lock:
                self.session_manager.on_link_closed(link)
            self._send(link, make_envelope(T_ERROR, src=self.src, body=str(e)))
            self.stats.inc("errors_sent")
            self._teardown(link)
            return

        self.log.info(
            "HELLO %s=%r id=%s resumed=%s link_id=%s",
            claim.kind,
            claim.name,
            claim.connection_id,
            claim.resumed,
            self.fmt_link_id(link),
        )
        outgoing.append(
            (link, make_envelope(T_ACK, src=self.src, event="connect", mid=env.get(K_ID), body=result))
        )

    def _handle_event(
        self, link: RNS.Link, connection_id: str, env: dict, outgoing: Outgoing
    ) -> None:
        event = env.get(K_EVENT)
        try:
            ack = self.router.dispatch(connection_id, event, env.get(K_BODY))
        except Exception:
            self.log.exception("Routing %s from id=%s failed", event, connection_id)
            ack = InternalInconsistency(f"{event} could not be processed").to_ack(event)

        outgoing.append(
            (link, make_envelope(T_ACK, src=self.src, event=event, mid=env.get(K_ID), body=ack))
        )

    # Sending

    def _queue_error(self, outgoing: Outgoing, link: RNS.Link, text: str) -> None:
        self.stats.inc("errors_sent")
        outgoing.append((link, make_envelope(T_ERROR, src=self.src, body=text)))

    def _packet_would_fit(self, link: RNS.Link, payload: bytes) -> bool:
        mdu = getattr(link, "MDU", None)
        if mdu is not None:
            return len(payload) <= mdu
        try:
            RNS.Packet(link, payload).pack()
            return True
        except Exception:
            return False

    def _send(self, link: RNS.Link, env: dict) -> bool:
        payload = encode(env)
        try:
            if self._packet_would_fit(link, payload):
                RNS.Packet(link, payload).send()
            elif len(payload) <= int(self.config.max_resource_bytes):
                # Admin snapshots can outgrow a packet; ship them as a Resource.
                RNS.Resource(payload, link, advertise=True, auto_compress=False)
            else:
                self.log.error(
                    "Frame too large link_id=%s bytes=%s",
                    self.fmt_link_id(link),
                    len(payload),
                )
                return False
        except OSError as e:
            self.log.warning(
                "Send failed link_id=%s bytes=%s err=%s",
                self.fmt_link_id(link),
                len(payload),
                e,
            )
            return False
        except Exception:
            self.log.debug(
                "Send failed link_id=%s bytes=%s",
                self.fmt_link_id(link),
                len(payload),
                exc_info=True,
            )
            return False

        self.stats.inc("bytes_out", len(payload))
        return True

    def _event_frame(self, event: str, payload: Any) -> dict:
        return make_envelope(T_EVENT, src=self.src, event=event, body=payload)

    def unicast(self, connection_id: str, event: str, payload: Any) -> None:
        with self._state_lock:
            link = self.session_manager.get_link(connection_id)
        if link is None:
            raise LookupError(f"no link for connection {connection_id}")
        if not self._send(link, self._event_frame(event, payload)):
            raise ConnectionError(f"{event} not sent to connection {connection_id}")

    def broadcast(self, group: str, event: str, payload: Any) -> None:
        env = self._event_frame(event, payload)
        members = self.groups.members(group)
        with self._state_lock:
            links = [
                link
                for link in (self.session_manager.get_link(cid) for cid in members)
                if link is not None
            ]
        for link in links:
            self._send(link, env)

    def broadcast_all(self, event: str, payload: Any) -> None:
        env = self._event_frame(event, payload)
        with self._state_lock:
            links = self.session_manager.all_links()
        for link in links:
            self._send(link, env)

    def close(self, connection_id: str) -> None:
        with self._state_lock:
            link = self.session_manager.get_link(connection_id)
        if link is None:
            return
        closing = getattr(self._local, "closing", None)
        if closing is not None:
            closing.append(link)
        else:
            self._teardown(link)

    def _teardown(self, link: RNS.Link) -> None:
        try:
            link.teardown()
        except Exception:
            self.log.debug("Teardown failed link_id=%s", self.fmt_link_id(link), exc_info=True)
