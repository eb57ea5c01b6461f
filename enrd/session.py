from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

import RNS

from .constants import (
    B_HELLO_ID,
    B_HELLO_KIND,
    B_HELLO_NAME,
    B_HELLO_STATE,
    IDENTITY_KINDS,
)
from .errors import InvalidPayload
from .names import normalize_name

if TYPE_CHECKING:
    from .service import HubService


@dataclass
class _RateState:
    """Token bucket state for rate limiting."""

    tokens: float
    last_refill: float


@dataclass(frozen=True)
class IdentityClaim:
    kind: str
    name: str
    connection_id: str
    state: str | None = None
    resumed: bool = False


def parse_claim(body: Any, *, link_id: str, max_chars: int) -> IdentityClaim:
    """
    Read the identity a link claims in its HELLO.

    The claim names exactly one identity kind. A previously issued connection
    id may be supplied to resume a session; otherwise the link id is used.
    """
    if not isinstance(body, dict):
        raise InvalidPayload("HELLO must carry an identity claim")

    kind = body.get(B_HELLO_KIND)
    if kind not in IDENTITY_KINDS:
        raise InvalidPayload(f"HELLO kind must be one of {', '.join(IDENTITY_KINDS)}")

    name = normalize_name(body.get(B_HELLO_NAME), max_chars=max_chars)
    if name is None:
        raise InvalidPayload(f"HELLO for a {kind} requires a name")

    prior = body.get(B_HELLO_ID)
    resumed = isinstance(prior, str) and bool(prior.strip())
    connection_id = prior.strip() if resumed else link_id
    if not connection_id:
        raise InvalidPayload("HELLO lacks a usable connection id")

    state = body.get(B_HELLO_STATE)
    return IdentityClaim(
        kind=kind,
        name=name,
        connection_id=connection_id,
        state=state if isinstance(state, str) else None,
        resumed=resumed,
    )


class SessionManager:
    """
    Manages per-link session state for enrd hub connections.

    This class is responsible for:
    - Session creation and teardown as links come and go
    - Binding a link to the connection id it claimed in HELLO
    - Looking up the link currently serving a connection id
    - Rate limiting with a token bucket per link

    Must be called with the hub state lock held.
    """

    def __init__(self, hub: HubService) -> None:
        self.hub = hub
        self.log = logging.getLogger("enrd.session")
        self.sessions: dict[RNS.Link, dict[str, Any]] = {}
        self._rate: dict[RNS.Link, _RateState] = {}
        self._index_by_id: dict[str, RNS.Link] = {}  # connection id -> link

    def on_link_established(self, link: RNS.Link) -> None:
        self.sessions[link] = {
            "welcomed": False,
            "connection_id": None,
            "kind": None,
            "name": None,
            "awaiting_pong": None,
        }

        self._rate[link] = _RateState(
            tokens=float(self.hub.config.rate_limit_msgs_per_minute),
            last_refill=time.monotonic(),
        )

        self.log.debug("Session created link_id=%s", self.hub.fmt_link_id(link))

    def bind(self, link: RNS.Link, claim: IdentityClaim) -> RNS.Link | None:
        """
        Attach a claimed identity to a link.

        Returns the link that previously served the same connection id, if
        any, so the caller can tear it down.
        """
        sess = self.sessions.get(link)
        if sess is None:
            return None

        old_id = sess.get("connection_id")
        if old_id and self._index_by_id.get(old_id) is link:
            self._index_by_id.pop(old_id, None)

        displaced = self._index_by_id.get(claim.connection_id)
        if displaced is link:
            displaced = None
        self._index_by_id[claim.connection_id] = link

        if displaced is not None:
            other = self.sessions.get(displaced)
            if other is not None:
                other["connection_id"] = None
                other["welcomed"] = False

        sess["connection_id"] = claim.connection_id
        sess["kind"] = claim.kind
        sess["name"] = claim.name
        sess["welcomed"] = True
        return displaced

    def on_link_closed(self, link: RNS.Link) -> str | None:
        """
        Drop session state for a closed link.

        Returns the connection id to deregister, or None if the link never
        identified itself or its id has since been taken over by a newer link.
        """
        sess = self.sessions.pop(link, None)
        self._rate.pop(link, None)
        if not sess:
            return None

        connection_id = sess.get("connection_id")
        if connection_id and self._index_by_id.get(connection_id) is link:
            self._index_by_id.pop(connection_id, None)
            return connection_id
        return None

    def refill_and_take(self, link: RNS.Link, cost: float = 1.0) -> bool:
        """
        Token bucket rate limiting.

        Refills tokens based on elapsed time and attempts to take `cost` tokens.
        Returns True if tokens were available and taken, False if rate limited.
        """
        state = self._rate.get(link)
        if state is None:
            return True

        now = time.monotonic()
        per_min = float(max(1, int(self.hub.config.rate_limit_msgs_per_minute)))
        rate_per_s = per_min / 60.0
        elapsed = max(0.0, now - state.last_refill)
        state.tokens = min(per_min, state.tokens + elapsed * rate_per_s)
        state.last_refill = now

        if state.tokens < cost:
            return False

        state.tokens -= cost
        return True

    def get_session(self, link: RNS.Link) -> dict[str, Any] | None:
        return self.sessions.get(link)

    def get_link(self, connection_id: str) -> RNS.Link | None:
        return self._index_by_id.get(connection_id)

    def all_links(self) -> list[RNS.Link]:
        return [link for link, s in self.sessions.items() if s.get("welcomed")]

    def clear_all(self) -> list[RNS.Link]:
        """Clear all sessions and return their links for teardown."""
        links = list(self.sessions.keys())
        self.sessions.clear()
        self._rate.clear()
        self._index_by_id.clear()
        return links
