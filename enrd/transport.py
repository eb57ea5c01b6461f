"""The delivery capability the router needs from whatever carries frames.

``HubService`` implements it over Reticulum links; tests use an in-memory
recorder. Sends are fire-and-forget: an implementation may raise if a frame
cannot be handed to the link, and the router treats that as "not delivered".
"""

from __future__ import annotations

from typing import Any, Protocol


class Transport(Protocol):
    def unicast(self, connection_id: str, event: str, payload: Any) -> None:
        """Send one event to one connection."""

    def broadcast(self, group: str, event: str, payload: Any) -> None:
        """Send one event to every live member of a group."""

    def broadcast_all(self, event: str, payload: Any) -> None:
        """Send one event to every connection on the hub."""

    def close(self, connection_id: str) -> None:
        """Drop the channel serving a connection, if there is one."""
