"""Validation of the room and visitor names clients send."""

from __future__ import annotations

from typing import Any

from .constants import NAME_MAX_CHARS

# Names end up in log lines and in UI lists.
_FORBIDDEN = frozenset("\r\n\x00")


def normalize_name(value: Any, *, max_chars: int = NAME_MAX_CHARS) -> str | None:
    """Return a cleaned room/visitor name, or None if it is unusable."""
    name = value.strip() if isinstance(value, str) else ""
    if not name or (max_chars and len(name) > max_chars):
        return None
    if _FORBIDDEN.intersection(name) or not _encodable(name):
        return None
    return name


def _encodable(s: str) -> bool:
    # Lone surrogates are valid in a str but not on the wire.
    try:
        s.encode("utf-8")
    except UnicodeEncodeError:
        return False
    return True
