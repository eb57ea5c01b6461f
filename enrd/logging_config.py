from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from .config import HubRuntimeConfig

_LEVEL_ALIASES = {"WARN": logging.WARNING, "FATAL": logging.CRITICAL}


def parse_level(value: Any, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, int):
        return value
    text = str(value).strip().upper()
    if not text:
        return default

    if text in _LEVEL_ALIASES:
        return _LEVEL_ALIASES[text]
    level = logging.getLevelNamesMapping().get(text)
    if level is not None:
        return level

    try:
        return int(text)
    except ValueError:
        return default


def _clean_optional_path(value: Any) -> str | None:
    if value is None:
        return None
    s = str(value)
    if not s.strip():
        return None
    return s


def _file_handler(log_file: str) -> logging.Handler:
    p = Path(os.path.expanduser(log_file))
    p.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(p, encoding="utf-8")
    try:
        # Logs name visitors and rooms.
        os.chmod(p, 0o600)
    except OSError:
        pass
    return handler


def configure_logging(
    cfg: HubRuntimeConfig,
    *,
    override_level: str | None = None,
    override_file: str | None = None,
) -> None:
    """Configure Python logging for enrd.

    Replaces any handlers already on the root logger, so calling it again
    with a new config takes effect immediately.
    """

    level = parse_level(override_level or cfg.log_level, logging.INFO)
    rns_level = parse_level(cfg.log_rns_level, logging.WARNING)

    handlers: list[logging.Handler] = []

    if cfg.log_console:
        handlers.append(logging.StreamHandler())

    log_file = _clean_optional_path(override_file) if override_file is not None else None
    if log_file is None:
        log_file = _clean_optional_path(cfg.log_file)
    if log_file:
        handlers.append(_file_handler(log_file))

    fmt = str(cfg.log_format).strip() or "%(asctime)s %(levelname)s %(name)s: %(message)s"
    formatter = logging.Formatter(fmt=fmt, datefmt=_clean_optional_path(cfg.log_datefmt))
    for h in handlers:
        h.setFormatter(formatter)

    root = logging.getLogger()
    for h in list(root.handlers):
        root.removeHandler(h)
    for h in handlers:
        root.addHandler(h)
    root.setLevel(level)

    # Reticulum's own Python loggers are noisy at INFO.
    logging.getLogger("RNS").setLevel(rns_level)

    logging.captureWarnings(True)
