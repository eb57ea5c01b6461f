"""Where the hub keeps its files.

Everything lives under one home directory: ``~/.enrd``, or whatever
``ENRD_HOME`` names.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

HOME_ENV = "ENRD_HOME"
CONFIG_FILE = "enrd.toml"
IDENTITY_FILE = "hub_identity"

log = logging.getLogger("enrd.paths")


def expand_path(p: str | os.PathLike[str]) -> Path:
    """Resolve ``$VARS`` and ``~`` in a user-supplied path."""
    return Path(os.path.expandvars(os.fspath(p))).expanduser()


def enrd_home() -> Path:
    return expand_path(os.environ.get(HOME_ENV) or "~/.enrd")


def default_config_path() -> Path:
    return enrd_home() / CONFIG_FILE


def default_identity_path() -> Path:
    return enrd_home() / IDENTITY_FILE


def restrict_mode(path: Path, mode: int) -> bool:
    """chmod, tolerating filesystems that refuse it."""
    try:
        path.chmod(mode)
    except OSError as e:
        log.debug("Could not set mode %o on %s: %s", mode, path, e)
        return False
    return True


def ensure_private_dir(path: Path) -> Path:
    path.mkdir(parents=True, exist_ok=True)
    # mkdir(mode=...) is masked by the umask and skipped for existing dirs.
    restrict_mode(path, 0o700)
    return path
