from __future__ import annotations

import tomllib
from dataclasses import asdict, dataclass, replace


@dataclass(frozen=True)
class HubRuntimeConfig:
    config_path: str | None = None
    configdir: str | None = None
    identity_path: str | None = None
    dest_name: str = "enrd.hub"
    announce_on_start: bool = True
    announce_period_s: float = 0.0
    hub_name: str = "enrd"
    unique_identity_names: bool = False
    max_name_len: int = 64
    max_pending_per_target: int = 0
    reconcile_interval_s: float = 30.0
    reconcile_on_connect: bool = True
    rate_limit_msgs_per_minute: int = 240
    max_resource_bytes: int = 262144
    ping_interval_s: float = 0.0
    ping_timeout_s: float = 0.0
    log_level: str = "INFO"
    log_rns_level: str = "WARNING"
    log_console: bool = True
    log_file: str | None = None
    log_format: str = "%(asctime)s %(levelname)s %(name)s[%(threadName)s]: %(message)s"
    log_datefmt: str | None = None


_LOGGING_KEYS = {
    "level": "log_level",
    "rns_level": "log_rns_level",
    "console": "log_console",
    "file": "log_file",
    "format": "log_format",
    "datefmt": "log_datefmt",
}

# Empty strings in the file mean "unset" for these.
_OPTIONAL_KEYS = ("configdir", "log_file", "log_datefmt")


def load_toml(path: str) -> dict:
    with open(path, "rb") as f:
        data = tomllib.load(f)
    return data if isinstance(data, dict) else {}


def apply_config_data(base: HubRuntimeConfig, data: dict) -> HubRuntimeConfig:
    """Overlay a parsed config file onto ``base``.

    Keys may live at the top level or under ``[hub]``; ``[logging]`` keys are
    mapped onto the ``log_*`` fields. Unknown keys are ignored.
    """
    hub = data.get("hub") if isinstance(data, dict) else None
    if isinstance(hub, dict):
        data = {**data, **hub}

    log_table = data.get("logging") if isinstance(data, dict) else None
    if isinstance(log_table, dict):
        mapped = {
            field: log_table.get(key)
            for key, field in _LOGGING_KEYS.items()
            if key in log_table
        }
        data = {**data, **mapped}

    allowed = set(asdict(base).keys())
    # This identifies where the config came from; do not let the file override it.
    allowed.discard("config_path")

    updates = {k: v for k, v in data.items() if k in allowed}

    if "announce" in data and "announce_on_start" not in updates:
        updates["announce_on_start"] = bool(data["announce"])
    for key in _OPTIONAL_KEYS:
        if key in updates and updates[key] == "":
            updates[key] = None

    return replace(base, **updates) if updates else base


def load_config(base: HubRuntimeConfig, path: str) -> HubRuntimeConfig:
    return apply_config_data(base, load_toml(path))
