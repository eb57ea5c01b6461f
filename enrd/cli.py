from __future__ import annotations

import argparse
import sys
from dataclasses import replace
from pathlib import Path

import RNS
import tomlkit

from .config import HubRuntimeConfig, load_config
from .logging_config import configure_logging
from .paths import (
    default_config_path,
    default_identity_path,
    ensure_private_dir,
    expand_path,
    restrict_mode,
)
from .service import HubService


def build_default_config(identity_path: str) -> tomlkit.TOMLDocument:
    defaults = HubRuntimeConfig()
    doc = tomlkit.document()
    doc.add(tomlkit.comment("enrd configuration (TOML)"))
    doc.add(tomlkit.comment(""))
    doc.add(tomlkit.comment("This file was created on first run."))
    doc.add(tomlkit.comment("Edit it, then start enrd again."))
    doc.add(tomlkit.nl())

    hub = tomlkit.table()
    hub.add(tomlkit.comment("Reticulum configuration directory; empty uses the Reticulum default."))
    hub.add("configdir", "")
    hub.add("identity_path", identity_path)
    hub.add("dest_name", defaults.dest_name)
    hub.add(tomlkit.nl())

    hub.add(tomlkit.comment("announce_period_s > 0 re-announces periodically."))
    hub.add("announce_on_start", defaults.announce_on_start)
    hub.add("announce_period_s", defaults.announce_period_s)
    hub.add("hub_name", defaults.hub_name)
    hub.add(tomlkit.nl())

    hub.add(tomlkit.comment("Refuse a second live connection claiming the same room or visitor name."))
    hub.add("unique_identity_names", defaults.unique_identity_names)
    hub.add("max_name_len", defaults.max_name_len)
    hub.add(tomlkit.nl())

    hub.add(tomlkit.comment("Deferred deliveries. 0 keeps every entry until it is delivered;"))
    hub.add(tomlkit.comment("a positive bound drops the oldest entry for that target."))
    hub.add("max_pending_per_target", defaults.max_pending_per_target)
    hub.add(tomlkit.comment("Seconds between reconciliation passes (0 disables)."))
    hub.add("reconcile_interval_s", defaults.reconcile_interval_s)
    hub.add("reconcile_on_connect", defaults.reconcile_on_connect)
    hub.add(tomlkit.nl())

    hub.add("rate_limit_msgs_per_minute", defaults.rate_limit_msgs_per_minute)
    hub.add(tomlkit.comment("Frames larger than a packet go out as an RNS.Resource up to this size."))
    hub.add("max_resource_bytes", defaults.max_resource_bytes)
    hub.add(tomlkit.comment("Hub-initiated liveness checks (0 disables)."))
    hub.add("ping_interval_s", defaults.ping_interval_s)
    hub.add("ping_timeout_s", defaults.ping_timeout_s)
    doc.add("hub", hub)

    logging_tbl = tomlkit.table()
    logging_tbl.add("level", defaults.log_level)
    logging_tbl.add("rns_level", defaults.log_rns_level)
    logging_tbl.add("console", defaults.log_console)
    logging_tbl.add(tomlkit.comment("Optional log file (empty disables)."))
    logging_tbl.add("file", "")
    logging_tbl.add("format", defaults.log_format)
    logging_tbl.add("datefmt", "")
    doc.add("logging", logging_tbl)
    return doc


def _write_default_config(config_path: Path, identity_path: Path) -> None:
    if config_path.parent.name:
        ensure_private_dir(config_path.parent)
    config_path.write_text(
        tomlkit.dumps(build_default_config(str(identity_path))), encoding="utf-8"
    )


def _ensure_first_run_files(config_path: Path, identity_path: Path) -> bool:
    created_any = False

    if not config_path.exists():
        _write_default_config(config_path, identity_path)
        created_any = True

    if not identity_path.exists():
        if identity_path.parent.name:
            ensure_private_dir(identity_path.parent)
        RNS.Identity().to_file(str(identity_path))
        restrict_mode(identity_path, 0o600)
        created_any = True

    return created_any


def _build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="enrd", description="Run an exposure-notification router hub"
    )

    p.add_argument(
        "--config",
        default=str(default_config_path()),
        help="Path to a TOML config file (created on first run)",
    )
    p.add_argument("--configdir", default=None, help="Reticulum config directory")
    p.add_argument(
        "--identity",
        default=str(default_identity_path()),
        help="Path to hub identity file (created on first run)",
    )
    p.add_argument(
        "--dest-name", default=None, help="Destination app name (default: enrd.hub)"
    )

    p.add_argument(
        "--no-announce",
        action="store_true",
        help="Disable announce on start (does not affect periodic announce)",
    )
    p.add_argument(
        "--announce-period",
        type=float,
        default=None,
        help="Periodic announce interval seconds (0 disables)",
    )
    p.add_argument("--hub-name", default=None, help="Hub name in WELCOME")

    p.add_argument(
        "--unique-names",
        action="store_true",
        help="Refuse a second connection claiming an identity already connected",
    )
    p.add_argument(
        "--max-pending",
        type=int,
        default=None,
        help="Max deferred entries kept per target (0 keeps all)",
    )
    p.add_argument(
        "--reconcile-interval",
        type=float,
        default=None,
        help="Seconds between reconciliation passes (0 disables)",
    )
    p.add_argument(
        "--rate-limit-msgs-per-minute",
        type=int,
        default=None,
        help="Per-link message rate limit",
    )

    p.add_argument(
        "--ping-interval",
        type=float,
        default=None,
        help="Hub-initiated PING interval seconds (0 disables)",
    )
    p.add_argument(
        "--ping-timeout",
        type=float,
        default=None,
        help="Close link if PONG not received within this many seconds (0 disables)",
    )

    p.add_argument(
        "--log-level",
        default=None,
        help="Logging level override (DEBUG, INFO, WARNING, ERROR). Default comes from config.",
    )
    p.add_argument(
        "--log-file",
        default=None,
        help="Log file path override (empty disables file logging). Default comes from config.",
    )

    return p


def apply_args(cfg: HubRuntimeConfig, args: argparse.Namespace) -> HubRuntimeConfig:
    if args.dest_name is not None:
        cfg = replace(cfg, dest_name=args.dest_name)

    if args.no_announce:
        cfg = replace(cfg, announce_on_start=False)
    if args.announce_period is not None:
        cfg = replace(cfg, announce_period_s=float(args.announce_period))
    if args.hub_name is not None:
        cfg = replace(cfg, hub_name=args.hub_name)

    if args.unique_names:
        cfg = replace(cfg, unique_identity_names=True)
    if args.max_pending is not None:
        cfg = replace(cfg, max_pending_per_target=int(args.max_pending))
    if args.reconcile_interval is not None:
        cfg = replace(cfg, reconcile_interval_s=float(args.reconcile_interval))
    if args.rate_limit_msgs_per_minute is not None:
        cfg = replace(
            cfg, rate_limit_msgs_per_minute=int(args.rate_limit_msgs_per_minute)
        )

    if args.ping_interval is not None:
        cfg = replace(cfg, ping_interval_s=float(args.ping_interval))
    if args.ping_timeout is not None:
        cfg = replace(cfg, ping_timeout_s=float(args.ping_timeout))

    if args.log_level is not None:
        cfg = replace(cfg, log_level=str(args.log_level))
    if args.log_file is not None:
        cfg = replace(cfg, log_file=str(args.log_file) if str(args.log_file) else None)
    return cfg


def main(argv: list[str] | None = None) -> None:
    args = _build_arg_parser().parse_args(sys.argv[1:] if argv is None else argv)

    config_file = expand_path(args.config)
    identity_file = expand_path(args.identity)
    config_path = str(config_file)
    identity_path = str(identity_file)

    if _ensure_first_run_files(config_file, identity_file):
        print(
            "Created default enrd files. Edit the configuration before starting:\n"
            f"- Config:   {config_path}\n"
            f"- Identity: {identity_path}\n"
            "\nThen re-run enrd.",
            file=sys.stderr,
        )
        raise SystemExit(0)

    cfg = HubRuntimeConfig(
        config_path=config_path, configdir=args.configdir, identity_path=identity_path
    )
    cfg = load_config(cfg, config_path)
    if args.configdir is not None:
        cfg = replace(cfg, configdir=args.configdir)
    cfg = apply_args(cfg, args)

    configure_logging(cfg, override_level=args.log_level, override_file=args.log_file)

    svc = HubService(cfg)
    svc.start()
    svc.run_forever()


if __name__ == "__main__":
    main()
