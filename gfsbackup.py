#!/usr/bin/env python3
"""gfsbackup: Grandfather-Father-Son hot backups for MariaDB.

Usage:
    gfsbackup [OPTIONS] [daily|weekly|monthly|annually]
    gfsbackup [OPTIONS] --restore <path>
    gfsbackup [OPTIONS] --list

Tiers:
    daily       differential backup       [keep 7]
    weekly      differential backup       [keep 5]
    monthly     full (compressed) backup  [keep 12]
    annually    full (compressed) backup  [keep all]

Exit status: 0 on success, 2 when nothing was attempted (bad options,
partition too full, missing tools), 1 when a backup or restore was
attempted and failed.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
import time

import config
from backup import BackupError
from chain import ChainError
from config import Config, ConfigError
from engines import create_engine
from restore import RestoreError, list_backups, resolve_target, run_restore
from scheduler import Scheduler
from service import ServiceController, ServiceError
from stores import create_store
from tiers import TIERS
from utils import UsageThresholdError, check_usage

log = logging.getLogger("gfsbackup")

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_PREFLIGHT = 2


class AuditFormatter(logging.Formatter):
    """One line per record: [2026-02-10 14:30:00+00] [node] [LEVEL] message"""

    converter = time.gmtime

    def __init__(self, node: str):
        super().__init__(
            fmt=f"[%(asctime)s] [{node}] [%(levelname)s] %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S+00",
        )

    def format(self, record: logging.LogRecord) -> str:
        return " ".join(super().format(record).splitlines())


def setup_logging(quiet: bool = False, debug: bool = False) -> None:
    level = logging.INFO
    if debug:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(
        level=level,
        format="[%(asctime)s] [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def add_audit_log(cfg: Config) -> logging.Handler:
    """Append every INFO+ record to <backup root>/status.log."""
    try:
        cfg.status_log.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(cfg.status_log)
    except OSError as exc:
        raise ConfigError(f"Cannot write the status log '{cfg.status_log}': {exc}") from exc
    handler.setLevel(logging.INFO)
    handler.setFormatter(AuditFormatter(cfg.node_name))
    root = logging.getLogger()
    root.addHandler(handler)
    # basicConfig's level may be WARNING under --quiet; the audit log still wants INFO
    if root.level > logging.INFO:
        for h in root.handlers:
            if h is not handler and h.level == logging.NOTSET:
                h.setLevel(root.level)
        root.setLevel(logging.INFO)
    return handler


def _store(cfg: Config):
    return create_store({"type": "local", "root": cfg.backup_root, "node": cfg.node_name})


def _check_superuser() -> None:
    if os.geteuid() != 0:
        raise ConfigError(
            "Superuser privileges are required for gfsbackup to run. Try `sudo !!`."
        )


def cmd_backup(args: argparse.Namespace, cfg: Config) -> None:
    tier = config.get_tier(args.tier)
    config.require_password(cfg)
    engine = create_engine("mariadb", cfg)
    engine.check_connectivity()

    with _store(cfg) as store:
        plans = Scheduler(store, engine, cfg).run(tier)

    log.info("Backups created: %s", ", ".join(f"{p.instance.key} ({p.kind})" for p in plans))


def cmd_restore(args: argparse.Namespace, cfg: Config) -> None:
    with _store(cfg) as store:
        try:
            target = resolve_target(store, args.restore)
        except RestoreError as exc:
            raise ConfigError(str(exc)) from exc
        engine = create_engine("mariadb", cfg)
        service = ServiceController(cfg.service_name)

        run_restore(
            store,
            engine,
            service,
            target,
            data_dir=cfg.data_dir,
            scratch_dir=cfg.scratch_dir,
            start_service=args.start_service,
        )


def cmd_list(args: argparse.Namespace, cfg: Config) -> None:
    with _store(cfg) as store:
        list_backups(store)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="gfsbackup",
        description="Grandfather-Father-Son hot backups for MariaDB.",
    )
    parser.add_argument(
        "tier", nargs="?", default="daily",
        help=f"Backup tier: {'|'.join(t.value for t in TIERS)} (default: daily)",
    )
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("-r", "--restore", metavar="PATH", default=None,
        help="Restore the backup at PATH (and everything it chains from)")
    mode.add_argument("-l", "--list", action="store_true", help="List existing backups")

    parser.add_argument("--config", default=None,
        help=f"Config file path (default: $GFSBACKUP_CONFIG or {config.DEFAULT_CONFIG_PATH})")
    parser.add_argument("-n", "--node-name", dest="node_name", default=None,
        help="Machine identifier used in logs and backup paths (default: host name)")
    parser.add_argument("-s", "--storage-path", dest="storage_path", default=None,
        help=f"Where to store backups (default: {config.DEFAULT_STORAGE_PATH})")
    parser.add_argument("-t", "--usage-threshold", dest="usage_threshold", default=None,
        help=f"Max partition usage in percent (default: {config.DEFAULT_USAGE_THRESHOLD}%%)")
    parser.add_argument("-R", "--rotation-strategy", dest="rotation_strategy", default=None,
        help=f"Backups to keep per tier, daily:weekly:monthly:annually, "
             f"empty = keep all (default: '{config.DEFAULT_ROTATION_STRATEGY}')")
    parser.add_argument("-c", "--compression-strategy", dest="compression_strategy", default=None,
        help=f"Compress per tier, daily:weekly:monthly:annually "
             f"(default: '{config.DEFAULT_COMPRESSION_STRATEGY}')")
    parser.add_argument("-p", "--parallel", dest="workers", type=int, default=None, metavar="N",
        help="Copy threads passed to mariadb-backup (default: 30%% of CPUs)")
    parser.add_argument("--scratch-dir", dest="scratch_dir", default=None,
        help="Where restores are staged (default: system temp dir)")
    parser.add_argument("--start-service", action="store_true",
        help="Start the database service after a successful restore")
    parser.add_argument("-q", "--quiet", action="store_true", help="Only print warnings and errors")
    parser.add_argument("--debug", action="store_true",
        help="Print debug output, including the commands being run")
    return parser


def main(argv: list[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(quiet=args.quiet, debug=args.debug)

    try:
        raw_config = config.load(args.config)
        cfg = config.build_config(args, raw_config)
        if not args.restore and not args.list:
            config.get_tier(args.tier)
        _check_superuser()
        add_audit_log(cfg)
        if not args.list:
            check_usage(cfg.storage_path, cfg.usage_threshold)

        if args.restore:
            cmd_restore(args, cfg)
        elif args.list:
            cmd_list(args, cfg)
        else:
            cmd_backup(args, cfg)
    except (ConfigError, UsageThresholdError) as e:
        log.error("%s", e)
        sys.exit(EXIT_PREFLIGHT)
    except (BackupError, ChainError, RestoreError, ServiceError) as e:
        log.error("%s", e)
        sys.exit(EXIT_FAILURE)


if __name__ == "__main__":
    main()
