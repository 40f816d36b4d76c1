"""Shared fixtures for gfsbackup tests."""

from __future__ import annotations

import argparse
import sys
from datetime import datetime
from pathlib import Path

import pytest

# Add the gfsbackup project root to sys.path so imports work like they do at runtime.
_pkg_root = str(Path(__file__).resolve().parent.parent)
if _pkg_root not in sys.path:
    sys.path.insert(0, _pkg_root)

import config  # noqa: E402
from engines import STREAM_FILENAME, Engine  # noqa: E402
from stores.local import LocalStore  # noqa: E402


def write_record(directory: Path, parent: str | Path | None = None, version: str = "10.11.6") -> Path:
    """Write a mariadb_backup_info file the way mariadb-backup does."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    command = f"--backup --target-dir={directory} --user=mariabackup --parallel=1"
    if parent is not None:
        command = f"--incremental-basedir={parent} " + command
    lines = [
        "uuid = 3c4f1a2e-0000-0000-0000-000000000000",
        "name = ",
        "tool_name = mariadb-backup",
        f"tool_command = {command}",
        f"tool_version = {version}",
        "server_version = 10.11.6-MariaDB",
        "innodb_from_lsn = 0",
        f"incremental = {'Y' if parent else 'N'}",
        "format = file",
    ]
    path = directory / "mariadb_backup_info"
    path.write_text("\n".join(lines) + "\n")
    return path


class FakeEngine(Engine):
    """Stands in for mariadb-backup: writes chain records, records calls."""

    def __init__(self, fail_tiers=(), fail_prepare_on=None):
        self.fail_tiers = set(fail_tiers)
        self.fail_prepare_on = fail_prepare_on
        self.plans = []
        self.calls = []

    def check_connectivity(self) -> None:
        self.calls.append(("check_connectivity",))

    def backup(self, plan) -> None:
        self.plans.append(plan)
        if plan.tier in self.fail_tiers:
            raise RuntimeError(f"mariadb-backup --backup failed (exit 1): {plan.tier}")
        if plan.compressed:
            (plan.target_dir / STREAM_FILENAME).write_bytes(b"\x1f\x8bstream")
            write_record(plan.checkpoint_dir, plan.parent)
        else:
            (plan.target_dir / "ibdata1").write_bytes(b"data")
            write_record(plan.target_dir, plan.parent)

    def extract(self, source_dir, dest_dir) -> None:
        self.calls.append(("extract", Path(source_dir), Path(dest_dir)))
        Path(dest_dir).mkdir(parents=True, exist_ok=True)
        (Path(dest_dir) / "ibdata1").write_bytes(b"data")

    def prepare(self, base_dir, incremental_dir=None) -> None:
        self.calls.append(("prepare", Path(base_dir), Path(incremental_dir) if incremental_dir else None))
        if self.fail_prepare_on is not None and incremental_dir is not None:
            if Path(incremental_dir).name == self.fail_prepare_on:
                raise RuntimeError("mariadb-backup --prepare failed (exit 1)")

    def move_back(self, base_dir) -> None:
        self.calls.append(("move_back", Path(base_dir)))

    def fix_ownership(self, data_dir) -> None:
        self.calls.append(("fix_ownership", Path(data_dir)))


def make_config(tmp_path, raw=None, **args) -> config.Config:
    """Build a Config rooted in tmp_path; keyword args act as CLI options."""
    defaults = {
        "node_name": "node1",
        "storage_path": str(tmp_path),
        "rotation_strategy": None,
        "compression_strategy": None,
        "usage_threshold": None,
        "workers": 2,
        "timeout": None,
        "scratch_dir": None,
    }
    defaults.update(args)
    raw = {"password": "secret", **(raw or {})}
    return config.build_config(argparse.Namespace(**defaults), raw)


@pytest.fixture
def cfg(tmp_path):
    return make_config(tmp_path)


@pytest.fixture
def store(cfg):
    return LocalStore(cfg.backup_root, cfg.node_name)


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def clock():
    """A fixed point in time: Monday 2026-02-09 (ISO week 2026-W07)."""
    return lambda: datetime(2026, 2, 9, 3, 0, 0)
