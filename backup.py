"""Backup plans: target allocation, chaining and execution."""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from pathlib import Path

from chain import BackupRef
from config import Config
from engines import Engine
from stores import BACKUPS, CHECKPOINTS, NAMESPACES, BackupInstance, Store
from tiers import Tier
from utils import directory_size, format_size

log = logging.getLogger(__name__)

FULL = "full"
DIFFERENTIAL = "differential"
INCREMENTAL = "incremental"


class BackupError(Exception):
    """Raised when the backup tool fails to produce a backup."""


@dataclass(frozen=True)
class BackupPlan:
    tier: Tier
    instance: BackupInstance
    kind: str  # full, differential or incremental
    target_dir: Path
    checkpoint_dir: Path | None  # only for compressed backups
    parent: Path | None  # --incremental-basedir
    compressed: bool
    workers: int
    user: str
    password: str

    @property
    def description(self) -> str:
        tags = self.kind + (", compressed" if self.compressed else "")
        return f"{self.tier.value.upper()} backup ({tags})"

    def __repr__(self) -> str:
        return (
            f"BackupPlan(instance={self.instance.key!r}, kind={self.kind!r}, "
            f"parent={str(self.parent) if self.parent else None!r}, compressed={self.compressed})"
        )


def backup_kind(tier: Tier, parent: BackupRef | None) -> str:
    if parent is None:
        return FULL
    if tier is Tier.DAILY and parent.instance.tier is Tier.DAILY:
        return INCREMENTAL
    return DIFFERENTIAL


def next_instance(store: Store, tier: Tier, label: str) -> BackupInstance:
    """Allocate an instance for *label* that does not overwrite an existing one.

    The first backup of a label is unsuffixed. Once any backup of the label
    exists, the new one gets a suffix past the highest present (the bare
    label counts as 0), so it sorts newest even after older ones were pruned.
    """
    suffixes = [
        i.suffix
        for ns in NAMESPACES
        for i in store.list(tier, ns)
        if i.label == label
    ]
    if not suffixes:
        return BackupInstance(tier=tier, label=label)
    return BackupInstance(tier=tier, label=label, suffix=max(suffixes) + 1)


def build_plan(
    store: Store,
    cfg: Config,
    tier: Tier,
    label: str,
    parent: BackupRef | None = None,
    compressed: bool = False,
) -> BackupPlan:
    """Allocate and create the directories of a new backup and describe it.

    Directories exist once this returns, whether or not the backup succeeds.
    """
    instance = next_instance(store, tier, label)
    target_dir = store.create(instance, BACKUPS)
    checkpoint_dir = store.create(instance, CHECKPOINTS) if compressed else None

    plan = BackupPlan(
        tier=tier,
        instance=instance,
        kind=backup_kind(tier, parent),
        target_dir=target_dir,
        checkpoint_dir=checkpoint_dir,
        parent=parent.path if parent else None,
        compressed=compressed,
        workers=cfg.workers,
        user=cfg.backup_user,
        password=cfg.password,
    )
    log.info("Configuring %s\nStoring backup at '%s'", plan.description, target_dir)
    if parent is not None:
        log.info("Chaining from %s ('%s')", parent.instance.key, parent.path)
    return plan


def run_plan(engine: Engine, plan: BackupPlan) -> None:
    """Execute *plan* with *engine*.

    Raises BackupError when the backup tool fails. The target directory is
    left in place; it carries no chain metadata and is ignored when
    looking up the latest backup.
    """
    start = time.monotonic()
    try:
        engine.backup(plan)
    except (RuntimeError, TimeoutError, OSError) as exc:
        log.error("Backup generation was NOT successful! %s: %s", plan.instance.key, exc)
        raise BackupError(f"{plan.description} at '{plan.target_dir}' failed: {exc}") from exc

    elapsed = time.monotonic() - start
    log.info(
        "Backup generation was successful! %s in %.1fs (%s)",
        plan.instance.key, elapsed, format_size(directory_size(plan.target_dir)),
    )
