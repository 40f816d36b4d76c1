"""Rebuild a backup chain in a scratch directory and move it into place."""

from __future__ import annotations

import logging
import shutil
import tempfile
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path

from chain import ChainError, read_instance_record, resolve_chain
from engines import STREAM_FILENAME, Engine
from service import ServiceController, ServiceError
from stores import BACKUPS, NAMESPACES, BackupInstance, Store
from tiers import TIERS
from utils import directory_size, format_size

log = logging.getLogger(__name__)


class RestoreError(Exception):
    """Raised when a restore operation cannot proceed."""


class RestoreState(str, Enum):
    STOPPED = "stopped"
    CHAIN_RESOLVED = "chain-resolved"
    BASE_STAGED = "base-staged"
    BASE_PREPARED = "base-prepared"
    INCREMENT_APPLIED = "increment-applied"
    MOVED_INTO_PLACE = "moved-into-place"
    SERVICE_RESTARTABLE = "service-restartable"
    FAILED = "failed"


@dataclass
class RestoreProgress:
    """Tracks one restore attempt through its states."""

    target: BackupInstance
    stack: list[BackupInstance] = field(default_factory=list)
    history: list[RestoreState] = field(default_factory=list)
    error: str | None = None

    @property
    def state(self) -> RestoreState | None:
        return self.history[-1] if self.history else None

    def advance(self, state: RestoreState, detail: str = "") -> None:
        self.history.append(state)
        log.info("Restore of %s: %s%s", self.target.key, state.value, f" ({detail})" if detail else "")

    def fail(self, exc: Exception) -> None:
        self.error = str(exc)
        self.history.append(RestoreState.FAILED)


def resolve_target(store: Store, target: str | Path) -> BackupInstance:
    """Map a backup path (payload or checkpoint) or 'tier/name' key to its instance."""
    instance = store.locate(target)
    if instance is None:
        raise RestoreError(
            f"'{target}' is not a backup path. Expected .../<tier>/<label>[&N]. "
            f"Use 'list' to see available backups."
        )
    if not any(store.exists(instance, ns) for ns in NAMESPACES):
        raise RestoreError(f"Backup '{instance.key}' not found. Use 'list' to see available backups.")
    return instance


def _is_streamed(directory: Path) -> bool:
    return (directory / STREAM_FILENAME).is_file()


def _stage(store: Store, engine: Engine, instance: BackupInstance, dest: Path) -> None:
    """Copy (or unpack) the payload of *instance* into *dest*."""
    source = store.path(instance, BACKUPS)
    if not source.is_dir():
        raise RestoreError(f"Payload of '{instance.key}' is missing at '{source}'")
    if _is_streamed(source):
        engine.extract(source, dest)
    else:
        shutil.copytree(source, dest)


def run_restore(
    store: Store,
    engine: Engine,
    service: ServiceController,
    target: BackupInstance,
    data_dir: str | Path,
    scratch_dir: str | Path | None = None,
    start_service: bool = False,
) -> RestoreProgress:
    """Restore *target* and everything it chains from into *data_dir*.

    The chain is rebuilt in a scratch directory, oldest backup first; the
    live data directory is only touched by the final move-back. The
    scratch directory is removed whatever the outcome.

    Raises:
        ChainError: when the chain of *target* cannot be resolved.
        RestoreError: when any other stage fails.
    """
    progress = RestoreProgress(target=target)
    try:
        service.stop()
        progress.advance(RestoreState.STOPPED)

        progress.stack = resolve_chain(store, target)
        replay = list(reversed(progress.stack))
        root, increments = replay[0], replay[1:]
        progress.advance(RestoreState.CHAIN_RESOLVED, " -> ".join(i.key for i in replay))

        with tempfile.TemporaryDirectory(prefix="gfsbackup.", dir=scratch_dir) as scratch:
            base_dir = Path(scratch) / "base"
            _stage(store, engine, root, base_dir)
            progress.advance(RestoreState.BASE_STAGED, root.key)

            engine.prepare(base_dir)
            progress.advance(RestoreState.BASE_PREPARED, root.key)

            for n, increment in enumerate(increments, start=1):
                fragment = store.path(increment, BACKUPS)
                if not fragment.is_dir():
                    raise RestoreError(f"Payload of '{increment.key}' is missing at '{fragment}'")
                unpacked = None
                if _is_streamed(fragment):
                    unpacked = Path(scratch) / f"increment-{n}"
                    engine.extract(fragment, unpacked)
                    fragment = unpacked
                engine.prepare(base_dir, fragment)
                if unpacked is not None:
                    shutil.rmtree(unpacked, ignore_errors=True)
                progress.advance(RestoreState.INCREMENT_APPLIED, increment.key)

            engine.move_back(base_dir)
        progress.advance(RestoreState.MOVED_INTO_PLACE, str(data_dir))

        engine.fix_ownership(Path(data_dir))
        if start_service:
            service.start()
        progress.advance(RestoreState.SERVICE_RESTARTABLE)
    except ChainError as exc:
        progress.fail(exc)
        log.error("Backup restoration was NOT successful! %s", exc)
        raise
    except (RestoreError, ServiceError, RuntimeError, TimeoutError, OSError) as exc:
        stage = progress.state.value if progress.state else "start"
        progress.fail(exc)
        log.error("Backup restoration was NOT successful! Failed after '%s': %s", stage, exc)
        if isinstance(exc, RestoreError):
            raise
        raise RestoreError(f"Restore of '{target.key}' failed after '{stage}': {exc}") from exc

    if start_service:
        log.info("Backup restoration was successful! Restored DB from '%s'", target.key)
    else:
        log.info(
            "Backup restoration was successful! You can now start MariaDB. Restored DB from '%s'",
            target.key,
        )
    return progress


def list_backups(store: Store) -> list[BackupInstance]:
    """Print every backup of every tier. Returns the list for programmatic use."""
    rows = []
    for tier in TIERS:
        for instance in store.list(tier, BACKUPS):
            found = read_instance_record(store, instance)
            if found is None:
                kind, parent = "unfinished", "-"
            else:
                record, _ = found
                kind = "full" if record.is_full else "chained"
                parent_instance = store.locate(record.parent) if record.parent else None
                parent = parent_instance.key if parent_instance else (record.parent or "-")
            size = directory_size(store.path(instance, BACKUPS))
            rows.append((instance, kind, size, parent))

    if not rows:
        print("No backups found.")
        return []

    print(f"{'Backup':<28} {'Kind':<11} {'Size':>10}  {'Parent'}")
    print("-" * 70)
    for instance, kind, size, parent in rows:
        print(f"{instance.key:<28} {kind:<11} {format_size(size):>10}  {parent}")

    print(f"\nTotal: {len(rows)} backup(s)")
    return [row[0] for row in rows]
