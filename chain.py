"""Backup chains: chain-metadata records, latest-backup lookup, chain walking.

mariadb-backup writes a `mariadb_backup_info` file (`xtrabackup_info` before
MariaDB 10.8) next to every finished backup: in the payload directory, or
in the --extra-lsndir checkpoint directory for streamed backups. It holds
`key = value` lines; the `tool_command` line records the options the
backup was taken with, including `--incremental-basedir`, which is the
chain-parent pointer.

The file belongs to the backup tool. It is only ever read here.
"""

from __future__ import annotations

import logging
import shlex
from dataclasses import dataclass, field
from pathlib import Path

from stores import BACKUPS, CHECKPOINTS, BackupInstance, Store
from tiers import TIERS, Tier

log = logging.getLogger(__name__)

RECORD_FILENAMES = ("mariadb_backup_info", "xtrabackup_info")

_BASEDIR_OPTION = "--incremental-basedir"


class ChainError(Exception):
    """Raised when a backup chain cannot be resolved. Never retried."""


@dataclass(frozen=True)
class ChainRecord:
    """Parsed chain metadata of one backup."""

    schema_version: str  # tool_version of the writer, "" if absent
    parent: str | None  # --incremental-basedir, None for full backups
    fields: dict = field(default_factory=dict, compare=False)

    @property
    def is_full(self) -> bool:
        return self.parent is None


@dataclass(frozen=True)
class BackupRef:
    """A resolved backup and the directory to chain new backups from."""

    instance: BackupInstance
    path: Path


def parse_record(text: str) -> ChainRecord:
    """Parse the contents of a mariadb_backup_info file."""
    fields: dict[str, str] = {}
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep:
            continue
        fields[key.strip()] = value.strip()

    parent = None
    try:
        tokens = shlex.split(fields.get("tool_command", ""))
    except ValueError:
        tokens = fields.get("tool_command", "").split()
    for i, token in enumerate(tokens):
        if token.startswith(_BASEDIR_OPTION + "="):
            parent = token.split("=", 1)[1]
        elif token == _BASEDIR_OPTION and i + 1 < len(tokens):
            parent = tokens[i + 1]
    if parent is not None:
        parent = parent.rstrip("/") or None

    return ChainRecord(
        schema_version=fields.get("tool_version", ""),
        parent=parent,
        fields=fields,
    )


def read_record(directory: str | Path) -> ChainRecord | None:
    """Read the chain record in *directory*, or None if there is none."""
    directory = Path(directory)
    for name in RECORD_FILENAMES:
        record_path = directory / name
        if not record_path.is_file():
            continue
        try:
            text = record_path.read_text(errors="replace")
        except OSError as exc:
            raise ChainError(f"Could not read chain metadata '{record_path}': {exc}") from exc
        return parse_record(text)
    return None


def read_instance_record(store: Store, instance: BackupInstance) -> tuple[ChainRecord, Path] | None:
    """Find the record of *instance*, checking the payload then the checkpoint."""
    for namespace in (BACKUPS, CHECKPOINTS):
        directory = store.path(instance, namespace)
        record = read_record(directory)
        if record is not None:
            return record, directory
    return None


def chain_children(store: Store) -> dict[BackupInstance, list[BackupInstance]]:
    """Map each backup that others chain from to the backups chaining from it."""
    children: dict[BackupInstance, list[BackupInstance]] = {}
    for tier in TIERS:
        instances = sorted({i for ns in (BACKUPS, CHECKPOINTS) for i in store.list(tier, ns)})
        for instance in instances:
            found = read_instance_record(store, instance)
            if found is None or found[0].parent is None:
                continue
            parent = store.locate(found[0].parent)
            if parent is not None and parent != instance:
                children.setdefault(parent, []).append(instance)
    return children


def find_latest(store: Store, tier: Tier) -> BackupRef | None:
    """Return the most recent finished backup of *tier*, or None.

    Checkpoints are preferred: a streamed backup can only be chained from
    its checkpoint directory. Entries without a chain record were
    interrupted before the backup tool finished and are skipped.
    """
    for namespace in (CHECKPOINTS, BACKUPS):
        for instance in reversed(store.list(tier, namespace)):
            directory = store.path(instance, namespace)
            if read_record(directory) is not None:
                return BackupRef(instance=instance, path=directory)
            log.warning(
                "Skipping unfinished backup %s/%s (no chain metadata)", namespace, instance.key,
            )
    return None


def resolve_chain(store: Store, target: BackupInstance) -> list[BackupInstance]:
    """Walk chain-parent pointers back from *target* to its full backup.

    Returns the backup stack, newest first: [target, parent, ..., root].
    Replay it with reversed().

    Raises ChainError when any record in the chain is missing.
    """
    stack: list[BackupInstance] = []
    current = target
    while True:
        if current in stack:
            raise ChainError(f"Backup chain of '{target.key}' loops at '{current.key}'")
        found = read_instance_record(store, current)
        if found is None:
            raise ChainError(
                f"Could not resolve the base backup of '{target.key}': "
                f"chain metadata of '{current.key}' is missing."
            )
        record, _ = found
        stack.append(current)
        if record.parent is None:
            break
        parent = store.locate(record.parent)
        if parent is None:
            raise ChainError(
                f"Backup '{current.key}' chains from '{record.parent}', "
                f"which is not part of this backup store."
            )
        log.debug("%s chains from %s", current.key, parent.key)
        current = parent

    log.info(
        "Resolved chain of %s: %s",
        target.key, " <- ".join(i.key for i in reversed(stack)),
    )
    return stack
