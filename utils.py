"""Shared utility functions."""

from __future__ import annotations

import shutil
from pathlib import Path


class UsageThresholdError(Exception):
    """Raised when the storage partition is fuller than allowed."""


def partition_usage(path: str | Path) -> int:
    """Return the used share of the partition holding *path*, in percent.

    Rounded up, like `df --output=pcent`. Walks up to the nearest existing
    parent so a not-yet-created backup tree can be checked.
    """
    path = Path(path)
    while not path.exists() and path != path.parent:
        path = path.parent
    usage = shutil.disk_usage(path)
    # df computes used / (used + available), ignoring root-reserved blocks
    denominator = usage.used + usage.free
    if denominator == 0:
        return 0
    return -(-usage.used * 100 // denominator)


def check_usage(path: str | Path, threshold: int) -> int:
    """Raise UsageThresholdError if the partition of *path* is at or above *threshold*.

    Returns the current usage.
    """
    used = partition_usage(path)
    if used >= threshold:
        raise UsageThresholdError(
            f"Partition usage exceeds the defined threshold [{threshold}%]. "
            f"Generation or restoration of backups will be suspended until sufficient "
            f"space is freed. Current partition usage: {used}%!"
        )
    return used


def format_size(size_bytes: int) -> str:
    """Format a byte count as a human-readable string (B, KB, MB, GB)."""
    if size_bytes >= 1024 * 1024 * 1024:
        return f"{size_bytes / (1024 ** 3):.1f} GB"
    elif size_bytes >= 1024 * 1024:
        return f"{size_bytes / (1024 ** 2):.1f} MB"
    elif size_bytes >= 1024:
        return f"{size_bytes / 1024:.1f} KB"
    else:
        return f"{size_bytes} B"


def directory_size(path: str | Path) -> int:
    """Total size in bytes of all files below *path*."""
    return sum(f.stat().st_size for f in Path(path).rglob("*") if f.is_file())
