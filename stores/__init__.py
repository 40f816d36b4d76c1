"""Backup store interface and factory.

A store holds, per node and tier, two parallel namespaces:
- backups:     the payload written by the backup tool
- checkpoints: chain metadata (--extra-lsndir) for compressed backups
"""

from __future__ import annotations

import importlib
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path

from config import ConfigError
from tiers import Tier

BACKUPS = "backups"
CHECKPOINTS = "checkpoints"
NAMESPACES = (BACKUPS, CHECKPOINTS)

# Separates the timestamp label from the disambiguation counter: 2026-02-10&2
SUFFIX_SEPARATOR = "&"

_NAME_RE = re.compile(r"^(?P<label>[^&]+?)(?:&(?P<suffix>\d+))?$")


@dataclass(frozen=True, order=True)
class BackupInstance:
    """One backup of a tier: <label> or <label>&<suffix>.

    Instances order by (label, suffix), which is creation order within a tier.
    """

    tier: Tier
    label: str
    suffix: int = 0  # 0 = no suffix

    @property
    def name(self) -> str:
        if self.suffix:
            return f"{self.label}{SUFFIX_SEPARATOR}{self.suffix}"
        return self.label

    @property
    def key(self) -> str:
        """Store-relative identifier, e.g. 'daily/2026-02-10&1'."""
        return f"{self.tier.value}/{self.name}"

    def __str__(self) -> str:
        return self.key


def parse_instance_name(tier: Tier, name: str) -> BackupInstance | None:
    """Parse a directory name like '2026-02-10' or '2026-02-10&3'."""
    m = _NAME_RE.match(name)
    if not m:
        return None
    return BackupInstance(tier=tier, label=m.group("label"), suffix=int(m.group("suffix") or 0))


def parse_instance_key(key: str) -> BackupInstance | None:
    """Parse 'tier/name' or any path ending in '<tier>/<name>'."""
    parts = [p for p in str(key).rstrip("/").split("/") if p]
    if len(parts) < 2:
        return None
    try:
        tier = Tier(parts[-2])
    except ValueError:
        return None
    return parse_instance_name(tier, parts[-1])


class Store(ABC):
    """Abstract base for backup storage backends."""

    @abstractmethod
    def list(self, tier: Tier, namespace: str = BACKUPS) -> list[BackupInstance]:
        """List instances of *tier* in *namespace*, sorted oldest-first."""

    @abstractmethod
    def path(self, instance: BackupInstance, namespace: str = BACKUPS) -> Path:
        """Return the directory of *instance* in *namespace*."""

    @abstractmethod
    def exists(self, instance: BackupInstance, namespace: str = BACKUPS) -> bool:
        """Return True if *instance* has an entry in *namespace*."""

    @abstractmethod
    def create(self, instance: BackupInstance, namespace: str = BACKUPS) -> Path:
        """Create the directory of *instance* in *namespace* and return it."""

    @abstractmethod
    def delete(self, instance: BackupInstance, namespace: str = BACKUPS) -> bool:
        """Delete *instance* from *namespace*. Missing entries are not an error.

        Returns True if something was removed.
        """

    @abstractmethod
    def locate(self, path: str | Path) -> BackupInstance | None:
        """Map a payload or checkpoint directory back to its instance."""

    def close(self) -> None:
        """Release any resources held by the store."""

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False


# Map of store type names to module names within this package.
_STORE_TYPES = {
    "local": "local",
}


def create_store(config: dict) -> Store:
    """Create a Store instance from a store config dict.

    The config must have a 'type' key (e.g. 'local').
    Remaining keys are passed to the store's constructor.
    """
    store_type = config.get("type")
    if store_type not in _STORE_TYPES:
        raise ConfigError(
            f"Unknown store type '{store_type}'. "
            f"Available: {', '.join(_STORE_TYPES)}"
        )

    module = importlib.import_module(f".{_STORE_TYPES[store_type]}", package=__name__)
    return module.create(config)
