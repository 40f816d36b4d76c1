"""Backup tool interface and factory."""

from __future__ import annotations

import importlib
from abc import ABC, abstractmethod
from pathlib import Path
from typing import TYPE_CHECKING

from config import Config, ConfigError

if TYPE_CHECKING:
    from backup import BackupPlan

# Name of the compressed payload inside a streamed backup directory.
STREAM_FILENAME = "stream_data.gz"


class Engine(ABC):
    """Abstract base for hot-copy backup tools."""

    @abstractmethod
    def check_connectivity(self) -> None:
        """Verify the database server is running and reachable."""

    @abstractmethod
    def backup(self, plan: BackupPlan) -> None:
        """Take the backup described by *plan*. Raises RuntimeError on failure."""

    @abstractmethod
    def extract(self, source_dir: Path, dest_dir: Path) -> None:
        """Unpack the streamed payload in *source_dir* into *dest_dir*."""

    @abstractmethod
    def prepare(self, base_dir: Path, incremental_dir: Path | None = None) -> None:
        """Prepare *base_dir*, applying *incremental_dir* to it if given."""

    @abstractmethod
    def move_back(self, base_dir: Path) -> None:
        """Move a prepared *base_dir* into the live data directory."""

    @abstractmethod
    def fix_ownership(self, data_dir: Path) -> None:
        """Hand the restored data directory back to the database user."""


# Map of engine type names to module names within this package.
_ENGINE_TYPES = {
    "mariadb": "mariadb",
}


def create_engine(engine_type: str, cfg: Config) -> Engine:
    """Create an Engine instance by type name.

    The engine_type must match a key in _ENGINE_TYPES (e.g. 'mariadb').
    """
    if engine_type not in _ENGINE_TYPES:
        raise ConfigError(
            f"Unknown engine type '{engine_type}'. "
            f"Available: {', '.join(_ENGINE_TYPES)}"
        )

    module = importlib.import_module(f".{_ENGINE_TYPES[engine_type]}", package=__name__)
    return module.create(cfg)
