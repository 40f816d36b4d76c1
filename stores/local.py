"""Local filesystem store.

Layout under the backup root:

    <root>/<node>/backups/<tier>/<label>[&N]/
    <root>/<node>/checkpoints/<tier>/<label>[&N]/
"""

from __future__ import annotations

import logging
import os
import shutil
from pathlib import Path

from config import ConfigError
from tiers import Tier

from . import NAMESPACES, BACKUPS, BackupInstance, Store, parse_instance_key, parse_instance_name

log = logging.getLogger(__name__)


class LocalStore(Store):
    def __init__(self, root: str | Path, node: str):
        if not node or "/" in node:
            raise ConfigError(f"Invalid node name: {node!r}")
        self.root = Path(root)
        self.node = node
        self.node_dir = self.root / node

    def _tier_dir(self, tier: Tier, namespace: str) -> Path:
        if namespace not in NAMESPACES:
            raise ValueError(f"Unknown namespace '{namespace}'")
        return self.node_dir / namespace / tier.value

    def list(self, tier: Tier, namespace: str = BACKUPS) -> list[BackupInstance]:
        tier_dir = self._tier_dir(tier, namespace)
        if not tier_dir.is_dir():
            return []
        instances = []
        for entry in tier_dir.iterdir():
            if not entry.is_dir():
                continue
            instance = parse_instance_name(tier, entry.name)
            if instance is None:
                log.warning("Ignoring unrecognised entry in %s: %s", tier_dir, entry.name)
                continue
            instances.append(instance)
        return sorted(instances)

    def path(self, instance: BackupInstance, namespace: str = BACKUPS) -> Path:
        return self._tier_dir(instance.tier, namespace) / instance.name

    def exists(self, instance: BackupInstance, namespace: str = BACKUPS) -> bool:
        return self.path(instance, namespace).exists()

    def create(self, instance: BackupInstance, namespace: str = BACKUPS) -> Path:
        target = self.path(instance, namespace)
        target.mkdir(parents=True, exist_ok=True)
        return target

    def delete(self, instance: BackupInstance, namespace: str = BACKUPS) -> bool:
        target = self.path(instance, namespace)
        if not target.exists():
            return False
        if target.is_dir():
            shutil.rmtree(target, ignore_errors=True)
        else:
            target.unlink(missing_ok=True)
        return not target.exists()

    def locate(self, path: str | Path) -> BackupInstance | None:
        """Map a '<tier>/<name>' key or a directory of this node to its instance."""
        path = Path(path)
        if not path.is_absolute() and len(path.parts) == 2:
            return parse_instance_key(str(path))
        try:
            relative = Path(os.path.abspath(path)).relative_to(os.path.abspath(self.node_dir))
        except ValueError:
            return None
        if len(relative.parts) != 3 or relative.parts[0] not in NAMESPACES:
            return None
        return parse_instance_key("/".join(relative.parts[1:]))


def create(config: dict) -> LocalStore:
    """Create a LocalStore from a config dict."""
    for required in ("root", "node"):
        if required not in config:
            raise ConfigError(f"Error: local store config is missing required '{required}' field")
    return LocalStore(root=config["root"], node=config["node"])
