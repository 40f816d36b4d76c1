"""Configuration loading, validation, and env-var resolution."""

from __future__ import annotations

import logging
import os
import socket
import stat
from dataclasses import dataclass
from pathlib import Path
from types import MappingProxyType
from typing import Mapping

import yaml

from tiers import TIERS, Tier, parse_tier

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "/etc/gfsbackup/config.yaml"

DEFAULT_STORAGE_PATH = "/var"
DEFAULT_USAGE_THRESHOLD = 70
DEFAULT_ROTATION_STRATEGY = "7:5:12:"
DEFAULT_COMPRESSION_STRATEGY = "0:0:1:1"
DEFAULT_BACKUP_USER = "mariabackup"
DEFAULT_DATA_DIR = "/var/lib/mysql"
DEFAULT_SOCKET_PATH = "/run/mysqld/mysqld.sock"
DEFAULT_SERVICE_NAME = "mariadb"

# Environment variable consulted when no password is configured.
PASSWORD_ENV_VAR = "BACKUP_USER_PASSWORD"

# All backup trees live under <storage_path>/<BACKUP_DIRNAME>.
BACKUP_DIRNAME = "mariadb-backup"


class ConfigError(Exception):
    """Raised for invalid or missing configuration. Never retried."""


@dataclass(frozen=True)
class TierPolicy:
    keep: int | None  # None = unbounded, never rotated
    compressed: bool = False


@dataclass(frozen=True)
class Config:
    node_name: str
    storage_path: Path
    tiers: Mapping[Tier, TierPolicy]
    usage_threshold: int = DEFAULT_USAGE_THRESHOLD
    backup_user: str = DEFAULT_BACKUP_USER
    password: str = ""
    workers: int = 1
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    socket_path: Path = Path(DEFAULT_SOCKET_PATH)
    service_name: str = DEFAULT_SERVICE_NAME
    scratch_dir: Path | None = None
    timeout: float | None = None

    @property
    def backup_root(self) -> Path:
        """Root of the backup tree: <storage_path>/mariadb-backup."""
        return self.storage_path / BACKUP_DIRNAME

    @property
    def status_log(self) -> Path:
        return self.backup_root / "status.log"

    def policy(self, tier: Tier) -> TierPolicy:
        return self.tiers[tier]


def parse_rotation_strategy(value: str) -> dict[Tier, int | None]:
    """Parse 'daily:weekly:monthly:annually' keep counts, e.g. '7:5:12:'.

    An empty field means unbounded. Missing trailing fields are unbounded too.
    A count below 1 would rotate away every backup and is rejected.
    """
    fields = str(value).split(":")
    if len(fields) > len(TIERS):
        raise ConfigError(
            f"Invalid rotation strategy '{value}': expected at most {len(TIERS)} "
            f"colon-separated fields (daily:weekly:monthly:annually)"
        )
    fields += [""] * (len(TIERS) - len(fields))
    result: dict[Tier, int | None] = {}
    for tier, raw in zip(TIERS, fields):
        result[tier] = _parse_keep(tier, raw)
    return result


def _parse_keep(tier: Tier, raw) -> int | None:
    if raw is None or str(raw).strip() == "":
        return None
    try:
        keep = int(str(raw).strip())
    except ValueError:
        raise ConfigError(
            f"Invalid retention count '{raw}' for {tier} backups. Must be an integer."
        ) from None
    if keep < 1:
        raise ConfigError(
            f"Retention count for {tier} backups is {keep}: "
            f"at least one backup must be retained."
        )
    return keep


def parse_compression_strategy(value: str) -> dict[Tier, bool]:
    """Parse 'daily:weekly:monthly:annually' compression flags, e.g. '0:0:1:1'."""
    fields = str(value).split(":")
    if len(fields) > len(TIERS):
        raise ConfigError(
            f"Invalid compression strategy '{value}': expected at most {len(TIERS)} "
            f"colon-separated fields (daily:weekly:monthly:annually)"
        )
    fields += [""] * (len(TIERS) - len(fields))
    result: dict[Tier, bool] = {}
    for tier, raw in zip(TIERS, fields):
        flag = str(raw).strip().lower()
        if flag in ("", "0", "false", "no", "off"):
            result[tier] = False
        elif flag in ("1", "true", "yes", "on"):
            result[tier] = True
        else:
            raise ConfigError(
                f"Invalid compression flag '{raw}' for {tier} backups. Use 0 or 1."
            )
    return result


def parse_usage_threshold(value) -> int:
    """Accept '70', '70%' or 70. Must be within 1..100."""
    try:
        threshold = int(str(value).strip().rstrip("%"))
    except ValueError:
        raise ConfigError(f"Invalid usage threshold '{value}'. Must be a percentage.") from None
    if not 1 <= threshold <= 100:
        raise ConfigError(f"Usage threshold must be between 1 and 100, got {threshold}")
    return threshold


def load(config_path: str | None = None) -> dict:
    """Load and parse the YAML config file.

    An explicitly requested file must exist. The default location is
    optional: an empty dict is returned when it is absent.
    """
    explicit = config_path or os.environ.get("GFSBACKUP_CONFIG")
    path = explicit or DEFAULT_CONFIG_PATH

    if not Path(path).is_file():
        if explicit:
            raise ConfigError(f"Error: config file not found: {path}")
        return {}

    # Warn if config file is readable by group or others (may contain credentials)
    try:
        mode = os.stat(path).st_mode
        if mode & (stat.S_IRGRP | stat.S_IROTH):
            log.warning(
                "Config file '%s' is readable by group/others (mode %o). "
                "This file may contain credentials, consider: chmod 600 %s",
                path, stat.S_IMODE(mode), path,
            )
    except OSError:
        pass  # skip check if stat fails (e.g. on some platforms)

    with open(path) as f:
        raw = yaml.safe_load(f)

    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ConfigError("Error: config file must be a YAML mapping")

    return raw


def resolve_env(config: dict) -> dict:
    """Recursively resolve *_env keys from environment variables.

    For any key ending in '_env', look up the env var named by its value
    and replace with a key without the '_env' suffix.
    E.g. {'password_env': 'MY_SECRET'} -> {'password': '<value of $MY_SECRET>'}
    """
    resolved = {}
    for key, value in config.items():
        if isinstance(value, dict):
            resolved[key] = resolve_env(value)
        elif isinstance(value, str) and key.endswith("_env"):
            real_key = key.removesuffix("_env")
            env_val = os.environ.get(value)
            if env_val is None:
                raise ConfigError(
                    f"Error: environment variable '{value}' "
                    f"(referenced by '{key}') is not set"
                )
            resolved[real_key] = env_val
        else:
            resolved[key] = value
    return resolved


def default_workers() -> int:
    """30% of the host's CPUs, at least one."""
    return max(1, (os.cpu_count() or 1) * 30 // 100)


def _pick(args, raw: dict, key: str, default=None):
    """CLI argument wins over the YAML value, which wins over *default*."""
    value = getattr(args, key, None) if args is not None else None
    if value is not None:
        return value
    if raw.get(key) is not None:
        return raw[key]
    return default


def build_config(args=None, raw: dict | None = None) -> Config:
    """Build the immutable run configuration.

    *args* is an argparse Namespace (attributes left at None fall through),
    *raw* the YAML mapping returned by load().
    """
    raw = resolve_env(raw or {})

    rotation = parse_rotation_strategy(
        _pick(args, raw, "rotation_strategy", DEFAULT_ROTATION_STRATEGY)
    )
    compression = parse_compression_strategy(
        _pick(args, raw, "compression_strategy", DEFAULT_COMPRESSION_STRATEGY)
    )
    tiers = MappingProxyType({
        tier: TierPolicy(keep=rotation[tier], compressed=compression[tier])
        for tier in TIERS
    })

    workers = int(_pick(args, raw, "workers", default_workers()))
    if workers < 1:
        raise ConfigError(f"workers must be at least 1, got {workers}")

    timeout = _pick(args, raw, "timeout")
    if timeout is not None:
        timeout = float(timeout)
        if timeout <= 0:
            raise ConfigError(f"timeout must be positive, got {timeout}")

    storage_path = str(_pick(args, raw, "storage_path", DEFAULT_STORAGE_PATH))
    scratch_dir = _pick(args, raw, "scratch_dir")

    return Config(
        node_name=str(_pick(args, raw, "node_name", socket.gethostname())),
        storage_path=Path(storage_path.rstrip("/") or "/"),
        tiers=tiers,
        usage_threshold=parse_usage_threshold(
            _pick(args, raw, "usage_threshold", DEFAULT_USAGE_THRESHOLD)
        ),
        backup_user=str(raw.get("backup_user", DEFAULT_BACKUP_USER)),
        password=str(raw.get("password") or os.environ.get(PASSWORD_ENV_VAR, "")),
        workers=workers,
        data_dir=Path(raw.get("data_dir", DEFAULT_DATA_DIR)),
        socket_path=Path(raw.get("socket_path", DEFAULT_SOCKET_PATH)),
        service_name=str(raw.get("service_name", DEFAULT_SERVICE_NAME)),
        scratch_dir=Path(scratch_dir) if scratch_dir else None,
        timeout=timeout,
    )


def require_password(cfg: Config) -> None:
    """Backups authenticate as the backup user; restores do not."""
    if not cfg.password:
        raise ConfigError(
            f"Error: no password configured for backup user '{cfg.backup_user}'. "
            f"Set 'password' (or 'password_env') in the config file "
            f"or export {PASSWORD_ENV_VAR}."
        )


def get_tier(name: str) -> Tier:
    """Parse a tier name, reporting unknown names as configuration errors."""
    try:
        return parse_tier(name)
    except ValueError as exc:
        raise ConfigError(str(exc)) from None
