"""Per-tier retention: keep the N most recent backups of a tier.

Payload and checkpoint namespaces are rotated independently with the same
ordering, so an instance and its checkpoint age out together.

A backup that a surviving backup still chains from is never deleted: it
stays until nothing outside the delete set references it.
"""

from __future__ import annotations

import logging

from chain import chain_children
from config import ConfigError
from stores import NAMESPACES, BackupInstance, Store
from tiers import Tier

log = logging.getLogger(__name__)


def compute_delete_set(instances: list[BackupInstance], keep: int) -> list[BackupInstance]:
    """Return the instances to delete so that only the newest *keep* remain.

    *keep* may be 0 (used when making room for a new backup with keep=1).
    """
    if keep < 0:
        raise ValueError(f"keep must not be negative, got {keep}")
    ordered = sorted(instances)
    if keep == 0:
        return ordered
    return ordered[:-keep]


def still_referenced(
    candidates: set[BackupInstance],
    children: dict[BackupInstance, list[BackupInstance]],
) -> set[BackupInstance]:
    """Return the candidates that a backup outside the delete set chains from.

    Pinning a candidate pins its own parent too when that is a candidate.
    """
    pinned: set[BackupInstance] = set()
    changed = True
    while changed:
        changed = False
        for instance in candidates - pinned:
            if any(c not in candidates or c in pinned for c in children.get(instance, ())):
                pinned.add(instance)
                changed = True
    return pinned


def apply_retention(
    store: Store,
    tier: Tier,
    keep: int | None,
    reserve: int = 0,
    dry_run: bool = False,
) -> list[BackupInstance]:
    """Delete all but the most recent backups of *tier*.

    Args:
        keep: retention count; None means unbounded (nothing is pruned).
        reserve: slots to leave free for backups about to be created,
            so that *keep* instances persist once they are written.
        dry_run: only log what would be deleted.

    Returns the instances that were (or would be) deleted.
    """
    if keep is None:
        log.info("No retention configured for %s backups, keeping all.", tier)
        return []
    if keep < 1:
        raise ConfigError(
            f"Retention count for {tier} backups is {keep}: "
            f"at least one backup must be retained."
        )

    budget = max(keep - reserve, 0)
    listing = {ns: store.list(tier, ns) for ns in NAMESPACES}
    plans = {ns: compute_delete_set(listing[ns], budget) for ns in NAMESPACES}
    candidates = {i for to_delete in plans.values() for i in to_delete}

    pinned: set[BackupInstance] = set()
    if candidates:
        children = chain_children(store)
        pinned = still_referenced(candidates, children)
        for instance in sorted(pinned):
            log.warning(
                "Keeping %s beyond retention: %s still chain from it.",
                instance.key, ", ".join(c.key for c in children[instance]),
            )

    deleted: list[BackupInstance] = []
    for namespace in NAMESPACES:
        to_delete = [i for i in plans[namespace] if i not in pinned]
        if not to_delete:
            continue
        instances = listing[namespace]
        log.info(
            "Retention (%s/%s): %d total, keeping %d, deleting %d",
            namespace, tier, len(instances), len(instances) - len(to_delete), len(to_delete),
        )
        for instance in to_delete:
            if dry_run:
                log.info("[dry-run] Would delete %s/%s", namespace, instance.key)
            else:
                log.info("Deleting expired backup: %s/%s", namespace, instance.key)
                store.delete(instance, namespace)
            if instance not in deleted:
                deleted.append(instance)

    if not deleted:
        log.info("No expired %s backups to prune.", tier)
    return deleted
