"""GFS scheduling: which backup to take for a tier, and what it chains from.

- annually: full backup, self-contained
- monthly:  full backup, self-contained
- weekly:   differential against the latest monthly backup
- daily:    differential against the latest weekly backup. With unbounded
            daily retention, incremental against the latest daily backup
            instead, or against the weekly when there is no daily one yet

A missing parent is produced first ("cascade"): coarser tiers are backed up
before finer ones, monthly -> weekly -> daily.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Callable

from backup import BackupPlan, build_plan, run_plan
from chain import BackupRef, ChainError, find_latest
from config import Config
from engines import Engine
from retention import apply_retention
from stores import Store
from tiers import Tier, coarser_tiers

log = logging.getLogger(__name__)

# Tier each tier chains from when it has no backup of its own to extend.
_PARENT_TIER = {
    Tier.WEEKLY: Tier.MONTHLY,
    Tier.DAILY: Tier.WEEKLY,
}


class Scheduler:
    def __init__(
        self,
        store: Store,
        engine: Engine,
        cfg: Config,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.store = store
        self.engine = engine
        self.cfg = cfg
        self.clock = clock

    def run(self, tier: Tier) -> list[BackupPlan]:
        """Produce a backup of *tier*, cascading to coarser tiers as needed.

        Returns every executed plan in execution order; the requested
        tier's plan is last.
        """
        plans: list[BackupPlan] = []
        self._produce(tier, plans)
        return plans

    def _produce(self, tier: Tier, plans: list[BackupPlan]) -> BackupPlan:
        policy = self.cfg.policy(tier)

        if tier is Tier.DAILY:
            self._rotate(tier)
            parent = self._daily_parent(plans)
        elif tier is Tier.WEEKLY:
            parent = self._require_parent(tier, plans)
            self._rotate(tier)
        else:
            self._rotate(tier)
            parent = None

        plan = build_plan(
            self.store,
            self.cfg,
            tier,
            tier.label(self.clock()),
            parent=parent,
            compressed=policy.compressed,
        )
        run_plan(self.engine, plan)
        plans.append(plan)
        return plan

    def _daily_parent(self, plans: list[BackupPlan]) -> BackupRef:
        # Rotation always prunes the oldest daily first, so a daily may only
        # extend another daily when no daily is ever pruned.
        if self.cfg.policy(Tier.DAILY).keep is None:
            parent = find_latest(self.store, Tier.DAILY)
            if parent is not None:
                return parent
        return self._require_parent(Tier.DAILY, plans)

    def _rotate(self, tier: Tier) -> None:
        # Leave room for the backup about to be written.
        apply_retention(self.store, tier, self.cfg.policy(tier).keep, reserve=1)

    def _require_parent(self, tier: Tier, plans: list[BackupPlan]) -> BackupRef:
        parent_tier = _PARENT_TIER[tier]
        parent = find_latest(self.store, parent_tier)
        if parent is not None:
            return parent

        log.info("No %s backup to chain %s from, resolving queue first.", parent_tier, tier)
        self._resolve_queue(tier, plans)
        parent = find_latest(self.store, parent_tier)
        if parent is None:
            raise ChainError(
                f"Previous {parent_tier} backup was not found. It should be available "
                f"by now after resolving the stack. This is unexpected."
            )
        return parent

    def _resolve_queue(self, tier: Tier, plans: list[BackupPlan]) -> None:
        """Produce every missing coarser tier, coarsest first."""
        for coarser in coarser_tiers(tier):
            if find_latest(self.store, coarser) is None:
                self._produce(coarser, plans)
