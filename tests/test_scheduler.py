"""Tests for scheduler module: cascade, rotation and chaining."""

from __future__ import annotations

from datetime import datetime, timedelta

import pytest

from backup import DIFFERENTIAL, FULL, INCREMENTAL, BackupError
from chain import find_latest, resolve_chain
from scheduler import Scheduler
from stores import BACKUPS, CHECKPOINTS, BackupInstance
from stores.local import LocalStore
from tiers import Tier

from conftest import FakeEngine, make_config, write_record


def _names(store, tier, namespace=BACKUPS):
    return [i.name for i in store.list(tier, namespace)]


class _Clock:
    """Manually advanced clock."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class TestCascade:
    def test_daily_on_empty_store(self, store, engine, cfg, clock):
        plans = Scheduler(store, engine, cfg, clock).run(Tier.DAILY)

        assert [p.tier for p in plans] == [Tier.MONTHLY, Tier.WEEKLY, Tier.DAILY]
        monthly, weekly, daily = plans

        assert monthly.kind == FULL
        assert monthly.compressed
        assert monthly.instance == BackupInstance(Tier.MONTHLY, "2026-02")

        assert weekly.kind == DIFFERENTIAL
        assert weekly.instance == BackupInstance(Tier.WEEKLY, "2026-W07")
        assert weekly.parent == store.path(monthly.instance, CHECKPOINTS)

        assert daily.kind == DIFFERENTIAL
        assert daily.instance == BackupInstance(Tier.DAILY, "2026-02-09")
        assert daily.parent == store.path(weekly.instance, BACKUPS)

    def test_cascade_runs_once(self, store, engine, cfg, clock):
        scheduler = Scheduler(store, engine, cfg, clock)
        scheduler.run(Tier.DAILY)
        plans = scheduler.run(Tier.DAILY)
        assert [p.tier for p in plans] == [Tier.DAILY]
        assert len(_names(store, Tier.MONTHLY)) == 1
        assert len(_names(store, Tier.WEEKLY)) == 1

    def test_weekly_on_empty_store(self, store, engine, cfg, clock):
        plans = Scheduler(store, engine, cfg, clock).run(Tier.WEEKLY)
        assert [p.tier for p in plans] == [Tier.MONTHLY, Tier.WEEKLY]
        assert _names(store, Tier.DAILY) == []

    def test_weekly_chains_from_existing_monthly(self, store, engine, cfg, clock):
        scheduler = Scheduler(store, engine, cfg, clock)
        (monthly,) = scheduler.run(Tier.MONTHLY)
        (weekly,) = scheduler.run(Tier.WEEKLY)
        assert weekly.parent == monthly.checkpoint_dir

    def test_uncompressed_parent_chains_from_payload(self, tmp_path, engine, clock):
        cfg = make_config(tmp_path, compression_strategy="0:0:0:0")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        monthly, weekly = Scheduler(store, engine, cfg, clock).run(Tier.WEEKLY)
        assert monthly.checkpoint_dir is None
        assert weekly.parent == monthly.target_dir

    def test_daily_only_produces_missing_weekly(self, store, engine, cfg, clock):
        scheduler = Scheduler(store, engine, cfg, clock)
        scheduler.run(Tier.MONTHLY)
        plans = scheduler.run(Tier.DAILY)
        assert [p.tier for p in plans] == [Tier.WEEKLY, Tier.DAILY]

    def test_daily_chains_from_weekly(self, store, engine, cfg):
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        first = scheduler.run(Tier.DAILY)[-1]
        clock.advance(days=1)
        (second,) = scheduler.run(Tier.DAILY)
        assert second.kind == DIFFERENTIAL
        assert second.parent == first.parent

    def test_unbounded_daily_extends_daily_chain(self, tmp_path, engine):
        cfg = make_config(tmp_path, rotation_strategy=":5:12:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        first = scheduler.run(Tier.DAILY)[-1]
        clock.advance(days=1)
        (second,) = scheduler.run(Tier.DAILY)
        assert second.kind == INCREMENTAL
        assert second.parent == first.target_dir

    def test_failed_monthly_stops_cascade(self, store, cfg, clock):
        engine = FakeEngine(fail_tiers={Tier.MONTHLY})
        with pytest.raises(BackupError):
            Scheduler(store, engine, cfg, clock).run(Tier.DAILY)
        assert [p.tier for p in engine.plans] == [Tier.MONTHLY]
        assert _names(store, Tier.WEEKLY) == []
        assert _names(store, Tier.DAILY) == []

    def test_failed_daily_keeps_cascaded_parents(self, store, cfg, clock):
        engine = FakeEngine(fail_tiers={Tier.DAILY})
        with pytest.raises(BackupError):
            Scheduler(store, engine, cfg, clock).run(Tier.DAILY)
        assert find_latest(store, Tier.MONTHLY) is not None
        assert find_latest(store, Tier.WEEKLY) is not None
        # the daily directory exists but is unfinished
        assert _names(store, Tier.DAILY) == ["2026-02-09"]
        assert find_latest(store, Tier.DAILY) is None

    def test_annual_backup_is_standalone(self, store, engine, cfg, clock):
        plans = Scheduler(store, engine, cfg, clock).run(Tier.ANNUALLY)
        assert [p.tier for p in plans] == [Tier.ANNUALLY]
        assert plans[0].kind == FULL
        assert plans[0].instance.name == "2026"


class TestDisambiguation:
    def test_same_day_twice(self, store, engine, cfg, clock):
        scheduler = Scheduler(store, engine, cfg, clock)
        first = scheduler.run(Tier.DAILY)[-1]
        (second,) = scheduler.run(Tier.DAILY)
        assert first.instance.name == "2026-02-09"
        assert second.instance.name == "2026-02-09&1"
        assert second.parent == first.parent
        assert _names(store, Tier.DAILY) == ["2026-02-09", "2026-02-09&1"]

    def test_rerun_after_bare_label_pruned(self, tmp_path, engine, clock):
        cfg = make_config(tmp_path, rotation_strategy="2:5:12:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        scheduler = Scheduler(store, engine, cfg, clock)
        plans = [scheduler.run(Tier.DAILY)[-1] for _ in range(3)]

        assert [p.instance.name for p in plans] == ["2026-02-09", "2026-02-09&1", "2026-02-09&2"]
        assert _names(store, Tier.DAILY) == ["2026-02-09&1", "2026-02-09&2"]
        assert find_latest(store, Tier.DAILY).instance == plans[-1].instance

    def test_same_month_twice(self, store, engine, cfg, clock):
        scheduler = Scheduler(store, engine, cfg, clock)
        scheduler.run(Tier.MONTHLY)
        scheduler.run(Tier.MONTHLY)
        assert _names(store, Tier.MONTHLY) == ["2026-02", "2026-02&1"]
        assert _names(store, Tier.MONTHLY, CHECKPOINTS) == ["2026-02", "2026-02&1"]


class TestRotation:
    def test_weekly_keeps_n(self, store, engine, cfg):
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        for _ in range(8):
            scheduler.run(Tier.WEEKLY)
            clock.advance(weeks=1)
        names = _names(store, Tier.WEEKLY)
        assert names == ["2026-W10", "2026-W11", "2026-W12", "2026-W13", "2026-W14"]

    def test_monthly_keep_one(self, tmp_path, engine):
        cfg = make_config(tmp_path, rotation_strategy="7:5:1:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        clock = _Clock(datetime(2026, 1, 15, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        for _ in range(3):
            scheduler.run(Tier.MONTHLY)
            clock.advance(days=31)
        assert _names(store, Tier.MONTHLY) == ["2026-03"]
        assert _names(store, Tier.MONTHLY, CHECKPOINTS) == ["2026-03"]

    def test_annually_unbounded(self, store, engine, cfg):
        scheduler = Scheduler(store, engine, cfg)
        for year in range(2020, 2030):
            scheduler.clock = lambda year=year: datetime(year, 6, 1)
            scheduler.run(Tier.ANNUALLY)
        assert len(_names(store, Tier.ANNUALLY)) == 10

    def test_weekly_rotates_after_cascaded_monthly(self, tmp_path, engine):
        cfg = make_config(tmp_path, rotation_strategy="7:2:12:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        for label in ("2026-W05", "2026-W06"):
            write_record(store.create(BackupInstance(Tier.WEEKLY, label)))
        clock = _Clock(datetime(2026, 2, 9, 3, 0))

        plans = Scheduler(store, engine, cfg, clock).run(Tier.WEEKLY)

        assert [p.tier for p in plans] == [Tier.MONTHLY, Tier.WEEKLY]
        assert _names(store, Tier.WEEKLY) == ["2026-W06", "2026-W07"]

    def test_rotation_runs_before_parent_lookup(self, tmp_path, engine):
        cfg = make_config(tmp_path, rotation_strategy="1:5:12:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        scheduler.run(Tier.DAILY)
        clock.advance(days=1)
        (plan,) = scheduler.run(Tier.DAILY)
        # keep=1 leaves no daily to extend, so the new daily chains from weekly
        assert plan.kind == DIFFERENTIAL
        assert plan.parent.parent.name == "weekly"
        assert _names(store, Tier.DAILY) == ["2026-02-10"]


class TestEightDays:
    """Eight consecutive daily runs with the default 7:5:12: rotation."""

    @pytest.fixture
    def history(self, store, engine, cfg):
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        runs = []
        for _ in range(8):
            runs.append(scheduler.run(Tier.DAILY))
            clock.advance(days=1)
        return runs

    def test_tier_counts(self, history, store):
        assert len(_names(store, Tier.DAILY)) == 7
        assert _names(store, Tier.WEEKLY) == ["2026-W07"]
        assert _names(store, Tier.MONTHLY) == ["2026-02"]

    def test_oldest_daily_was_pruned(self, history, store):
        assert _names(store, Tier.DAILY)[0] == "2026-02-10"
        assert _names(store, Tier.DAILY)[-1] == "2026-02-16"

    def test_only_first_run_cascades(self, history):
        assert [len(plans) for plans in history] == [3, 1, 1, 1, 1, 1, 1, 1]

    def test_first_daily_chains_from_weekly(self, history):
        first_daily = history[0][-1]
        assert first_daily.kind == DIFFERENTIAL
        assert first_daily.parent.parent.name == "weekly"

    def test_dailies_chain_from_weekly(self, history):
        weekly = history[0][1]
        for plans in history:
            daily = plans[-1]
            assert daily.kind == DIFFERENTIAL
            assert daily.parent == weekly.target_dir

    def test_oldest_surviving_daily_chains_from_weekly(self, history, store):
        oldest = store.list(Tier.DAILY)[0]
        chain = resolve_chain(store, oldest)
        assert [i.tier for i in chain] == [Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY]

    def test_every_surviving_daily_resolves(self, history, store):
        for daily in store.list(Tier.DAILY):
            chain = resolve_chain(store, daily)
            assert chain[0] == daily
            assert chain[-1].tier is Tier.MONTHLY

    def test_every_surviving_backup_resolves(self, history, store):
        for tier in (Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY):
            for instance in store.list(tier):
                resolve_chain(store, instance)


class TestLongRun:
    """Daily and weekly runs over several weeks keep every backup restorable."""

    def test_weeks_of_daily_runs(self, store, engine, cfg):
        clock = _Clock(datetime(2026, 1, 26, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        for _ in range(42):
            if clock().weekday() == 0:
                scheduler.run(Tier.WEEKLY)
            scheduler.run(Tier.DAILY)
            clock.advance(days=1)

        assert len(_names(store, Tier.DAILY)) == 7
        assert len(_names(store, Tier.WEEKLY)) == 5
        for tier in (Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY):
            for instance in store.list(tier):
                assert resolve_chain(store, instance)[-1].tier is Tier.MONTHLY

    def test_short_weekly_retention_keeps_referenced_weekly(self, tmp_path, engine):
        cfg = make_config(tmp_path, rotation_strategy="7:1:12:")
        store = LocalStore(cfg.backup_root, cfg.node_name)
        clock = _Clock(datetime(2026, 2, 9, 3, 0))
        scheduler = Scheduler(store, engine, cfg, clock)
        for _ in range(7):
            scheduler.run(Tier.DAILY)
            clock.advance(days=1)
        scheduler.run(Tier.WEEKLY)

        # last week's dailies still chain from 2026-W07
        assert _names(store, Tier.WEEKLY) == ["2026-W07", "2026-W08"]
        for daily in store.list(Tier.DAILY):
            resolve_chain(store, daily)
