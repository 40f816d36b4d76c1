"""Retention tiers and their timestamp labels.

Tiers are ordered from most volatile to least volatile:
- daily:    one label per calendar day    (2026-02-10)
- weekly:   one label per ISO week        (2026-W07)
- monthly:  one label per calendar month  (2026-02)
- annually: one label per calendar year   (2026)

Labels are fixed-width, so lexicographic order is chronological order.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum


class Tier(str, Enum):
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"
    ANNUALLY = "annually"

    @property
    def rank(self) -> int:
        return TIERS.index(self)

    def label(self, dt: datetime) -> str:
        """Return the timestamp label this tier uses for *dt*."""
        return _LABELERS[self](dt)

    def __str__(self) -> str:
        return self.value


TIERS = [Tier.DAILY, Tier.WEEKLY, Tier.MONTHLY, Tier.ANNUALLY]

# Tiers that chain to one another, coarsest first. Annual backups are
# self-contained and never part of a cascade.
CASCADE_ORDER = [Tier.MONTHLY, Tier.WEEKLY, Tier.DAILY]


def _label_daily(dt: datetime) -> str:
    return dt.strftime("%Y-%m-%d")


def _label_weekly(dt: datetime) -> str:
    iso = dt.isocalendar()
    return f"{iso[0]}-W{iso[1]:02d}"


def _label_monthly(dt: datetime) -> str:
    return dt.strftime("%Y-%m")


def _label_annually(dt: datetime) -> str:
    return dt.strftime("%Y")


_LABELERS = {
    Tier.DAILY: _label_daily,
    Tier.WEEKLY: _label_weekly,
    Tier.MONTHLY: _label_monthly,
    Tier.ANNUALLY: _label_annually,
}


def parse_tier(name: str) -> Tier:
    """Return the Tier called *name* (case-insensitive).

    Raises ValueError for unknown names.
    """
    try:
        return Tier(name.strip().lower())
    except ValueError:
        raise ValueError(
            f"Unknown tier '{name}'. Available: {', '.join(t.value for t in TIERS)}"
        ) from None


def coarser_tiers(tier: Tier) -> list[Tier]:
    """Return the cascade tiers that must exist before *tier*, coarsest first."""
    if tier not in CASCADE_ORDER:
        return []
    return CASCADE_ORDER[: CASCADE_ORDER.index(tier)]
