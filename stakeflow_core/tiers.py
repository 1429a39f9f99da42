"""
Staking tier catalog.

A tier is a named duration window with an early-exit penalty rate.  The
engine only reads tiers; they are written by an external admin
collaborator through ``TierCatalog.upsert``, which refuses any change
that would retroactively alter a tier referenced by a live position
(an active or cooling-down one).  Deactivating a tier is always allowed
and only stops new positions from opening against it.

Default catalog
───────────────
    tier  months   penalty
      1    1–5      5.00 %
      2    6–11     7.50 %
      3   12–23    10.00 %
      4   24–60    12.50 %

``default_penalty_rate_bp`` maps any tier id to its default rate.  Ids
outside the closed ``TierId`` set intentionally fall back to the
lowest tier's rate (5 %).
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Mapping, Optional

from stakeflow_core.errors import InvalidDuration, InvalidTier, TierInUse
from stakeflow_core.precision import BPS_DENOMINATOR, format_bps

if TYPE_CHECKING:
    from stakeflow_core.storage import StakingStore


class TierId(IntEnum):
    SHORT = 1
    MEDIUM = 2
    LONG = 3
    EXTENDED = 4


# Maps tier → (penalty_rate_bp, min_duration_months, max_duration_months)
DEFAULT_TIER_CONFIG: dict[TierId, tuple[int, int, int]] = {
    TierId.SHORT:    (500,   1,  5),
    TierId.MEDIUM:   (750,   6, 11),
    TierId.LONG:     (1000, 12, 23),
    TierId.EXTENDED: (1250, 24, 60),
}

FALLBACK_PENALTY_RATE_BP: int = DEFAULT_TIER_CONFIG[TierId.SHORT][0]


def default_penalty_rate_bp(tier_id: int) -> int:
    """Default penalty for *tier_id*; unknown ids use the lowest tier's rate."""
    try:
        return DEFAULT_TIER_CONFIG[TierId(tier_id)][0]
    except ValueError:
        return FALLBACK_PENALTY_RATE_BP


@dataclass(frozen=True)
class Tier:
    tier_id: int
    penalty_rate_bp: int
    min_duration_months: int
    max_duration_months: int
    active: bool = True

    def __post_init__(self) -> None:
        if not 0 <= self.penalty_rate_bp <= BPS_DENOMINATOR:
            raise ValueError(
                f"penalty_rate_bp must be within 0..{BPS_DENOMINATOR}"
            )
        if self.min_duration_months < 1:
            raise ValueError("min_duration_months must be at least 1")
        if self.max_duration_months < self.min_duration_months:
            raise ValueError("max_duration_months must be >= min_duration_months")

    def check_duration(self, duration_months: int) -> None:
        if not self.min_duration_months <= duration_months <= self.max_duration_months:
            raise InvalidDuration(
                f"Duration must be between {self.min_duration_months} and "
                f"{self.max_duration_months} months for tier {self.tier_id}"
            )

    def same_terms(self, other: Tier) -> bool:
        return (
            self.penalty_rate_bp == other.penalty_rate_bp
            and self.min_duration_months == other.min_duration_months
            and self.max_duration_months == other.max_duration_months
        )

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Tier:
        return cls(
            tier_id=row["tier_id"],
            penalty_rate_bp=row["penalty_rate_bp"],
            min_duration_months=row["min_duration_months"],
            max_duration_months=row["max_duration_months"],
            active=bool(row["active"]),
        )

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> Tier:
        """Build a tier from config input; a missing rate uses the default."""
        tier_id = int(raw["tier_id"])
        rate = raw.get("penalty_rate_bp")
        return cls(
            tier_id=tier_id,
            penalty_rate_bp=(
                int(rate) if rate is not None else default_penalty_rate_bp(tier_id)
            ),
            min_duration_months=int(raw["min_duration_months"]),
            max_duration_months=int(raw["max_duration_months"]),
            active=bool(raw.get("active", True)),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "tier_id": self.tier_id,
            "penalty_rate_bp": self.penalty_rate_bp,
            "penalty_rate_pct": format_bps(self.penalty_rate_bp),
            "min_duration_months": self.min_duration_months,
            "max_duration_months": self.max_duration_months,
            "active": self.active,
        }


def default_tiers() -> list[Tier]:
    return [
        Tier(int(tier_id), rate, low, high)
        for tier_id, (rate, low, high) in DEFAULT_TIER_CONFIG.items()
    ]


class TierCatalog:
    """Read access to tiers, plus the guarded write hook for admin tooling."""

    def __init__(self, store: StakingStore) -> None:
        self.store = store

    def get(self, tier_id: int) -> Optional[Tier]:
        return self.store.get_tier(tier_id)

    def require_active(self, tier_id: int) -> Tier:
        tier = self.get(tier_id)
        if tier is None or not tier.active:
            raise InvalidTier(f"Staking tier {tier_id} not active or does not exist")
        return tier

    def list(self, active_only: bool = False) -> list[Tier]:
        tiers = self.store.load_tiers()
        if active_only:
            return [t for t in tiers if t.active]
        return tiers

    def upsert(self, tier: Tier) -> Tier:
        with self.store.transaction():
            existing = self.store.get_tier(tier.tier_id)
            if existing is not None and not existing.same_terms(tier):
                live = self.store.count_live_positions(tier.tier_id)
                if live:
                    raise TierInUse(
                        f"Tier {tier.tier_id} is referenced by {live} live "
                        f"position(s); only activation may change"
                    )
            self.store.save_tier(tier)
        return tier

    def set_active(self, tier_id: int, active: bool) -> Tier:
        existing = self.get(tier_id)
        if existing is None:
            raise InvalidTier(f"Staking tier {tier_id} does not exist")
        return self.upsert(replace(existing, active=active))

    def install_defaults(self, tiers: Optional[list[Tier]] = None) -> int:
        """Seed the catalog when empty.  Returns the number of tiers written."""
        if self.store.load_tiers():
            return 0
        seeded = tiers if tiers is not None else default_tiers()
        for tier in seeded:
            self.upsert(tier)
        return len(seeded)
