"""
Pure reward and penalty arithmetic for StakeFlow.

Every function here is deterministic, side-effect free and works on
non-negative integers only.  All divisions truncate (floor), so the
engine can never pay out more than the exact entitlement.

Power multiplier
────────────────
Staking power = principal × multiplier_bp / 10000, with the multiplier
a step function of the lock duration:

    months   1–5   6–11  12–17  18–23  24–35  ≥36
    bp     10000  15000  20000  25000  30000  40000

Durations matching no band (0) fall back to the lowest band on purpose
so the function is total.

Pro-rata emission
─────────────────
    weekly_emission   = pool × emission_rate_bp / precision
    user_weekly_share = weekly_emission × user_power / total_power
    raw_reward        = user_weekly_share × weeks

APY cap
───────
    annualized_bp = raw × 52 × 10000 / (staked × weeks)
    capped        = staked × max_apy_bp × weeks / (10000 × 52)

Penalty split
─────────────
    penalty = principal × rate_bp / 10000
    to_pool = to_treasury = penalty / 2

An odd penalty leaves one unit undistributed.  That dust is accepted
and reported as ``dust`` on the split.
"""

from __future__ import annotations

from dataclasses import dataclass

from stakeflow_core.precision import (
    BPS_DENOMINATOR,
    SECONDS_PER_WEEK,
    WEEKS_PER_YEAR,
)

# (min_months, max_months or None for open-ended, multiplier_bp)
POWER_BANDS: tuple[tuple[int, int | None, int], ...] = (
    (1, 5, 10_000),
    (6, 11, 15_000),
    (12, 17, 20_000),
    (18, 23, 25_000),
    (24, 35, 30_000),
    (36, None, 40_000),
)

LOWEST_MULTIPLIER_BP: int = POWER_BANDS[0][2]

DEFAULT_EMISSION_RATE_BP: int = 21        # 0.21 % of the pool per week
DEFAULT_EMISSION_PRECISION: int = 10_000
DEFAULT_MAX_APY_BP: int = 7_500           # 75 %


def power_multiplier_bp(duration_months: int) -> int:
    """Return the staking-power multiplier for a lock duration."""
    for low, high, bp in POWER_BANDS:
        if duration_months >= low and (high is None or duration_months <= high):
            return bp
    return LOWEST_MULTIPLIER_BP


def staking_power(principal: int, multiplier_bp: int) -> int:
    return principal * multiplier_bp // BPS_DENOMINATOR


def weeks_elapsed(since_ts: int, now: int) -> int:
    """Whole weeks between two timestamps; never negative."""
    if now <= since_ts:
        return 0
    return (now - since_ts) // SECONDS_PER_WEEK


def weekly_emission(
    pool_balance: int,
    emission_rate_bp: int = DEFAULT_EMISSION_RATE_BP,
    precision: int = DEFAULT_EMISSION_PRECISION,
) -> int:
    return pool_balance * emission_rate_bp // precision


def pro_rata_reward(
    user_power: int,
    total_power: int,
    pool_balance: int,
    weeks: int,
    emission_rate_bp: int = DEFAULT_EMISSION_RATE_BP,
    precision: int = DEFAULT_EMISSION_PRECISION,
) -> int:
    """Uncapped reward for *weeks* of pro-rata emission."""
    if total_power == 0 or user_power == 0:
        return 0
    emission = weekly_emission(pool_balance, emission_rate_bp, precision)
    user_weekly_share = emission * user_power // total_power
    return user_weekly_share * weeks


def apply_apy_cap(
    staked_amount: int,
    raw_reward: int,
    weeks: int,
    max_apy_bp: int = DEFAULT_MAX_APY_BP,
) -> int:
    """Clamp *raw_reward* so it never annualises above *max_apy_bp*."""
    if weeks == 0:
        return raw_reward
    if staked_amount <= 0:
        return 0
    annualized_bp = (
        raw_reward * WEEKS_PER_YEAR * BPS_DENOMINATOR // (staked_amount * weeks)
    )
    if annualized_bp > max_apy_bp:
        return (
            staked_amount * max_apy_bp * weeks
            // (BPS_DENOMINATOR * WEEKS_PER_YEAR)
        )
    return raw_reward


@dataclass(frozen=True)
class RewardQuote:
    """Breakdown of one claim computation."""
    weeks: int
    weekly_emission: int
    user_weekly_share: int
    raw_reward: int
    reward: int

    @property
    def capped(self) -> bool:
        return self.reward < self.raw_reward

    def to_dict(self) -> dict:
        return {
            "weeks": self.weeks,
            "weekly_emission": self.weekly_emission,
            "user_weekly_share": self.user_weekly_share,
            "raw_reward": self.raw_reward,
            "reward": self.reward,
            "capped": self.capped,
        }


def quote_reward(
    staked_amount: int,
    user_power: int,
    total_power: int,
    pool_balance: int,
    weeks: int,
    emission_rate_bp: int = DEFAULT_EMISSION_RATE_BP,
    precision: int = DEFAULT_EMISSION_PRECISION,
    max_apy_bp: int = DEFAULT_MAX_APY_BP,
) -> RewardQuote:
    """Pro-rata reward followed by the APY cap, with every intermediate."""
    emission = weekly_emission(pool_balance, emission_rate_bp, precision)
    if total_power == 0 or user_power == 0:
        share = 0
    else:
        share = emission * user_power // total_power
    raw = pro_rata_reward(
        user_power, total_power, pool_balance, weeks,
        emission_rate_bp, precision,
    )
    return RewardQuote(
        weeks=weeks,
        weekly_emission=emission,
        user_weekly_share=share,
        raw_reward=raw,
        reward=apply_apy_cap(staked_amount, raw, weeks, max_apy_bp),
    )


@dataclass(frozen=True)
class PenaltySplit:
    penalty: int
    to_reward_pool: int
    to_treasury: int

    @property
    def dust(self) -> int:
        return self.penalty - self.to_reward_pool - self.to_treasury


def penalty_split(principal: int, tier_penalty_rate_bp: int) -> PenaltySplit:
    """Early-exit penalty and its 50/50 split."""
    penalty = principal * tier_penalty_rate_bp // BPS_DENOMINATOR
    half = penalty // 2
    return PenaltySplit(penalty=penalty, to_reward_pool=half, to_treasury=half)
