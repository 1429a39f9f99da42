"""
Typed errors raised by the StakeFlow engine.

Every lifecycle precondition failure is a ``StakingError`` subclass with
a stable ``code``.  Time-gated failures carry the remaining wait in
seconds so callers can tell the user exactly how long to wait.
"""

from __future__ import annotations

from typing import Any, Optional

from stakeflow_core.precision import days_remaining, hours_remaining


class StakingError(ValueError):
    """Base class for every precondition failure surfaced to callers."""

    code: str = "StakingError"

    def __init__(self, message: str, remaining: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.remaining = remaining

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.code, "message": self.message}
        if self.remaining is not None:
            out["remaining"] = self.remaining
        return out


class InvalidTier(StakingError):
    code = "InvalidTier"


class InvalidDuration(StakingError):
    code = "InvalidDuration"


class BelowMinimumAmount(StakingError):
    code = "BelowMinimumAmount"


class NotFound(StakingError):
    code = "NotFound"


class PositionNotFound(NotFound):
    def __init__(self, owner: str, seed: int):
        super().__init__(f"Stake position not found: owner={owner} seed={seed}")


class ReceiptNotFound(NotFound):
    def __init__(self, owner: str, nft_seed: int):
        super().__init__(f"Reward receipt not found: owner={owner} seed={nft_seed}")


class PositionExists(StakingError):
    code = "PositionExists"


class NotActive(StakingError):
    code = "NotActive"


class StillActive(StakingError):
    code = "StillActive"


class CooldownAlreadyActive(StakingError):
    code = "CooldownAlreadyActive"


class NoCooldown(StakingError):
    code = "NoCooldown"


class CooldownNotElapsed(StakingError):
    code = "CooldownNotElapsed"

    def __init__(self, remaining: int):
        super().__init__(
            f"Cooldown period not complete. "
            f"{hours_remaining(remaining)} hours remaining.",
            remaining=remaining,
        )


class TooSoonToClaim(StakingError):
    code = "TooSoonToClaim"

    def __init__(self, remaining: int, interval_days: int = 7):
        super().__init__(
            f"Must wait {interval_days} days between claims. "
            f"{hours_remaining(remaining)} hours remaining.",
            remaining=remaining,
        )


class NothingAccrued(StakingError):
    code = "NothingAccrued"


class NoRewardAvailable(StakingError):
    code = "NoRewardAvailable"


class AlreadyVested(StakingError):
    code = "AlreadyVested"


class VestingNotComplete(StakingError):
    code = "VestingNotComplete"

    def __init__(self, remaining: int):
        super().__init__(
            f"Vesting period not complete. "
            f"{days_remaining(remaining)} days remaining.",
            remaining=remaining,
        )


class InvalidSeed(StakingError):
    code = "InvalidSeed"


class ProgramPaused(StakingError):
    code = "ProgramPaused"


class TierInUse(StakingError):
    code = "TierInUse"


class ConcurrencyConflict(StakingError):
    """A compare-and-swap on a versioned row lost against another writer."""
    code = "ConcurrencyConflict"


class SchedulerJobFailed(Exception):
    """An external submission or fetch failed inside a scheduler job.

    ``retryable`` tells the retry loop whether backing off can help
    (network error, 5xx) or the failure is permanent (4xx, bad payload).
    """

    code = "SchedulerJobFailed"

    def __init__(self, message: str, retryable: bool = True):
        super().__init__(message)
        self.message = message
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }
