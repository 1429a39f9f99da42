"""
Position lifecycle for StakeFlow.

    Active ──initiate_close──▶ CoolingDown ──finalize_close──▶ Closed
      │                                    (or cooldown sweep)
      └── claim (rewards.py) keeps the position Active

Every transition runs inside one ``StakingStore.transaction()``: the
position row, GlobalState, any PenaltyRecord and the outbox intent are
written together.  Preconditions are checked against rows read inside
that transaction, so a caller that loses a race gets the same typed
error a later sequential caller would.

Entry points:
  ``open_position()``: lock principal, add to the global totals
  ``initiate_close()``: apply any early-exit penalty, start cooldown
  ``finalize_close()``: release the principal once cooldown elapsed
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from stakeflow_core.address import check_seed, generate_seed, position_address
from stakeflow_core.aggregates import GlobalLedger
from stakeflow_core.config import StakingConfig
from stakeflow_core.errors import (
    BelowMinimumAmount,
    CooldownAlreadyActive,
    CooldownNotElapsed,
    NoCooldown,
    NotActive,
    PositionNotFound,
    ProgramPaused,
    StillActive,
)
from stakeflow_core.models import IntentKind, PenaltyRecord, Position
from stakeflow_core.precision import SECONDS_PER_MONTH, format_amount
from stakeflow_core.reward_math import PenaltySplit, penalty_split, power_multiplier_bp
from stakeflow_core.storage import StakingStore
from stakeflow_core.submission import IntentOutbox
from stakeflow_core.tiers import TierCatalog, default_penalty_rate_bp

logger = logging.getLogger("stakeflow_positions")


# ── results ─────────────────────────────────────────────────────────────

@dataclass
class OpenResult:
    position: Position
    intent_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position.position_id,
            "address": self.position.address,
            "seed": self.position.position_seed,
            "principal_amount": self.position.principal_amount,
            "power_multiplier_bp": self.position.power_multiplier_bp,
            "staking_power": self.position.staking_power,
            "unlock_ts": self.position.unlock_ts,
            "intent_id": self.intent_id,
        }


@dataclass
class CloseResult:
    position_id: str
    address: str
    seed: int
    is_early: bool
    penalty: Optional[PenaltySplit]
    pending_principal: int
    cooldown_end_ts: int
    intent_id: str

    @property
    def penalty_amount(self) -> int:
        return self.penalty.penalty if self.penalty else 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "address": self.address,
            "seed": self.seed,
            "is_early_unstake": self.is_early,
            "penalty_amount": self.penalty_amount,
            "to_reward_pool": self.penalty.to_reward_pool if self.penalty else 0,
            "to_treasury": self.penalty.to_treasury if self.penalty else 0,
            "pending_principal": self.pending_principal,
            "cooldown_end_ts": self.cooldown_end_ts,
            "intent_id": self.intent_id,
        }


@dataclass
class FinalizeResult:
    position_id: str
    address: str
    seed: int
    returned_principal: int
    intent_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "address": self.address,
            "seed": self.seed,
            "returned_principal": self.returned_principal,
            "intent_id": self.intent_id,
        }


# ── manager ─────────────────────────────────────────────────────────────

class PositionManager:
    """
    Opens and closes staking positions.

    Reward claims on an open position live in ``RewardManager``; the
    scheduler's cooldown sweep shares ``GlobalLedger.release_position``
    with ``finalize_close`` so the totals drop exactly once.
    """

    def __init__(
        self,
        store: StakingStore,
        catalog: TierCatalog,
        ledger: GlobalLedger,
        outbox: IntentOutbox,
        config: Optional[StakingConfig] = None,
        program_id: str = "stakeflow-program",
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.ledger = ledger
        self.outbox = outbox
        self.config = config or StakingConfig()
        self.program_id = program_id

    def _require(self, owner: str, seed: int) -> Position:
        position = self.store.get_position(owner, seed)
        if position is None:
            raise PositionNotFound(owner, seed)
        return position

    # ── open ─────────────────────────────────────────────────────

    def open_position(
        self,
        owner: str,
        amount: int,
        duration_months: int,
        tier_id: int,
        seed: Optional[int] = None,
        now: Optional[int] = None,
    ) -> OpenResult:
        """
        Lock *amount* units for *duration_months* under *tier_id*.

        Raises InvalidTier, InvalidDuration, BelowMinimumAmount,
        ProgramPaused, InvalidSeed, or PositionExists when *seed* was
        already used by this owner.
        """
        if now is None:
            now = int(time.time())
        if seed is None:
            seed = generate_seed()
        check_seed(seed)

        with self.store.transaction():
            if self.ledger.snapshot().paused:
                raise ProgramPaused("Staking program is paused")
            tier = self.catalog.require_active(tier_id)
            tier.check_duration(duration_months)
            if amount < self.config.min_stake_amount:
                raise BelowMinimumAmount(
                    f"Minimum stake is {format_amount(self.config.min_stake_amount)}"
                )

            position = Position(
                position_id=uuid.uuid4().hex,
                owner=owner,
                position_seed=seed,
                address=position_address(self.program_id, owner, seed),
                principal_amount=amount,
                duration_months=duration_months,
                tier_id=tier.tier_id,
                power_multiplier_bp=power_multiplier_bp(duration_months),
                start_ts=now,
                unlock_ts=now + duration_months * SECONDS_PER_MONTH,
                last_accrual_ts=now,
                last_claim_ts=now,
            )
            self.store.insert_position(position)
            self.ledger.apply_open(position.principal_amount, position.staking_power)
            intent = self.outbox.enqueue(
                IntentKind.OPEN, owner, position.address, seed,
                {
                    "amount": amount,
                    "duration_months": duration_months,
                    "tier_id": tier.tier_id,
                    "staking_power": position.staking_power,
                },
                now,
            )

        logger.info(
            f"Opened position {position.address}: {format_amount(amount)} for "
            f"{duration_months} months (tier {tier.tier_id}, "
            f"power {position.staking_power})",
            extra={"position": position.position_id},
        )
        return OpenResult(position=position, intent_id=intent.intent_id)

    # ── close ────────────────────────────────────────────────────

    def initiate_close(
        self, owner: str, seed: int, now: Optional[int] = None,
    ) -> CloseResult:
        """
        Start the withdrawal cooldown.

        Closing before ``unlock_ts`` costs the tier's penalty rate; half
        goes to the reward pool right away, half is reported as the
        treasury share.  ``principal_amount`` stays in place until the
        position is released so the totals are decremented by exactly
        what was added on open.
        """
        if now is None:
            now = int(time.time())

        with self.store.transaction():
            position = self._require(owner, seed)
            if position.cooldown_end_ts is not None:
                raise CooldownAlreadyActive(
                    f"Unstake already initiated for {position.address}"
                )
            if not position.active:
                raise NotActive(f"Stake position {position.address} is not active")

            split: Optional[PenaltySplit] = None
            pending = position.principal_amount
            early = position.is_early(now)
            if early:
                tier = self.catalog.get(position.tier_id)
                rate = (
                    tier.penalty_rate_bp if tier is not None
                    else self._fallback_rate(position.tier_id)
                )
                split = penalty_split(position.principal_amount, rate)
                pending -= split.penalty
                self.store.insert_penalty(PenaltyRecord(
                    position_id=position.position_id,
                    owner=owner,
                    penalty_amount=split.penalty,
                    to_reward_pool=split.to_reward_pool,
                    to_treasury=split.to_treasury,
                    tier_penalty_rate_bp=rate,
                    created_ts=now,
                ))
                self.ledger.credit_reward_pool(split.to_reward_pool)

            position.active = False
            position.cooldown_end_ts = now + self.config.cooldown_period
            position.pending_principal = pending
            self.store.update_position(position)

            intent = self.outbox.enqueue(
                IntentKind.INITIATE_CLOSE, owner, position.address, seed,
                {
                    "is_early": early,
                    "penalty_amount": split.penalty if split else 0,
                    "pending_principal": pending,
                    "cooldown_end_ts": position.cooldown_end_ts,
                },
                now,
            )

        if split is not None:
            logger.info(
                f"Early unstake of {position.address}: penalty "
                f"{format_amount(split.penalty)} ({format_amount(split.to_reward_pool)} "
                f"to pool, {format_amount(split.to_treasury)} to treasury)",
                extra={"position": position.position_id},
            )
        logger.info(
            f"Cooldown started for {position.address} until "
            f"{position.cooldown_end_ts}, pending {format_amount(pending)}",
            extra={"position": position.position_id},
        )
        return CloseResult(
            position_id=position.position_id,
            address=position.address,
            seed=seed,
            is_early=early,
            penalty=split,
            pending_principal=pending,
            cooldown_end_ts=position.cooldown_end_ts,
            intent_id=intent.intent_id,
        )

    @staticmethod
    def _fallback_rate(tier_id: int) -> int:
        logger.warning(
            f"Tier {tier_id} missing from catalog; using default penalty rate"
        )
        return default_penalty_rate_bp(tier_id)

    def finalize_close(
        self, owner: str, seed: int, now: Optional[int] = None,
    ) -> FinalizeResult:
        """Release the principal after the cooldown has elapsed."""
        if now is None:
            now = int(time.time())

        with self.store.transaction():
            position = self._require(owner, seed)
            if position.active:
                raise StillActive(
                    f"Stake position {position.address} is still active; "
                    f"initiate unstake first"
                )
            if position.cooldown_end_ts is None:
                raise NoCooldown(f"No pending unstake for {position.address}")
            if now < position.cooldown_end_ts:
                raise CooldownNotElapsed(position.cooldown_end_ts - now)

            release = self.ledger.release_position(position, now)
            returned = release.returned_principal if release else 0
            intent = self.outbox.enqueue(
                IntentKind.FINALIZE_CLOSE, owner, position.address, seed,
                {"returned_principal": returned, "trigger": "owner"},
                now,
            )

        return FinalizeResult(
            position_id=position.position_id,
            address=position.address,
            seed=seed,
            returned_principal=returned,
            intent_id=intent.intent_id,
        )

    # ── queries ──────────────────────────────────────────────────

    def get_position(self, owner: str, seed: int) -> Position:
        return self._require(owner, seed)

    def list_positions(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[Position]:
        return self.store.list_positions(owner, active)
