"""
Global aggregate ledger for StakeFlow.

Owns the GlobalState singleton: total staked, total staking power,
reward pool balance, the current epoch and the pause flag.  Every method
that mutates it joins the caller's transaction, so the aggregate moves
atomically with the position change that triggered it.

``release_position`` is the single routine that removes a position from
the totals.  Both a user-driven finalize and the scheduler's cooldown
sweep go through it, and the per-position ``aggregate_released`` flag
makes the decrement happen exactly once whichever path gets there first.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from stakeflow_core.models import GlobalState, Position
from stakeflow_core.storage import StakingStore

logger = logging.getLogger("stakeflow_aggregates")


@dataclass(frozen=True)
class Release:
    """What one call to ``release_position`` removed from the totals."""
    position_id: str
    returned_principal: int
    released_principal: int
    released_power: int


@dataclass(frozen=True)
class Divergence:
    field: str
    recorded: int
    expected: int

    @property
    def delta(self) -> int:
        return self.recorded - self.expected

    def to_dict(self) -> dict:
        return {
            "field": self.field,
            "recorded": self.recorded,
            "expected": self.expected,
            "delta": self.delta,
        }


class GlobalLedger:
    """Read-modify-write access to GlobalState inside store transactions."""

    def __init__(self, store: StakingStore) -> None:
        self.store = store

    def snapshot(self) -> GlobalState:
        return self.store.load_global_state()

    def initialize(self, now: int) -> GlobalState:
        """Stamp the first epoch start on a fresh store."""
        with self.store.transaction():
            state = self.store.load_global_state()
            if state.epoch_start_ts == 0:
                state.epoch_start_ts = now
                self.store.update_global_state(state)
            return state

    # ── position-driven mutations ────────────────────────────────

    def apply_open(self, principal: int, power: int) -> GlobalState:
        with self.store.transaction():
            state = self.store.load_global_state()
            state.total_staked += principal
            state.total_staking_power += power
            self.store.update_global_state(state)
            return state

    def release_position(self, position: Position, now: int) -> Optional[Release]:
        """
        Close out a cooled-down position and decrement the totals once.

        The caller must hold the store transaction and pass a position
        read inside it.  Returns None if the position was already
        released (or is not cooling down), leaving everything untouched.
        """
        with self.store.transaction():
            if position.aggregate_released or position.cooldown_end_ts is None:
                return None
            principal = position.principal_amount
            power = position.staking_power
            returned = position.pending_principal or 0

            state = self.store.load_global_state()
            if state.total_staked < principal or state.total_staking_power < power:
                logger.error(
                    f"Aggregate underflow releasing {position.position_id}: "
                    f"staked {state.total_staked} < {principal} or "
                    f"power {state.total_staking_power} < {power}"
                )
            state.total_staked = max(0, state.total_staked - principal)
            state.total_staking_power = max(0, state.total_staking_power - power)
            self.store.update_global_state(state)

            position.principal_amount = 0
            position.pending_principal = None
            position.cooldown_end_ts = None
            position.aggregate_released = True
            self.store.update_position(position)

        logger.info(
            f"Released position {position.address}: "
            f"-{principal} staked, -{power} power, returning {returned}"
        )
        return Release(
            position_id=position.position_id,
            returned_principal=returned,
            released_principal=principal,
            released_power=power,
        )

    # ── reward pool ──────────────────────────────────────────────

    def credit_reward_pool(self, amount: int) -> GlobalState:
        if amount < 0:
            raise ValueError("Credit amount must be non-negative")
        with self.store.transaction():
            state = self.store.load_global_state()
            state.reward_pool_balance += amount
            self.store.update_global_state(state)
            return state

    def debit_reward_pool(self, amount: int) -> int:
        """Debit up to *amount*; returns what was actually debited."""
        with self.store.transaction():
            state = self.store.load_global_state()
            debited = min(max(0, amount), state.reward_pool_balance)
            state.reward_pool_balance -= debited
            self.store.update_global_state(state)
            return debited

    def fund_reward_pool(self, amount: int) -> GlobalState:
        if amount <= 0:
            raise ValueError("Replenish amount must be positive")
        state = self.credit_reward_pool(amount)
        logger.info(f"Reward pool replenished by {amount} → {state.reward_pool_balance}")
        return state

    # ── program controls ─────────────────────────────────────────

    def set_paused(self, paused: bool) -> GlobalState:
        with self.store.transaction():
            state = self.store.load_global_state()
            if state.paused != paused:
                state.paused = paused
                self.store.update_global_state(state)
                logger.warning(f"Program {'paused' if paused else 'unpaused'}")
            return state

    def advance_epoch(self, weekly_emission: int, now: int) -> GlobalState:
        with self.store.transaction():
            state = self.store.load_global_state()
            state.epoch += 1
            state.epoch_start_ts = now
            state.weekly_emission = weekly_emission
            self.store.update_global_state(state)
            return state

    # ── consistency ──────────────────────────────────────────────

    def check_consistency(self) -> list[Divergence]:
        """
        Compare the recorded totals with the positions that still count
        toward them (every position not yet released).  Never corrects.
        """
        with self.store.transaction():
            state = self.store.load_global_state()
            principal, power = self.store.sum_positions(unreleased_only=True)
        out: list[Divergence] = []
        if state.total_staked != principal:
            out.append(Divergence("total_staked", state.total_staked, principal))
        if state.total_staking_power != power:
            out.append(
                Divergence("total_staking_power", state.total_staking_power, power)
            )
        return out
