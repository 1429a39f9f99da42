"""
Record types held by the StakeFlow engine.

Positions, reward receipts, penalty records, the GlobalState singleton,
outbox intents and indexed ledger events.  All amounts are integer
units (see ``precision``); all timestamps are integer Unix seconds.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional

from stakeflow_core.reward_math import staking_power


class PositionState(str, Enum):
    ACTIVE = "Active"
    COOLING_DOWN = "CoolingDown"
    CLOSED = "Closed"


class IntentKind(str, Enum):
    OPEN = "open"
    INITIATE_CLOSE = "initiate_close"
    FINALIZE_CLOSE = "finalize_close"
    CLAIM = "claim"
    VEST = "vest"


class IntentStatus(str, Enum):
    PENDING = "pending"
    SUBMITTED = "submitted"
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"
    FAILED = "failed"


class Commitment(str, Enum):
    CONFIRMED = "confirmed"
    FINALIZED = "finalized"


# ── Position ────────────────────────────────────────────────────────────

@dataclass
class Position:
    """
    One stake, identified by ``(owner, position_seed)``.

    ``staking_power`` is derived from ``principal_amount`` and
    ``power_multiplier_bp`` and is never stored independently.
    ``cooldown_end_ts`` and ``pending_principal`` are set together, only
    while the position is cooling down.
    """
    position_id: str
    owner: str
    position_seed: int
    address: str
    principal_amount: int
    duration_months: int
    tier_id: int
    power_multiplier_bp: int
    start_ts: int
    unlock_ts: int
    last_accrual_ts: int
    last_claim_ts: int
    cooldown_end_ts: Optional[int] = None
    pending_principal: Optional[int] = None
    active: bool = True
    aggregate_released: bool = False
    version: int = 0

    @property
    def staking_power(self) -> int:
        return staking_power(self.principal_amount, self.power_multiplier_bp)

    @property
    def state(self) -> PositionState:
        if self.active:
            return PositionState.ACTIVE
        if self.cooldown_end_ts is not None:
            return PositionState.COOLING_DOWN
        return PositionState.CLOSED

    def is_early(self, now: int) -> bool:
        return now < self.unlock_ts

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> Position:
        return cls(
            position_id=row["position_id"],
            owner=row["owner"],
            position_seed=row["position_seed"],
            address=row["address"],
            principal_amount=row["principal_amount"],
            duration_months=row["duration_months"],
            tier_id=row["tier_id"],
            power_multiplier_bp=row["power_multiplier_bp"],
            start_ts=row["start_ts"],
            unlock_ts=row["unlock_ts"],
            last_accrual_ts=row["last_accrual_ts"],
            last_claim_ts=row["last_claim_ts"],
            cooldown_end_ts=row["cooldown_end_ts"],
            pending_principal=row["pending_principal"],
            active=bool(row["active"]),
            aggregate_released=bool(row["aggregate_released"]),
            version=row["version"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "owner": self.owner,
            "position_seed": self.position_seed,
            "address": self.address,
            "principal_amount": self.principal_amount,
            "duration_months": self.duration_months,
            "tier_id": self.tier_id,
            "power_multiplier_bp": self.power_multiplier_bp,
            "staking_power": self.staking_power,
            "start_ts": self.start_ts,
            "unlock_ts": self.unlock_ts,
            "last_accrual_ts": self.last_accrual_ts,
            "last_claim_ts": self.last_claim_ts,
            "cooldown_end_ts": self.cooldown_end_ts,
            "pending_principal": self.pending_principal,
            "active": self.active,
            "state": self.state.value,
        }


# ── Reward receipts & penalties ─────────────────────────────────────────

@dataclass
class RewardReceipt:
    """Vesting receipt issued by a claim; redeemable once at ``vest_ts``."""
    receipt_id: str
    owner: str
    position_id: str
    nft_seed: int
    address: str
    reward_amount: int
    vest_ts: int
    created_ts: int
    active: bool = True
    vested_ts: Optional[int] = None
    version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> RewardReceipt:
        return cls(
            receipt_id=row["receipt_id"],
            owner=row["owner"],
            position_id=row["position_id"],
            nft_seed=row["nft_seed"],
            address=row["address"],
            reward_amount=row["reward_amount"],
            vest_ts=row["vest_ts"],
            created_ts=row["created_ts"],
            active=bool(row["active"]),
            vested_ts=row["vested_ts"],
            version=row["version"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "owner": self.owner,
            "position_id": self.position_id,
            "nft_seed": self.nft_seed,
            "address": self.address,
            "reward_amount": self.reward_amount,
            "vest_ts": self.vest_ts,
            "created_ts": self.created_ts,
            "active": self.active,
            "vested_ts": self.vested_ts,
        }


@dataclass
class PenaltyRecord:
    """Append-only audit row for one early close."""
    position_id: str
    owner: str
    penalty_amount: int
    to_reward_pool: int
    to_treasury: int
    tier_penalty_rate_bp: int
    created_ts: int
    record_id: Optional[int] = None

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> PenaltyRecord:
        return cls(
            record_id=row["record_id"],
            position_id=row["position_id"],
            owner=row["owner"],
            penalty_amount=row["penalty_amount"],
            to_reward_pool=row["to_reward_pool"],
            to_treasury=row["to_treasury"],
            tier_penalty_rate_bp=row["tier_penalty_rate_bp"],
            created_ts=row["created_ts"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "record_id": self.record_id,
            "position_id": self.position_id,
            "owner": self.owner,
            "penalty_amount": self.penalty_amount,
            "to_reward_pool": self.to_reward_pool,
            "to_treasury": self.to_treasury,
            "tier_penalty_rate_bp": self.tier_penalty_rate_bp,
            "created_ts": self.created_ts,
        }


# ── GlobalState ─────────────────────────────────────────────────────────

@dataclass
class GlobalState:
    epoch: int = 0
    epoch_start_ts: int = 0
    weekly_emission: int = 0
    total_staked: int = 0
    total_staking_power: int = 0
    reward_pool_balance: int = 0
    paused: bool = False
    version: int = 0

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> GlobalState:
        return cls(
            epoch=row["epoch"],
            epoch_start_ts=row["epoch_start_ts"],
            weekly_emission=row["weekly_emission"],
            total_staked=row["total_staked"],
            total_staking_power=row["total_staking_power"],
            reward_pool_balance=row["reward_pool_balance"],
            paused=bool(row["paused"]),
            version=row["version"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch,
            "epoch_start_ts": self.epoch_start_ts,
            "weekly_emission": self.weekly_emission,
            "total_staked": self.total_staked,
            "total_staking_power": self.total_staking_power,
            "reward_pool_balance": self.reward_pool_balance,
            "paused": self.paused,
        }


# ── External ledger: outbox intents and indexed events ──────────────────

@dataclass
class LedgerIntent:
    """A committed local transition awaiting external-ledger execution."""
    intent_id: str
    kind: IntentKind
    owner: str
    address: str
    seed: int
    payload: dict[str, Any] = field(default_factory=dict)
    status: IntentStatus = IntentStatus.PENDING
    attempts: int = 0
    next_attempt_ts: int = 0
    created_ts: int = 0
    last_error: str = ""
    signature: str = ""

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LedgerIntent:
        return cls(
            intent_id=row["intent_id"],
            kind=IntentKind(row["kind"]),
            owner=row["owner"],
            address=row["address"],
            seed=row["seed"],
            payload=json.loads(row["payload_json"] or "{}"),
            status=IntentStatus(row["status"]),
            attempts=row["attempts"],
            next_attempt_ts=row["next_attempt_ts"],
            created_ts=row["created_ts"],
            last_error=row["last_error"] or "",
            signature=row["signature"] or "",
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "intent_id": self.intent_id,
            "kind": self.kind.value,
            "owner": self.owner,
            "address": self.address,
            "seed": self.seed,
            "payload": self.payload,
            "status": self.status.value,
            "attempts": self.attempts,
            "next_attempt_ts": self.next_attempt_ts,
            "created_ts": self.created_ts,
            "last_error": self.last_error,
            "signature": self.signature,
        }


@dataclass
class LedgerEvent:
    """An externally observed program event, keyed by signature."""
    signature: str
    instruction: str
    slot: int
    timestamp: int
    commitment: Commitment = Commitment.CONFIRMED
    payload: dict[str, Any] = field(default_factory=dict)
    ingested_ts: int = 0

    @property
    def finalized(self) -> bool:
        return self.commitment == Commitment.FINALIZED

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> LedgerEvent:
        return cls(
            signature=row["signature"],
            instruction=row["instruction"],
            slot=row["slot"],
            timestamp=row["timestamp"],
            commitment=Commitment(row["commitment"]),
            payload=json.loads(row["payload_json"] or "{}"),
            ingested_ts=row["ingested_ts"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "signature": self.signature,
            "instruction": self.instruction,
            "slot": self.slot,
            "timestamp": self.timestamp,
            "commitment": self.commitment.value,
            "finalized": self.finalized,
            "payload": self.payload,
        }
