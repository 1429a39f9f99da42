"""
Reward claims and vesting for StakeFlow.

A claim converts the whole weeks elapsed since a position's last accrual
into a reward quote (pro-rata share of weekly emission, then the APY
cap), moves that amount out of the reward pool and locks it in a
``RewardReceipt`` until ``vest_ts``.  Vesting releases the receipt once.

The quote reads the GlobalState snapshot inside the claim transaction.
The pool debit is clamped at zero, so the pool balance is advisory
across concurrent claims rather than a hard ceiling; each claim is
still bounded by the APY cap.
"""

from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from stakeflow_core.address import check_seed, generate_seed, receipt_address
from stakeflow_core.aggregates import GlobalLedger
from stakeflow_core.config import StakingConfig
from stakeflow_core.errors import (
    AlreadyVested,
    NoRewardAvailable,
    NotActive,
    NothingAccrued,
    PositionNotFound,
    ProgramPaused,
    ReceiptNotFound,
    TooSoonToClaim,
    VestingNotComplete,
)
from stakeflow_core.models import GlobalState, IntentKind, Position, RewardReceipt
from stakeflow_core.precision import SECONDS_PER_DAY, format_amount
from stakeflow_core.reward_math import RewardQuote, quote_reward, weeks_elapsed
from stakeflow_core.storage import StakingStore
from stakeflow_core.submission import IntentOutbox

logger = logging.getLogger("stakeflow_rewards")


@dataclass
class ClaimResult:
    receipt: RewardReceipt
    position_id: str
    position_address: str
    quote: RewardQuote
    pool_debited: int
    intent_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "position_address": self.position_address,
            "receipt_id": self.receipt.receipt_id,
            "nft_address": self.receipt.address,
            "nft_seed": self.receipt.nft_seed,
            "reward_amount": self.receipt.reward_amount,
            "vest_ts": self.receipt.vest_ts,
            "quote": self.quote.to_dict(),
            "pool_debited": self.pool_debited,
            "intent_id": self.intent_id,
        }


@dataclass
class VestResult:
    receipt_id: str
    address: str
    nft_seed: int
    reward_amount: int
    intent_id: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "receipt_id": self.receipt_id,
            "address": self.address,
            "nft_seed": self.nft_seed,
            "reward_amount": self.reward_amount,
            "intent_id": self.intent_id,
        }


class RewardManager:
    """Claim, vest and preview rewards on staking positions."""

    def __init__(
        self,
        store: StakingStore,
        ledger: GlobalLedger,
        outbox: IntentOutbox,
        config: Optional[StakingConfig] = None,
        program_id: str = "stakeflow-program",
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.outbox = outbox
        self.config = config or StakingConfig()
        self.program_id = program_id

    def _quote(self, position: Position, state: GlobalState, now: int) -> RewardQuote:
        return quote_reward(
            staked_amount=position.principal_amount,
            user_power=position.staking_power,
            total_power=state.total_staking_power,
            pool_balance=state.reward_pool_balance,
            weeks=weeks_elapsed(position.last_accrual_ts, now),
            emission_rate_bp=self.config.weekly_emission_rate_bp,
            precision=self.config.emission_precision,
            max_apy_bp=self.config.max_apy_bp,
        )

    def _next_claim_ts(self, position: Position) -> int:
        return position.last_claim_ts + self.config.min_claim_interval

    # ── claim ────────────────────────────────────────────────────

    def claim_rewards(
        self,
        owner: str,
        seed: int,
        nft_seed: Optional[int] = None,
        now: Optional[int] = None,
    ) -> ClaimResult:
        """
        Claim the rewards accrued on position *(owner, seed)*.

        Raises InvalidSeed, ProgramPaused, NotFound, NotActive,
        TooSoonToClaim, NothingAccrued or NoRewardAvailable.
        """
        if now is None:
            now = int(time.time())
        if nft_seed is None:
            nft_seed = generate_seed()
        check_seed(seed)
        check_seed(nft_seed)

        with self.store.transaction():
            state = self.store.load_global_state()
            if state.paused:
                raise ProgramPaused("Staking program is paused")
            position = self.store.get_position(owner, seed)
            if position is None:
                raise PositionNotFound(owner, seed)
            if not position.active:
                raise NotActive(f"Stake position {position.address} is not active")
            next_claim = self._next_claim_ts(position)
            if now < next_claim:
                raise TooSoonToClaim(
                    next_claim - now,
                    interval_days=self.config.min_claim_interval // SECONDS_PER_DAY,
                )
            quote = self._quote(position, state, now)
            if quote.weeks == 0:
                raise NothingAccrued("No rewards accrued yet")
            if quote.reward == 0:
                raise NoRewardAvailable("No rewards available to claim")

            debited = self.ledger.debit_reward_pool(quote.reward)
            receipt = RewardReceipt(
                receipt_id=uuid.uuid4().hex,
                owner=owner,
                position_id=position.position_id,
                nft_seed=nft_seed,
                address=receipt_address(self.program_id, owner, nft_seed),
                reward_amount=quote.reward,
                vest_ts=now + self.config.vesting_period,
                created_ts=now,
            )
            self.store.insert_receipt(receipt)

            position.last_accrual_ts = now
            position.last_claim_ts = now
            self.store.update_position(position)

            intent = self.outbox.enqueue(
                IntentKind.CLAIM, owner, receipt.address, nft_seed,
                {
                    "position_address": position.address,
                    "position_seed": seed,
                    "reward_amount": quote.reward,
                    "vest_ts": receipt.vest_ts,
                },
                now,
            )

        if debited < quote.reward:
            logger.warning(
                f"Reward pool short for claim on {position.address}: "
                f"debited {debited} of {quote.reward}"
            )
        logger.info(
            f"Claimed {format_amount(quote.reward)} on {position.address} "
            f"({quote.weeks} week(s){', capped' if quote.capped else ''}); "
            f"vests at {receipt.vest_ts}",
            extra={"position": position.position_id},
        )
        return ClaimResult(
            receipt=receipt,
            position_id=position.position_id,
            position_address=position.address,
            quote=quote,
            pool_debited=debited,
            intent_id=intent.intent_id,
        )

    # ── vest ─────────────────────────────────────────────────────

    def vest_reward(
        self, owner: str, nft_seed: int, now: Optional[int] = None,
    ) -> VestResult:
        if now is None:
            now = int(time.time())

        with self.store.transaction():
            receipt = self.store.get_receipt(owner, nft_seed)
            if receipt is None:
                raise ReceiptNotFound(owner, nft_seed)
            if not receipt.active:
                raise AlreadyVested(f"Reward {receipt.address} already vested")
            if now < receipt.vest_ts:
                raise VestingNotComplete(receipt.vest_ts - now)

            receipt.active = False
            receipt.vested_ts = now
            self.store.update_receipt(receipt)
            intent = self.outbox.enqueue(
                IntentKind.VEST, owner, receipt.address, nft_seed,
                {"reward_amount": receipt.reward_amount},
                now,
            )

        logger.info(f"Vested {format_amount(receipt.reward_amount)} from {receipt.address}")
        return VestResult(
            receipt_id=receipt.receipt_id,
            address=receipt.address,
            nft_seed=nft_seed,
            reward_amount=receipt.reward_amount,
            intent_id=intent.intent_id,
        )

    # ── queries ──────────────────────────────────────────────────

    def list_receipts(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[RewardReceipt]:
        return self.store.list_receipts(owner, active)

    def preview_rewards(self, owner: str, now: Optional[int] = None) -> dict[str, Any]:
        """Estimated claimable reward per active position of *owner*."""
        if now is None:
            now = int(time.time())
        state = self.store.load_global_state()
        previews = []
        total = 0
        for position in self.store.list_positions(owner, active=True):
            quote = self._quote(position, state, now)
            next_claim_in = max(0, self._next_claim_ts(position) - now)
            can_claim = (
                not state.paused
                and next_claim_in == 0
                and quote.reward > 0
            )
            total += quote.reward
            previews.append({
                "position_id": position.position_id,
                "address": position.address,
                "seed": position.position_seed,
                "staking_power": position.staking_power,
                "weeks_elapsed": quote.weeks,
                "estimated_reward": quote.reward,
                "capped": quote.capped,
                "can_claim": can_claim,
                "next_claim_in": next_claim_in,
            })
        return {
            "owner": owner,
            "total_estimated_reward": total,
            "positions": previews,
        }
