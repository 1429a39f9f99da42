"""
Tests for reward claims and vesting.

Covers:
  - The two-week full-share claim scenario with the APY cap
  - Claim interval, accrual and zero-reward preconditions
  - Receipts, pool debit and position timestamps
  - Vesting gates and once-only vest
  - Reward preview
  - Concurrent claims on one position
"""

import threading

import pytest

from stakeflow_core.errors import (
    AlreadyVested,
    InvalidSeed,
    NoRewardAvailable,
    NotActive,
    NotFound,
    NothingAccrued,
    ProgramPaused,
    TooSoonToClaim,
    VestingNotComplete,
)
from stakeflow_core.models import IntentKind
from stakeflow_core.precision import SECONDS_PER_YEAR
from tests.conftest import DAY, T0, WEEK

POOL = 1_000_000_000_000
STAKE = 100_000_000


@pytest.fixture
def staked(engine):
    """Single 100M-unit, 3-month position holding all staking power; funded pool."""
    engine.fund_reward_pool(POOL)
    return engine.open_position("alice", STAKE, 3, 1, seed=7, now=T0)


# ═══════════════════════════════════════════════════════════════════
#  Claim
# ═══════════════════════════════════════════════════════════════════

class TestClaim:
    def test_full_share_two_weeks(self, engine, staked):
        assert engine.ledger.snapshot().total_staking_power == STAKE
        result = engine.claim_rewards("alice", 7, nft_seed=70, now=T0 + 2 * WEEK)
        q = result.quote
        assert q.weeks == 2
        assert q.weekly_emission == 2_100_000_000
        assert q.user_weekly_share == 2_100_000_000
        assert q.raw_reward == 4_200_000_000
        # 75 % APY on 100M for 2/52 of a year
        assert q.reward == 2_884_615
        assert result.receipt.reward_amount == 2_884_615

    def test_claim_creates_receipt_and_debits_pool(self, engine, staked):
        now = T0 + 2 * WEEK
        result = engine.claim_rewards("alice", 7, nft_seed=70, now=now)
        receipt = engine.store.get_receipt("alice", 70)
        assert receipt.active
        assert receipt.vest_ts == now + SECONDS_PER_YEAR
        assert receipt.position_id == staked.position.position_id
        assert result.pool_debited == 2_884_615
        assert engine.ledger.snapshot().reward_pool_balance == POOL - 2_884_615

    def test_claim_advances_timestamps(self, engine, staked):
        now = T0 + 2 * WEEK
        engine.claim_rewards("alice", 7, now=now)
        p = engine.get_position("alice", 7)
        assert p.last_accrual_ts == now
        assert p.last_claim_ts == now

    def test_claim_writes_intent(self, engine, staked):
        result = engine.claim_rewards("alice", 7, nft_seed=70, now=T0 + 2 * WEEK)
        intent = engine.store.get_intent(result.intent_id)
        assert intent.kind == IntentKind.CLAIM
        assert intent.address == result.receipt.address
        assert intent.payload["reward_amount"] == 2_884_615

    def test_second_claim_too_soon(self, engine, staked):
        engine.claim_rewards("alice", 7, now=T0 + 2 * WEEK)
        with pytest.raises(TooSoonToClaim) as exc_info:
            engine.claim_rewards("alice", 7, now=T0 + 2 * WEEK + DAY)
        assert exc_info.value.remaining == 6 * DAY
        assert "144 hours remaining" in str(exc_info.value)

    def test_first_claim_waits_for_interval(self, engine, staked):
        with pytest.raises(TooSoonToClaim):
            engine.claim_rewards("alice", 7, now=T0 + DAY)

    def test_nothing_accrued(self, engine, staked):
        engine.config.staking.min_claim_interval = DAY
        with pytest.raises(NothingAccrued):
            engine.claim_rewards("alice", 7, now=T0 + 2 * DAY)

    def test_no_reward_with_empty_pool(self, engine):
        engine.open_position("bob", STAKE, 3, 1, seed=8, now=T0)
        with pytest.raises(NoRewardAvailable):
            engine.claim_rewards("bob", 8, now=T0 + WEEK)

    def test_claim_on_closing_position(self, engine, staked):
        engine.initiate_close("alice", 7, now=T0 + WEEK)
        with pytest.raises(NotActive):
            engine.claim_rewards("alice", 7, now=T0 + 2 * WEEK)

    def test_claim_missing_position(self, engine, staked):
        with pytest.raises(NotFound):
            engine.claim_rewards("alice", 999, now=T0 + 2 * WEEK)

    def test_claim_while_paused(self, engine, staked):
        engine.pause()
        with pytest.raises(ProgramPaused):
            engine.claim_rewards("alice", 7, now=T0 + 2 * WEEK)

    def test_receipt_seed_out_of_range(self, engine, staked):
        with pytest.raises(InvalidSeed) as exc_info:
            engine.claim_rewards("alice", 7, nft_seed=-5, now=T0 + 2 * WEEK)
        assert exc_info.value.to_dict()["error"] == "InvalidSeed"
        assert engine.store.list_receipts("alice") == []

    def test_concurrent_claims_single_receipt(self, engine, staked):
        outcomes: list = []
        barrier = threading.Barrier(4)

        def attempt():
            barrier.wait()
            try:
                outcomes.append(engine.claim_rewards("alice", 7, now=T0 + 2 * WEEK))
            except TooSoonToClaim as exc:
                outcomes.append(exc)

        threads = [threading.Thread(target=attempt) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        winners = [o for o in outcomes if not isinstance(o, Exception)]
        losers = [o for o in outcomes if isinstance(o, TooSoonToClaim)]
        assert len(winners) == 1
        assert len(losers) == 3
        assert len(engine.store.list_receipts("alice")) == 1
        assert engine.ledger.snapshot().reward_pool_balance == POOL - 2_884_615

    def test_epoch_advance_moves_accrual_boundary(self, engine, staked):
        engine.advance_epoch(now=T0 + WEEK)
        with pytest.raises(NothingAccrued):
            engine.claim_rewards("alice", 7, now=T0 + WEEK + 3 * DAY)

    def test_pro_rata_between_two_stakers(self, engine, staked):
        # bob holds 3x alice's power; no cap at this pool size
        engine.open_position("bob", 3 * STAKE, 3, 1, seed=9, now=T0)
        engine.ledger.debit_reward_pool(POOL - 1_000_000)
        result = engine.claim_rewards("alice", 7, now=T0 + WEEK)
        # emission 2100, alice share 2100 * 1/4 = 525
        assert result.quote.weekly_emission == 2_100
        assert result.quote.reward == 525


# ═══════════════════════════════════════════════════════════════════
#  Vest
# ═══════════════════════════════════════════════════════════════════

class TestVest:
    @pytest.fixture
    def claimed(self, engine, staked):
        return engine.claim_rewards("alice", 7, nft_seed=70, now=T0 + 2 * WEEK)

    def test_vest_before_unlock(self, engine, claimed):
        vest_ts = claimed.receipt.vest_ts
        with pytest.raises(VestingNotComplete) as exc_info:
            engine.vest_reward("alice", 70, now=vest_ts - 36 * 3_600)
        assert exc_info.value.remaining == 36 * 3_600
        assert "2 days remaining" in str(exc_info.value)

    def test_vest_at_unlock(self, engine, claimed):
        result = engine.vest_reward("alice", 70, now=claimed.receipt.vest_ts)
        assert result.reward_amount == 2_884_615
        receipt = engine.store.get_receipt("alice", 70)
        assert not receipt.active
        assert receipt.vested_ts == claimed.receipt.vest_ts

    def test_vest_only_once(self, engine, claimed):
        engine.vest_reward("alice", 70, now=claimed.receipt.vest_ts)
        with pytest.raises(AlreadyVested):
            engine.vest_reward("alice", 70, now=claimed.receipt.vest_ts + 1)

    def test_vest_unknown_receipt(self, engine, claimed):
        with pytest.raises(NotFound):
            engine.vest_reward("alice", 71, now=claimed.receipt.vest_ts)

    def test_vest_allowed_while_paused(self, engine, claimed):
        engine.pause()
        result = engine.vest_reward("alice", 70, now=claimed.receipt.vest_ts)
        assert engine.store.get_intent(result.intent_id).kind == IntentKind.VEST

    def test_receipt_listing(self, engine, claimed):
        assert len(engine.list_receipts("alice", active=True)) == 1
        engine.vest_reward("alice", 70, now=claimed.receipt.vest_ts)
        assert engine.list_receipts("alice", active=True) == []
        assert len(engine.list_receipts("alice")) == 1


# ═══════════════════════════════════════════════════════════════════
#  Preview
# ═══════════════════════════════════════════════════════════════════

class TestPreview:
    def test_preview_before_interval(self, engine, staked):
        preview = engine.preview_rewards("alice", now=T0 + DAY)
        (entry,) = preview["positions"]
        assert entry["can_claim"] is False
        assert entry["next_claim_in"] == 6 * DAY
        assert entry["estimated_reward"] == 0

    def test_preview_matches_claim(self, engine, staked):
        now = T0 + 2 * WEEK
        preview = engine.preview_rewards("alice", now=now)
        assert preview["positions"][0]["can_claim"] is True
        assert preview["total_estimated_reward"] == 2_884_615
        result = engine.claim_rewards("alice", 7, now=now)
        assert result.quote.reward == preview["total_estimated_reward"]

    def test_preview_empty_owner(self, engine):
        assert engine.preview_rewards("nobody", now=T0)["positions"] == []
