"""
StakeFlow engine facade.

Wires storage, the tier catalog, the global ledger, the lifecycle and
reward managers, the intent outbox, the indexer and the scheduler from
one ``StakeFlowConfig``, and exposes the read-only queries used by the
outer API layer.

Usage:
    engine = StakingEngine.from_config("stakeflow.toml")
    engine.initialize()
    result = engine.open_position("alice", 5 * UNITS_PER_TOKEN, 12, tier_id=3)
"""

from __future__ import annotations

import logging
import time
from typing import Any, Optional

from stakeflow_core.aggregates import GlobalLedger
from stakeflow_core.config import StakeFlowConfig, load_config
from stakeflow_core.models import GlobalState, LedgerIntent, Position, RewardReceipt
from stakeflow_core.positions import (
    CloseResult,
    FinalizeResult,
    OpenResult,
    PositionManager,
)
from stakeflow_core.precision import BPS_DENOMINATOR
from stakeflow_core.reconciliation import (
    EventIndexer,
    EventSource,
    HTTPEventSource,
    IngestReport,
    ReconciliationReport,
)
from stakeflow_core.rewards import ClaimResult, RewardManager, VestResult
from stakeflow_core.scheduler import (
    CooldownFinalizer,
    EpochAdvancer,
    JobResult,
    JobScheduler,
)
from stakeflow_core.storage import StakingStore
from stakeflow_core.submission import (
    HTTPLedgerSubmitter,
    IntentOutbox,
    LedgerSubmitter,
    SubmissionReport,
    SubmissionRetrier,
)
from stakeflow_core.tiers import Tier, TierCatalog

logger = logging.getLogger("stakeflow_engine")


class StakingEngine:
    """Single entry point for callers and the process runner."""

    def __init__(
        self,
        config: Optional[StakeFlowConfig] = None,
        store: Optional[StakingStore] = None,
        submitter: Optional[LedgerSubmitter] = None,
        event_source: Optional[EventSource] = None,
    ) -> None:
        self.config = config or StakeFlowConfig()
        cfg = self.config
        self.store = store or StakingStore(cfg.storage.path)
        self.catalog = TierCatalog(self.store)
        self.ledger = GlobalLedger(self.store)
        self.outbox = IntentOutbox(self.store)
        self.positions = PositionManager(
            self.store, self.catalog, self.ledger, self.outbox,
            cfg.staking, cfg.ledger.program_id,
        )
        self.rewards = RewardManager(
            self.store, self.ledger, self.outbox,
            cfg.staking, cfg.ledger.program_id,
        )
        self.epoch_advancer = EpochAdvancer(
            self.store, self.ledger, cfg.staking, cfg.scheduler.epoch_interval,
        )
        self.cooldown_finalizer = CooldownFinalizer(self.store, self.ledger, self.outbox)

        if submitter is None and cfg.ledger.submission_url:
            submitter = HTTPLedgerSubmitter(
                cfg.ledger.submission_url, cfg.ledger.request_timeout,
            )
        self.submitter = submitter
        self.retrier: Optional[SubmissionRetrier] = None
        if submitter is not None:
            self.retrier = SubmissionRetrier(
                self.outbox, submitter,
                max_attempts=cfg.scheduler.max_submission_attempts,
                backoff_base=cfg.scheduler.backoff_base_seconds,
            )

        if event_source is None and cfg.ledger.rpc_url:
            event_source = HTTPEventSource(
                cfg.ledger.rpc_url, cfg.ledger.program_id, cfg.ledger.request_timeout,
            )
        self.indexer = EventIndexer(
            self.store, self.outbox, self.ledger, event_source,
            batch_size=cfg.ledger.event_batch_size,
        )
        self.scheduler = self._build_scheduler()

    @classmethod
    def from_config(cls, path: Optional[str] = None) -> StakingEngine:
        return cls(load_config(path))

    def _build_scheduler(self) -> JobScheduler:
        sc = self.config.scheduler
        scheduler = JobScheduler()
        scheduler.add_job(
            EpochAdvancer.name, sc.epoch_check_interval, self.epoch_advancer.run,
        )
        scheduler.add_job(
            CooldownFinalizer.name, sc.cooldown_sweep_interval,
            self.cooldown_finalizer.run,
        )
        if self.retrier is not None:
            scheduler.add_job(
                "submission_retry", sc.submission_poll_interval, self.retrier.run,
            )
        if self.indexer.source is not None:
            scheduler.add_job("indexer_sync", sc.indexer_poll_interval, self.indexer.sync)
        return scheduler

    def initialize(self, now: Optional[int] = None) -> None:
        """Stamp the first epoch and seed the tier catalog on a fresh store."""
        if now is None:
            now = int(time.time())
        self.ledger.initialize(now)
        seeded = (
            [Tier.from_dict(t) for t in self.config.tiers]
            if self.config.tiers else None
        )
        written = self.catalog.install_defaults(seeded)
        if written:
            logger.info(f"Installed {written} staking tier(s)")

    # ── lifecycle ────────────────────────────────────────────────

    def open_position(
        self,
        owner: str,
        amount: int,
        duration_months: int,
        tier_id: int,
        seed: Optional[int] = None,
        now: Optional[int] = None,
    ) -> OpenResult:
        return self.positions.open_position(
            owner, amount, duration_months, tier_id, seed, now,
        )

    def initiate_close(self, owner: str, seed: int, now: Optional[int] = None) -> CloseResult:
        return self.positions.initiate_close(owner, seed, now)

    def finalize_close(self, owner: str, seed: int, now: Optional[int] = None) -> FinalizeResult:
        return self.positions.finalize_close(owner, seed, now)

    def claim_rewards(
        self,
        owner: str,
        seed: int,
        nft_seed: Optional[int] = None,
        now: Optional[int] = None,
    ) -> ClaimResult:
        return self.rewards.claim_rewards(owner, seed, nft_seed, now)

    def vest_reward(self, owner: str, nft_seed: int, now: Optional[int] = None) -> VestResult:
        return self.rewards.vest_reward(owner, nft_seed, now)

    # ── program controls ─────────────────────────────────────────

    def pause(self) -> GlobalState:
        return self.ledger.set_paused(True)

    def unpause(self) -> GlobalState:
        return self.ledger.set_paused(False)

    def fund_reward_pool(self, amount: int) -> GlobalState:
        return self.ledger.fund_reward_pool(amount)

    # ── jobs ─────────────────────────────────────────────────────

    def advance_epoch(self, now: Optional[int] = None) -> JobResult:
        return self.epoch_advancer.run(now)

    def sweep_cooldowns(self, now: Optional[int] = None) -> JobResult:
        return self.cooldown_finalizer.run(now)

    async def submit_pending(self, now: Optional[int] = None) -> SubmissionReport:
        if self.retrier is None:
            raise RuntimeError("No ledger submitter configured")
        return await self.retrier.run(now)

    async def sync_events(self, now: Optional[int] = None) -> IngestReport:
        return await self.indexer.sync(now)

    def reconcile(self) -> ReconciliationReport:
        return self.indexer.reconcile()

    async def start(self) -> None:
        await self.scheduler.start()

    async def stop(self) -> None:
        await self.scheduler.stop()
        for client in (self.submitter, self.indexer.source):
            close = getattr(client, "close", None)
            if close is not None:
                await close()

    def close(self) -> None:
        self.store.close()

    # ── queries ──────────────────────────────────────────────────

    def get_position(self, owner: str, seed: int) -> Position:
        return self.positions.get_position(owner, seed)

    def list_positions(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[Position]:
        return self.positions.list_positions(owner, active)

    def list_receipts(
        self, owner: Optional[str] = None, active: Optional[bool] = None,
    ) -> list[RewardReceipt]:
        return self.rewards.list_receipts(owner, active)

    def list_tiers(self, active_only: bool = True) -> list[Tier]:
        return self.catalog.list(active_only)

    def failed_intents(self) -> list[LedgerIntent]:
        return self.outbox.failed_intents()

    def preview_rewards(self, owner: str, now: Optional[int] = None) -> dict[str, Any]:
        return self.rewards.preview_rewards(owner, now)

    def staking_power_summary(self, owner: str) -> dict[str, Any]:
        positions = self.store.list_positions(owner, active=True)
        state = self.ledger.snapshot()
        staked = sum(p.principal_amount for p in positions)
        power = sum(p.staking_power for p in positions)
        share_bp = (
            power * BPS_DENOMINATOR // state.total_staking_power
            if state.total_staking_power else 0
        )
        return {
            "owner": owner,
            "active_positions": len(positions),
            "total_staked": staked,
            "total_staking_power": power,
            "share_of_power_bp": share_bp,
            "positions": [
                {
                    "address": p.address,
                    "seed": p.position_seed,
                    "principal_amount": p.principal_amount,
                    "power_multiplier_bp": p.power_multiplier_bp,
                    "staking_power": p.staking_power,
                    "unlock_ts": p.unlock_ts,
                }
                for p in positions
            ],
        }

    def protocol_stats(self) -> dict[str, Any]:
        state = self.ledger.snapshot()
        penalties = self.store.list_penalties()
        return {
            **state.to_dict(),
            "active_positions": self.store.count_positions(active=True),
            "total_positions": self.store.count_positions(),
            "active_receipts": self.store.count_receipts(active=True),
            "total_receipts": self.store.count_receipts(),
            "total_penalties": sum(p.penalty_amount for p in penalties),
            "tiers": self.store.tier_breakdown(),
            "events": self.store.event_counts(),
        }

    def leaderboard(self, limit: int = 10) -> list[dict[str, Any]]:
        return [
            {"rank": rank, **row}
            for rank, row in enumerate(self.store.top_owners(limit), start=1)
        ]

    def epoch_snapshot(self, now: Optional[int] = None) -> dict[str, Any]:
        if now is None:
            now = int(time.time())
        state = self.ledger.snapshot()
        interval = self.config.scheduler.epoch_interval
        return {
            **state.to_dict(),
            "epoch_interval": interval,
            "next_epoch_in": max(0, state.epoch_start_ts + interval - now),
        }

    def indexer_status(self) -> dict[str, Any]:
        return self.indexer.status()

    def status(self) -> dict[str, Any]:
        return {
            "epoch": self.epoch_snapshot(),
            "scheduler": self.scheduler.status(),
            "indexer": self.indexer_status(),
            "pending_intents": len(self.outbox.pending_intents()),
            "failed_intents": len(self.outbox.failed_intents()),
        }
