"""
Tests for the StakingEngine facade and the engine runner.

Covers:
  - Initialization: epoch stamp, default and configured tier catalogs
  - Scheduler wiring for optional submission / indexer jobs
  - Read-only queries: staking power summary, protocol stats,
    leaderboard, epoch snapshot, status
  - run_engine --status / --once
"""

from __future__ import annotations

import json
import logging

import pytest

import run_engine
from stakeflow_core.config import StakeFlowConfig
from stakeflow_core.engine import StakingEngine
from stakeflow_core.models import IntentStatus
from stakeflow_core.storage import MEMORY_PATH, StakingStore
from tests.conftest import DAY, ONE_TOKEN, T0, WIDE_TIER_ID


class _OkSubmitter:
    async def submit(self, intent):
        return f"sig-{intent.seed}"


@pytest.fixture
def restore_root():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for h in root.handlers:
        if h not in handlers:
            h.close()
    root.handlers[:] = handlers
    root.setLevel(level)


# ═══════════════════════════════════════════════════════════════════
#  Initialization and wiring
# ═══════════════════════════════════════════════════════════════════

class TestInitialize:
    def test_default_catalog(self, engine):
        tiers = engine.list_tiers()
        assert [t.tier_id for t in tiers] == [1, 2, 3, 4]
        assert tiers[3].max_duration_months == 60
        assert engine.ledger.snapshot().epoch_start_ts == T0

    def test_initialize_is_idempotent(self, engine):
        engine.initialize(now=T0 + DAY)
        assert len(engine.list_tiers()) == 4
        assert engine.ledger.snapshot().epoch_start_ts == T0

    def test_configured_tiers(self):
        cfg = StakeFlowConfig()
        cfg.tiers = [
            {"tier_id": 1, "penalty_rate_bp": 300,
             "min_duration_months": 1, "max_duration_months": 12},
        ]
        eng = StakingEngine(cfg, store=StakingStore(MEMORY_PATH))
        eng.initialize(now=T0)
        (tier,) = eng.list_tiers()
        assert tier.penalty_rate_bp == 300
        eng.close()

    def test_optional_jobs_absent_by_default(self, engine):
        assert set(engine.scheduler.jobs) == {"epoch_advance", "cooldown_finalizer"}
        assert engine.retrier is None
        assert engine.indexer.source is None

    def test_submitter_adds_retry_job(self, config):
        eng = StakingEngine(config, store=StakingStore(MEMORY_PATH),
                            submitter=_OkSubmitter())
        assert "submission_retry" in eng.scheduler.jobs
        eng.close()

    def test_urls_build_http_clients(self):
        cfg = StakeFlowConfig()
        cfg.ledger.submission_url = "http://127.0.0.1:1"
        cfg.ledger.rpc_url = "http://127.0.0.1:2"
        eng = StakingEngine(cfg, store=StakingStore(MEMORY_PATH))
        assert {"submission_retry", "indexer_sync"} <= set(eng.scheduler.jobs)
        eng.close()


@pytest.mark.asyncio
class TestSubmitPending:
    async def test_without_submitter(self, engine):
        with pytest.raises(RuntimeError):
            await engine.submit_pending(now=T0)

    async def test_drains_outbox(self, config, store):
        eng = StakingEngine(config, store=store, submitter=_OkSubmitter())
        eng.initialize(now=T0)
        eng.open_position("alice", ONE_TOKEN, 3, 1, seed=4, now=T0)
        report = await eng.submit_pending(now=T0)
        assert len(report.submitted) == 1
        (intent,) = store.list_intents(IntentStatus.SUBMITTED)
        assert intent.signature == "sig-4"


# ═══════════════════════════════════════════════════════════════════
#  Queries
# ═══════════════════════════════════════════════════════════════════

class TestQueries:
    def test_staking_power_summary(self, engine, opened):
        engine.open_position("bob", ONE_TOKEN, 1, WIDE_TIER_ID, seed=1, now=T0)
        summary = engine.staking_power_summary("alice")
        assert summary["active_positions"] == 1
        assert summary["total_staking_power"] == 1_500_000_000
        # alice 1.5 of 2.5 total power
        assert summary["share_of_power_bp"] == 6_000
        assert summary["positions"][0]["seed"] == 1

    def test_summary_unknown_owner(self, engine):
        summary = engine.staking_power_summary("nobody")
        assert summary["total_staked"] == 0
        assert summary["share_of_power_bp"] == 0

    def test_protocol_stats(self, engine, opened):
        engine.initiate_close("alice", 1, now=T0)
        stats = engine.protocol_stats()
        assert stats["total_staked"] == ONE_TOKEN
        assert stats["active_positions"] == 0
        assert stats["total_positions"] == 1
        assert stats["total_penalties"] == 50_000_000

    def test_leaderboard(self, engine, opened):
        engine.open_position("bob", 3 * ONE_TOKEN, 6, WIDE_TIER_ID, seed=1, now=T0)
        board = engine.leaderboard(limit=5)
        assert [(r["rank"], r["owner"]) for r in board] == [(1, "bob"), (2, "alice")]

    def test_epoch_snapshot(self, engine):
        snap = engine.epoch_snapshot(now=T0 + 8 * DAY)
        assert snap["next_epoch_in"] == 0
        assert snap["epoch_interval"] == 7 * DAY

    def test_status_is_json_serialisable(self, engine, opened):
        status = engine.status()
        assert status["pending_intents"] == 1
        assert status["failed_intents"] == 0
        assert not status["scheduler"]["running"]
        assert len(status["scheduler"]["jobs"]) == 2
        json.dumps(status, default=str)


# ═══════════════════════════════════════════════════════════════════
#  Runner
# ═══════════════════════════════════════════════════════════════════

@pytest.mark.asyncio
class TestRunner:
    async def test_status(self, tmp_path, capsys, restore_root):
        db = str(tmp_path / "runner.db")
        assert await run_engine.main(["--db", db, "--status", "--log-level", "warning"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert out["pending_intents"] == 0
        assert out["epoch"]["epoch"] == 0

    async def test_once(self, tmp_path, capsys, restore_root):
        db = str(tmp_path / "runner.db")
        assert await run_engine.main(["--db", db, "--once", "--log-level", "warning"]) == 0
        out = json.loads(capsys.readouterr().out)
        assert set(out) == {"epoch_advance", "cooldown_finalizer"}
        assert out["epoch_advance"]["status"] == "skipped"
