"""
Tests for ledger event indexing and reconciliation.

Covers:
  - Instruction classification from program logs
  - Signature de-duplication and confirmed -> finalized upgrade
  - Failed transactions skipped
  - Outbox intents confirmed by matching signatures
  - EventIndexer.sync against an in-memory source and a JSON-RPC fake
  - Reconciliation reports drift without correcting it
"""

from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from stakeflow_core.errors import SchedulerJobFailed
from stakeflow_core.models import IntentStatus
from stakeflow_core.reconciliation import (
    UNKNOWN_INSTRUCTION,
    HTTPEventSource,
    SignatureInfo,
    StreamEvent,
    classify_instruction,
)
from tests.conftest import ONE_TOKEN, T0


def _event(sig: str, kind: str = "Stake", slot: int = 10, **kw) -> StreamEvent:
    return StreamEvent(sig, kind, slot, T0, **kw)


@pytest.fixture
def submitted(engine, opened):
    """The OPEN intent for alice's position, submitted as ``sig-open``."""
    intent = engine.store.get_intent(opened.intent_id)
    engine.outbox.mark_submitted(intent, "sig-open")
    return intent


# ═══════════════════════════════════════════════════════════════════
#  Classification
# ═══════════════════════════════════════════════════════════════════

class TestClassify:
    def test_known_instruction(self):
        logs = [
            "Program Stk1 invoke [1]",
            "Program log: Instruction: ClaimRewards",
            "Program Stk1 success",
        ]
        assert classify_instruction(logs) == "ClaimRewards"

    def test_first_known_wins(self):
        logs = ["Program log: Instruction: Transfer", "Program log: Instruction: Unstake"]
        assert classify_instruction(logs) == "Unstake"

    def test_unknown(self):
        assert classify_instruction(["Program log: hello"]) == UNKNOWN_INSTRUCTION
        assert classify_instruction([]) == UNKNOWN_INSTRUCTION


# ═══════════════════════════════════════════════════════════════════
#  Ingest
# ═══════════════════════════════════════════════════════════════════

class TestIngest:
    def test_new_event_stored_confirmed(self, engine):
        report = engine.indexer.ingest([_event("s1")], now=T0)
        assert report.indexed == ["s1"]
        stored = engine.store.get_event("s1")
        assert stored.instruction == "Stake"
        assert not stored.finalized

    def test_redelivery_not_duplicated(self, engine):
        engine.indexer.ingest([_event("s1")], now=T0)
        report = engine.indexer.ingest([_event("s1"), _event("s1")], now=T0 + 5)
        assert report.indexed == []
        assert report.duplicates == 2
        assert engine.store.count_events() == 1

    def test_finalized_upgrade(self, engine):
        engine.indexer.ingest([_event("s1")], now=T0)
        report = engine.indexer.ingest([_event("s1", finalized=True)], now=T0 + 5)
        assert report.upgraded == ["s1"]
        assert engine.store.get_event("s1").finalized
        assert engine.store.count_events(finalized=True) == 1

    def test_finalized_never_downgraded(self, engine):
        engine.indexer.ingest([_event("s1", finalized=True)], now=T0)
        report = engine.indexer.ingest([_event("s1")], now=T0 + 5)
        assert report.duplicates == 1
        assert engine.store.get_event("s1").finalized

    def test_failed_transaction_skipped(self, engine):
        report = engine.indexer.ingest([_event("bad", failed=True)], now=T0)
        assert report.skipped == 1
        assert engine.store.get_event("bad") is None

    def test_intent_confirmed_then_finalized(self, engine, submitted):
        engine.indexer.ingest([_event("sig-open")], now=T0)
        assert engine.store.get_intent(submitted.intent_id).status == IntentStatus.CONFIRMED
        engine.indexer.ingest([_event("sig-open", finalized=True)], now=T0 + 30)
        assert engine.store.get_intent(submitted.intent_id).status == IntentStatus.FINALIZED

    def test_events_do_not_touch_totals(self, engine, opened):
        before = engine.ledger.snapshot().to_dict()
        engine.indexer.ingest([_event("s1", kind="Unstake", finalized=True)], now=T0)
        assert engine.ledger.snapshot().to_dict() == before


# ═══════════════════════════════════════════════════════════════════
#  Sync from a source
# ═══════════════════════════════════════════════════════════════════

class _MemorySource:
    """In-memory stand-in for the ledger node."""

    def __init__(self):
        self.infos: list[SignatureInfo] = []
        self.kinds: dict[str, str] = {}
        self.final: set[str] = set()
        self.fetched: list[str] = []

    def add(self, sig: str, kind: str = "Stake", slot: int = 1, failed: bool = False):
        self.infos.append(SignatureInfo(sig, slot, T0, failed, sig in self.final))
        self.kinds[sig] = kind

    async def recent_signatures(self, limit: int):
        return self.infos[:limit]

    async def fetch_event(self, info: SignatureInfo):
        self.fetched.append(info.signature)
        return StreamEvent(
            info.signature, self.kinds[info.signature], info.slot, T0,
            finalized=info.finalized,
        )

    async def finality(self, signatures):
        return {sig: sig in self.final for sig in signatures}


@pytest.mark.asyncio
class TestSync:
    async def test_sync_without_source(self, engine):
        with pytest.raises(RuntimeError):
            await engine.sync_events(now=T0)

    async def test_sync_indexes_and_skips(self, engine):
        source = _MemorySource()
        source.add("s1", "Stake", slot=3)
        source.add("s2", "ClaimRewards", slot=4)
        source.add("s3", "Unstake", slot=5, failed=True)
        engine.indexer.source = source

        report = await engine.sync_events(now=T0)
        assert sorted(report.indexed) == ["s1", "s2"]
        assert report.skipped == 1
        assert source.fetched == ["s1", "s2"]
        assert engine.indexer.last_sync_ts == T0

        status = engine.indexer_status()
        assert status["events"] == 2
        assert status["latest_slot"] == 4
        assert status["by_instruction"] == {"ClaimRewards": 1, "Stake": 1}

    async def test_resync_upgrades_without_refetch(self, engine):
        source = _MemorySource()
        source.add("s1")
        engine.indexer.source = source
        await engine.sync_events(now=T0)

        source.final.add("s1")
        report = await engine.sync_events(now=T0 + 60)
        assert report.indexed == []
        assert report.upgraded == ["s1"]
        assert source.fetched == ["s1"]
        assert engine.store.get_event("s1").finalized

    async def test_source_failure_recorded(self, engine):
        class Broken(_MemorySource):
            async def recent_signatures(self, limit):
                raise SchedulerJobFailed("node down")

        engine.indexer.source = Broken()
        with pytest.raises(SchedulerJobFailed):
            await engine.sync_events(now=T0)
        assert engine.indexer_status()["last_error"] == "node down"
        assert engine.indexer.last_sync_ts is None


# ═══════════════════════════════════════════════════════════════════
#  JSON-RPC source
# ═══════════════════════════════════════════════════════════════════

def _rpc_app(fail_status: int = 0, rpc_error: bool = False):
    calls: list = []

    async def handle(request: web.Request) -> web.Response:
        body = await request.json()
        calls.append(body["method"])
        if fail_status:
            return web.Response(status=fail_status, text="unavailable")
        if rpc_error:
            return web.json_response({
                "jsonrpc": "2.0", "id": body["id"],
                "error": {"code": -32005, "message": "node is behind"},
            })
        method, params = body["method"], body["params"]
        if method == "getSignaturesForAddress":
            result = [
                {"signature": "s1", "slot": 7, "blockTime": T0, "err": None,
                 "confirmationStatus": "confirmed"},
                {"signature": "s2", "slot": 8, "blockTime": T0,
                 "err": {"InstructionError": [0, "Custom"]},
                 "confirmationStatus": "confirmed"},
            ]
        elif method == "getTransaction":
            result = {
                "slot": 7,
                "blockTime": T0,
                "meta": {
                    "err": None,
                    "logMessages": ["Program log: Instruction: Stake"],
                },
                "transaction": {"message": {"accountKeys": ["owner", "position"]}},
            }
        elif method == "getSignatureStatuses":
            result = {"value": [{"confirmationStatus": "finalized"} for _ in params[0]]}
        else:
            result = None
        return web.json_response({"jsonrpc": "2.0", "id": body["id"], "result": result})

    app = web.Application()
    app.router.add_post("/", handle)
    return app, calls


@pytest.mark.asyncio
class TestHTTPEventSource:
    async def _sync(self, engine, app):
        server = TestServer(app)
        await server.start_server()
        source = HTTPEventSource(str(server.make_url("/")), "stakeflow-program", timeout=5)
        engine.indexer.source = source
        try:
            return await engine.sync_events(now=T0)
        finally:
            await source.close()
            await server.close()

    async def test_sync_over_rpc(self, engine):
        app, calls = _rpc_app()
        report = await self._sync(engine, app)
        assert report.indexed == ["s1"]
        assert report.upgraded == ["s1"]
        assert report.skipped == 1
        assert calls == ["getSignaturesForAddress", "getTransaction", "getSignatureStatuses"]

        stored = engine.store.get_event("s1")
        assert stored.instruction == "Stake"
        assert stored.finalized
        assert stored.payload == {"accounts": ["owner", "position"]}

    async def test_http_error_is_retryable(self, engine):
        app, _ = _rpc_app(fail_status=503)
        with pytest.raises(SchedulerJobFailed) as exc_info:
            await self._sync(engine, app)
        assert exc_info.value.retryable

    async def test_rpc_error_surfaces(self, engine):
        app, _ = _rpc_app(rpc_error=True)
        with pytest.raises(SchedulerJobFailed) as exc_info:
            await self._sync(engine, app)
        assert "node is behind" in str(exc_info.value)
        assert engine.indexer.last_error


# ═══════════════════════════════════════════════════════════════════
#  Reconciliation
# ═══════════════════════════════════════════════════════════════════

class TestReconcile:
    def test_consistent(self, engine, opened):
        report = engine.reconcile()
        assert report.consistent
        assert report.to_dict()["divergences"] == []

    def test_reports_divergence_without_correcting(self, engine, opened):
        state = engine.ledger.snapshot()
        state.total_staking_power -= 1
        engine.store.update_global_state(state)

        report = engine.reconcile()
        assert not report.consistent
        assert [d.field for d in report.divergences] == ["total_staking_power"]
        assert engine.ledger.snapshot().total_staking_power == 3 * ONE_TOKEN // 2 - 1

    def test_counts_failed_and_unconfirmed(self, engine, submitted):
        other = engine.open_position("bob", ONE_TOKEN, 3, 1, seed=2, now=T0)
        intent = engine.store.get_intent(other.intent_id)
        engine.outbox.record_failure(
            intent, SchedulerJobFailed("rejected", retryable=False), T0,
        )
        report = engine.reconcile()
        assert report.failed_intents == 1
        assert report.unconfirmed_intents == 1
