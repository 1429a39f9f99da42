"""
Ledger event indexing and reconciliation for StakeFlow.

The external ledger is authoritative for what actually executed.  The
indexer records every program event it sees, keyed by signature:

  - an unseen signature is stored at ``confirmed`` commitment;
  - a redelivered signature is never stored twice, and is only upgraded
    to ``finalized`` once the source reports finality;
  - events whose execution failed are skipped.

Each stored event moves the matching outbox intent (same signature) to
``confirmed`` / ``finalized``.  The event table is an audit trail: it
never drives GlobalState.  ``reconcile()`` compares the recorded totals
with the positions and reports divergences without correcting them.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Any, Iterable, NamedTuple, Optional, Protocol

import aiohttp

from stakeflow_core.aggregates import Divergence, GlobalLedger
from stakeflow_core.errors import SchedulerJobFailed
from stakeflow_core.models import Commitment, IntentStatus, LedgerEvent
from stakeflow_core.storage import StakingStore
from stakeflow_core.submission import IntentOutbox

logger = logging.getLogger("stakeflow_indexer")

KNOWN_INSTRUCTIONS: frozenset[str] = frozenset({
    "Stake",
    "Unstake",
    "FinalizeUnstake",
    "ClaimRewards",
    "VestReward",
    "CreateTier",
    "Pause",
    "Unpause",
})
UNKNOWN_INSTRUCTION = "Unknown"

_INSTRUCTION_LOG = re.compile(r"Instruction: (\w+)")


def classify_instruction(logs: Iterable[str]) -> str:
    """Name of the first known program instruction found in *logs*."""
    for line in logs:
        match = _INSTRUCTION_LOG.search(line)
        if match and match.group(1) in KNOWN_INSTRUCTIONS:
            return match.group(1)
    return UNKNOWN_INSTRUCTION


class StreamEvent(NamedTuple):
    signature: str
    instruction_kind: str
    slot: int
    timestamp: int
    finalized: bool = False
    failed: bool = False
    payload: Optional[dict[str, Any]] = None


class SignatureInfo(NamedTuple):
    signature: str
    slot: int
    timestamp: Optional[int]
    failed: bool
    finalized: bool


# ── event sources ───────────────────────────────────────────────────────

class EventSource(Protocol):
    async def recent_signatures(self, limit: int) -> list[SignatureInfo]:
        ...

    async def fetch_event(self, info: SignatureInfo) -> Optional[StreamEvent]:
        ...

    async def finality(self, signatures: list[str]) -> dict[str, bool]:
        ...


class HTTPEventSource:
    """
    JSON-RPC client for the ledger node.

    Uses ``getSignaturesForAddress`` to list recent program activity,
    ``getTransaction`` to fetch the logs of an unseen signature and
    ``getSignatureStatuses`` to learn about finality.
    """

    def __init__(self, rpc_url: str, program_id: str, timeout: float = 30.0) -> None:
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None
        self._ids = itertools.count(1)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def _rpc(self, method: str, params: list[Any]) -> Any:
        session = await self._get_session()
        body = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        try:
            async with session.post(self.rpc_url, json=body) as resp:
                if resp.status >= 400:
                    raise SchedulerJobFailed(
                        f"RPC {method} HTTP {resp.status}",
                        retryable=resp.status >= 500 or resp.status == 429,
                    )
                reply = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SchedulerJobFailed(f"RPC {method} transport error: {exc!r}") from exc
        except ValueError as exc:
            raise SchedulerJobFailed(
                f"RPC {method} returned malformed JSON", retryable=False,
            ) from exc
        if not isinstance(reply, dict):
            raise SchedulerJobFailed(f"RPC {method} reply is not an object", retryable=False)
        if reply.get("error"):
            raise SchedulerJobFailed(f"RPC {method} error: {reply['error']}")
        return reply.get("result")

    async def recent_signatures(self, limit: int) -> list[SignatureInfo]:
        result = await self._rpc(
            "getSignaturesForAddress",
            [self.program_id, {"limit": limit, "commitment": "confirmed"}],
        )
        out: list[SignatureInfo] = []
        for item in result or []:
            out.append(SignatureInfo(
                signature=item["signature"],
                slot=int(item.get("slot") or 0),
                timestamp=item.get("blockTime"),
                failed=item.get("err") is not None,
                finalized=item.get("confirmationStatus") == "finalized",
            ))
        return out

    async def fetch_event(self, info: SignatureInfo) -> Optional[StreamEvent]:
        tx = await self._rpc(
            "getTransaction",
            [info.signature, {"maxSupportedTransactionVersion": 0,
                              "commitment": "confirmed"}],
        )
        if not tx:
            return None
        meta = tx.get("meta") or {}
        logs = meta.get("logMessages") or []
        accounts = (
            (tx.get("transaction") or {}).get("message", {}).get("accountKeys") or []
        )
        return StreamEvent(
            signature=info.signature,
            instruction_kind=classify_instruction(logs),
            slot=int(tx.get("slot") or info.slot),
            timestamp=int(tx.get("blockTime") or info.timestamp or time.time()),
            finalized=info.finalized,
            failed=meta.get("err") is not None,
            payload={"accounts": [str(a) for a in accounts]},
        )

    async def finality(self, signatures: list[str]) -> dict[str, bool]:
        if not signatures:
            return {}
        result = await self._rpc(
            "getSignatureStatuses",
            [signatures, {"searchTransactionHistory": True}],
        )
        statuses = (result or {}).get("value") or []
        return {
            sig: bool(st) and st.get("confirmationStatus") == "finalized"
            for sig, st in zip(signatures, statuses)
        }

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


# ── reports ─────────────────────────────────────────────────────────────

@dataclass
class IngestReport:
    indexed: list[str] = field(default_factory=list)
    upgraded: list[str] = field(default_factory=list)
    duplicates: int = 0
    skipped: int = 0

    def merge(self, other: IngestReport) -> None:
        self.indexed.extend(other.indexed)
        self.upgraded.extend(other.upgraded)
        self.duplicates += other.duplicates
        self.skipped += other.skipped

    def to_dict(self) -> dict[str, Any]:
        return {
            "indexed": len(self.indexed),
            "upgraded": len(self.upgraded),
            "duplicates": self.duplicates,
            "skipped": self.skipped,
        }


@dataclass
class ReconciliationReport:
    divergences: list[Divergence]
    failed_intents: int
    unconfirmed_intents: int
    events: int

    @property
    def consistent(self) -> bool:
        return not self.divergences

    def to_dict(self) -> dict[str, Any]:
        return {
            "consistent": self.consistent,
            "divergences": [d.to_dict() for d in self.divergences],
            "failed_intents": self.failed_intents,
            "unconfirmed_intents": self.unconfirmed_intents,
            "events": self.events,
        }


# ── indexer ─────────────────────────────────────────────────────────────

class EventIndexer:
    """De-duplicating event ingestion plus read-only reconciliation."""

    def __init__(
        self,
        store: StakingStore,
        outbox: IntentOutbox,
        ledger: GlobalLedger,
        source: Optional[EventSource] = None,
        batch_size: int = 50,
    ) -> None:
        self.store = store
        self.outbox = outbox
        self.ledger = ledger
        self.source = source
        self.batch_size = batch_size
        self.last_sync_ts: Optional[int] = None
        self.last_error = ""

    def _ingest_one(self, event: StreamEvent, now: int, report: IngestReport) -> None:
        if event.failed:
            logger.warning(f"Skipping failed transaction {event.signature}")
            report.skipped += 1
            return
        with self.store.transaction():
            existing = self.store.get_event(event.signature)
            if existing is not None:
                if event.finalized and not existing.finalized:
                    self.store.mark_event_finalized(event.signature)
                    self.outbox.confirm_signature(event.signature, finalized=True)
                    report.upgraded.append(event.signature)
                else:
                    report.duplicates += 1
                return
            self.store.insert_event(LedgerEvent(
                signature=event.signature,
                instruction=event.instruction_kind,
                slot=event.slot,
                timestamp=event.timestamp,
                commitment=Commitment.CONFIRMED,
                payload=dict(event.payload or {}),
                ingested_ts=now,
            ))
            if event.finalized:
                self.store.mark_event_finalized(event.signature)
            self.outbox.confirm_signature(event.signature, finalized=event.finalized)
        report.indexed.append(event.signature)
        logger.info(
            f"Indexed {event.instruction_kind} event (slot {event.slot})",
            extra={"signature": event.signature},
        )

    def ingest(
        self, events: Iterable[StreamEvent], now: Optional[int] = None,
    ) -> IngestReport:
        if now is None:
            now = int(time.time())
        report = IngestReport()
        for event in events:
            self._ingest_one(event, now, report)
        return report

    async def sync(self, now: Optional[int] = None) -> IngestReport:
        """Pull recent signatures from the source and ingest what is new."""
        if self.source is None:
            raise RuntimeError("EventIndexer has no event source configured")
        if now is None:
            now = int(time.time())

        report = IngestReport()
        try:
            infos = await self.source.recent_signatures(self.batch_size)
            fresh: list[StreamEvent] = []
            for info in infos:
                existing = await asyncio.to_thread(self.store.get_event, info.signature)
                if existing is not None:
                    fresh.append(StreamEvent(
                        info.signature, existing.instruction, existing.slot,
                        existing.timestamp, finalized=info.finalized,
                    ))
                    continue
                if info.failed:
                    report.skipped += 1
                    continue
                event = await self.source.fetch_event(info)
                if event is None:
                    logger.warning(f"Could not fetch transaction {info.signature}")
                    continue
                fresh.append(event)
            report.merge(await asyncio.to_thread(self.ingest, fresh, now))

            unfinalized = await asyncio.to_thread(
                self.store.unfinalized_signatures, self.batch_size,
            )
            pending = [sig for sig in unfinalized if sig not in report.upgraded]
            finality = await self.source.finality(pending)
            upgrades = []
            for sig, final in finality.items():
                if not final:
                    continue
                existing = await asyncio.to_thread(self.store.get_event, sig)
                if existing is not None and not existing.finalized:
                    upgrades.append(StreamEvent(
                        sig, existing.instruction, existing.slot,
                        existing.timestamp, finalized=True,
                    ))
            report.merge(await asyncio.to_thread(self.ingest, upgrades, now))
        except SchedulerJobFailed as exc:
            self.last_error = exc.message
            raise
        self.last_sync_ts = now
        self.last_error = ""
        if report.indexed or report.upgraded:
            logger.info(
                f"Indexer sync: {len(report.indexed)} new, "
                f"{len(report.upgraded)} finalized, {report.duplicates} duplicate(s)"
            )
        return report

    def status(self) -> dict[str, Any]:
        return {
            "source_configured": self.source is not None,
            "last_sync_ts": self.last_sync_ts,
            "last_error": self.last_error,
            "events": self.store.count_events(),
            "finalized_events": self.store.count_events(finalized=True),
            "latest_slot": self.store.latest_event_slot(),
            "by_instruction": self.store.event_counts(),
        }

    def reconcile(self) -> ReconciliationReport:
        """Surface drift between totals, positions and the ledger; never corrects."""
        divergences = self.ledger.check_consistency()
        for d in divergences:
            logger.warning(
                f"Aggregate divergence on {d.field}: recorded {d.recorded}, "
                f"positions sum to {d.expected} (delta {d.delta})"
            )
        failed = self.outbox.failed_intents()
        if failed:
            logger.warning(
                f"{len(failed)} ledger intent(s) failed permanently; "
                f"manual intervention required"
            )
        unconfirmed = len(self.store.list_intents(IntentStatus.SUBMITTED))
        return ReconciliationReport(
            divergences=divergences,
            failed_intents=len(failed),
            unconfirmed_intents=unconfirmed,
            events=self.store.count_events(),
        )
