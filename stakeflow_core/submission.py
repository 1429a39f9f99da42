"""
External-ledger submission for StakeFlow.

Local lifecycle transitions commit first; the on-ledger transaction is a
separate, asynchronous concern.  Each committed transition writes a
``LedgerIntent`` into the outbox inside the same store transaction.  The
``SubmissionRetrier`` job later hands pending intents to a
``LedgerSubmitter`` without holding any position lock.

Retry policy
────────────
A failed submission increments ``attempts`` and is rescheduled
``backoff_base × 2^attempts`` seconds later.  Once ``attempts`` reaches
``max_attempts`` the intent is marked ``failed`` and surfaced through
``IntentOutbox.failed_intents()`` for manual intervention.  Failures
flagged non-retryable (4xx responses, malformed replies) fail at once.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import aiohttp

from stakeflow_core.errors import SchedulerJobFailed
from stakeflow_core.models import IntentKind, IntentStatus, LedgerIntent
from stakeflow_core.storage import StakingStore

logger = logging.getLogger("stakeflow_submission")

DEFAULT_MAX_ATTEMPTS = 5


def backoff_delay(attempt: int, base: int = 1) -> int:
    """Seconds to wait before retry number *attempt* (1-based)."""
    return base * (2 ** attempt)


class IntentOutbox:
    """Outbox table access: enqueue inside transitions, drain from jobs."""

    def __init__(self, store: StakingStore) -> None:
        self.store = store

    def enqueue(
        self,
        kind: IntentKind,
        owner: str,
        address: str,
        seed: int,
        payload: dict[str, Any],
        now: int,
    ) -> LedgerIntent:
        intent = LedgerIntent(
            intent_id=uuid.uuid4().hex,
            kind=kind,
            owner=owner,
            address=address,
            seed=seed,
            payload=payload,
            next_attempt_ts=now,
            created_ts=now,
        )
        self.store.insert_intent(intent)
        return intent

    def due(self, now: int, limit: int = 100) -> list[LedgerIntent]:
        return self.store.due_intents(now, limit)

    def mark_submitted(self, intent: LedgerIntent, signature: str) -> None:
        intent.status = IntentStatus.SUBMITTED
        intent.signature = signature
        intent.last_error = ""
        self.store.update_intent(intent)

    def record_failure(
        self,
        intent: LedgerIntent,
        error: SchedulerJobFailed,
        now: int,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: int = 1,
    ) -> LedgerIntent:
        intent.attempts += 1
        intent.last_error = error.message
        if not error.retryable or intent.attempts >= max_attempts:
            intent.status = IntentStatus.FAILED
            logger.error(
                f"Intent {intent.intent_id} ({intent.kind.value} {intent.address}) "
                f"permanently failed after {intent.attempts} attempt(s): "
                f"{error.message}; manual intervention required"
            )
        else:
            intent.next_attempt_ts = now + backoff_delay(intent.attempts, backoff_base)
            logger.warning(
                f"Intent {intent.intent_id} attempt {intent.attempts} failed "
                f"({error.message}); retrying at {intent.next_attempt_ts}"
            )
        self.store.update_intent(intent)
        return intent

    def confirm_signature(self, signature: str, finalized: bool) -> Optional[LedgerIntent]:
        """Move the intent behind *signature* to confirmed / finalized."""
        intent = self.store.get_intent_by_signature(signature)
        if intent is None:
            return None
        target = IntentStatus.FINALIZED if finalized else IntentStatus.CONFIRMED
        if intent.status in (IntentStatus.FINALIZED, target):
            return intent
        intent.status = target
        self.store.update_intent(intent)
        return intent

    def failed_intents(self) -> list[LedgerIntent]:
        return self.store.list_intents(IntentStatus.FAILED)

    def pending_intents(self) -> list[LedgerIntent]:
        return self.store.list_intents(IntentStatus.PENDING)


# ── submitters ──────────────────────────────────────────────────────────

class LedgerSubmitter(Protocol):
    async def submit(self, intent: LedgerIntent) -> str:
        """Submit *intent*; return the external signature.

        Raises ``SchedulerJobFailed`` on failure.
        """
        ...


class HTTPLedgerSubmitter:
    """
    Posts intents as JSON to the ledger submission service.

    ``POST {base_url}/intents`` with ``intent.to_dict()``; a 2xx reply
    must carry ``{"signature": "..."}``.
    """

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def submit(self, intent: LedgerIntent) -> str:
        session = await self._get_session()
        try:
            async with session.post(
                f"{self.base_url}/intents", json=intent.to_dict(),
            ) as resp:
                if resp.status >= 500:
                    raise SchedulerJobFailed(
                        f"Submission service error {resp.status}", retryable=True,
                    )
                if resp.status >= 400:
                    text = await resp.text()
                    raise SchedulerJobFailed(
                        f"Submission rejected {resp.status}: {text[:200]}",
                        retryable=False,
                    )
                body = await resp.json(content_type=None)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise SchedulerJobFailed(
                f"Submission transport error: {exc!r}", retryable=True,
            ) from exc
        except ValueError as exc:
            raise SchedulerJobFailed(
                f"Malformed submission reply: {exc}", retryable=False,
            ) from exc
        signature = body.get("signature") if isinstance(body, dict) else None
        if not signature:
            raise SchedulerJobFailed("Submission reply lacks a signature", retryable=False)
        return str(signature)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()


# ── retry job ───────────────────────────────────────────────────────────

@dataclass
class SubmissionReport:
    submitted: list[str] = field(default_factory=list)
    rescheduled: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "submitted": len(self.submitted),
            "rescheduled": len(self.rescheduled),
            "failed": len(self.failed),
            "failed_intents": list(self.failed),
        }


class SubmissionRetrier:
    """Drains due intents through a submitter with bounded backoff."""

    def __init__(
        self,
        outbox: IntentOutbox,
        submitter: LedgerSubmitter,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        backoff_base: int = 1,
        batch_size: int = 100,
    ) -> None:
        self.outbox = outbox
        self.submitter = submitter
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.batch_size = batch_size

    async def _record_failure(
        self,
        intent: LedgerIntent,
        error: SchedulerJobFailed,
        now: int,
        report: SubmissionReport,
    ) -> None:
        await asyncio.to_thread(
            self.outbox.record_failure,
            intent, error, now, self.max_attempts, self.backoff_base,
        )
        if intent.status == IntentStatus.FAILED:
            report.failed.append(intent.intent_id)
        else:
            report.rescheduled.append(intent.intent_id)

    async def run(self, now: Optional[int] = None) -> SubmissionReport:
        if now is None:
            now = int(time.time())
        report = SubmissionReport()
        # store calls take the store lock; keep them off the event loop
        due = await asyncio.to_thread(self.outbox.due, now, self.batch_size)
        for intent in due:
            try:
                signature = await self.submitter.submit(intent)
            except SchedulerJobFailed as exc:
                await self._record_failure(intent, exc, now, report)
                continue
            except Exception as exc:
                logger.exception(
                    f"Submitter raised for intent {intent.intent_id}",
                    extra={"intent": intent.intent_id},
                )
                await self._record_failure(
                    intent, SchedulerJobFailed(str(exc), retryable=True), now, report,
                )
                continue
            await asyncio.to_thread(self.outbox.mark_submitted, intent, signature)
            report.submitted.append(intent.intent_id)
            logger.info(
                f"Submitted {intent.kind.value} for {intent.address}: {signature}"
            )
        return report
