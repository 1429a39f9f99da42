"""
Periodic jobs for StakeFlow.

Jobs
────
  ``EpochAdvancer``       weekly: recompute emission, move every active
                          position's accrual clock to the epoch boundary
  ``CooldownFinalizer``   hourly: release positions whose cooldown ended
                          and whose owner never finalized
  ``SubmissionRetrier``   (submission.py) drain the intent outbox
  ``EventIndexer.sync``   (reconciliation.py) pull ledger events

Every job is idempotent: the epoch advance is gated on time elapsed since
``epoch_start_ts``, and the cooldown sweep re-reads each position inside
its own transaction before handing it to the shared release routine.
Two overlapping runs therefore do the work once.

``JobScheduler`` runs each job on its own asyncio task.  A job that
raises is logged with its traceback and retried on the next tick.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from stakeflow_core.aggregates import GlobalLedger
from stakeflow_core.config import SchedulerConfig, StakingConfig
from stakeflow_core.models import IntentKind
from stakeflow_core.reward_math import weekly_emission
from stakeflow_core.storage import StakingStore
from stakeflow_core.submission import IntentOutbox

logger = logging.getLogger("stakeflow_scheduler")

COMPLETED = "completed"
SKIPPED = "skipped"
FAILED = "failed"


@dataclass
class JobResult:
    job: str
    status: str
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.status == SKIPPED

    def to_dict(self) -> dict[str, Any]:
        return {"job": self.job, "status": self.status, **self.details}


# ═══════════════════════════════════════════════════════════════════════
#  Epoch advance
# ═══════════════════════════════════════════════════════════════════════

class EpochAdvancer:
    name = "epoch_advance"

    def __init__(
        self,
        store: StakingStore,
        ledger: GlobalLedger,
        staking: Optional[StakingConfig] = None,
        epoch_interval: Optional[int] = None,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.staking = staking or StakingConfig()
        self.epoch_interval = (
            epoch_interval if epoch_interval is not None
            else SchedulerConfig().epoch_interval
        )

    def run(self, now: Optional[int] = None) -> JobResult:
        if now is None:
            now = int(time.time())
        with self.store.transaction():
            state = self.store.load_global_state()
            if state.paused:
                logger.info("Program paused, skipping epoch advance")
                return JobResult(self.name, SKIPPED, {"reason": "paused"})
            elapsed = now - state.epoch_start_ts
            if elapsed < self.epoch_interval:
                return JobResult(self.name, SKIPPED, {
                    "reason": "epoch_not_elapsed",
                    "epoch": state.epoch,
                    "next_epoch_in": self.epoch_interval - elapsed,
                })
            emission = weekly_emission(
                state.reward_pool_balance,
                self.staking.weekly_emission_rate_bp,
                self.staking.emission_precision,
            )
            touched = self.store.touch_active_accruals(now)
            state = self.ledger.advance_epoch(emission, now)

        logger.info(
            f"Epoch {state.epoch} started: weekly emission {emission}, "
            f"{touched} position(s) accrued",
            extra={"job": self.name},
        )
        return JobResult(self.name, COMPLETED, {
            "epoch": state.epoch,
            "weekly_emission": emission,
            "positions_touched": touched,
        })


# ═══════════════════════════════════════════════════════════════════════
#  Cooldown finalizer
# ═══════════════════════════════════════════════════════════════════════

class CooldownFinalizer:
    name = "cooldown_finalizer"

    def __init__(
        self, store: StakingStore, ledger: GlobalLedger, outbox: IntentOutbox,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.outbox = outbox

    def _finalize_one(self, position_id: str, now: int) -> bool:
        with self.store.transaction():
            position = self.store.get_position_by_id(position_id)
            if (
                position is None
                or position.active
                or position.cooldown_end_ts is None
                or position.cooldown_end_ts > now
                or not position.pending_principal
            ):
                return False
            release = self.ledger.release_position(position, now)
            if release is None:
                return False
            self.outbox.enqueue(
                IntentKind.FINALIZE_CLOSE, position.owner, position.address,
                position.position_seed,
                {"returned_principal": release.returned_principal, "trigger": "sweep"},
                now,
            )
        return True

    def run(self, now: Optional[int] = None) -> JobResult:
        if now is None:
            now = int(time.time())
        due = self.store.cooldowns_due(now)
        finalized: list[str] = []
        failed: list[str] = []
        for position in due:
            try:
                if self._finalize_one(position.position_id, now):
                    finalized.append(position.address)
            except Exception:
                logger.exception(
                    f"Failed to finalize cooldown for {position.address}",
                    extra={"job": self.name, "position": position.position_id},
                )
                failed.append(position.address)

        if finalized or failed:
            logger.info(
                f"Cooldown sweep: {len(finalized)} finalized, {len(failed)} failed",
                extra={"job": self.name},
            )
        return JobResult(self.name, COMPLETED, {
            "finalized": len(finalized),
            "failed": len(failed),
            "addresses": finalized,
        })


# ═══════════════════════════════════════════════════════════════════════
#  Async runner
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class ScheduledJob:
    name: str
    interval: float
    run: Callable[..., Any]
    next_run: float = 0.0
    last_run: Optional[float] = None
    last_result: Optional[dict[str, Any]] = None
    last_error: str = ""
    runs: int = 0
    errors: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "interval": self.interval,
            "last_run": self.last_run,
            "next_run": self.next_run,
            "last_result": self.last_result,
            "last_error": self.last_error,
            "runs": self.runs,
            "errors": self.errors,
        }


def _as_dict(result: Any) -> Optional[dict[str, Any]]:
    if result is None:
        return None
    if hasattr(result, "to_dict"):
        return result.to_dict()
    if isinstance(result, dict):
        return result
    return {"result": result}


class JobScheduler:
    """
    Runs registered jobs on independent asyncio tasks.

    Synchronous jobs (the SQLite-backed epoch and cooldown jobs) run in a
    worker thread so the event loop keeps serving the async ones.
    """

    def __init__(self) -> None:
        self.jobs: dict[str, ScheduledJob] = {}
        self._tasks: list[asyncio.Task] = []
        self._running = False

    def add_job(self, name: str, interval: float, run: Callable[..., Any]) -> ScheduledJob:
        if name in self.jobs:
            raise ValueError(f"Job {name} already registered")
        if interval <= 0:
            raise ValueError("Job interval must be positive")
        job = ScheduledJob(name=name, interval=interval, run=run)
        self.jobs[name] = job
        return job

    async def _execute(self, job: ScheduledJob, now: int) -> Any:
        if inspect.iscoroutinefunction(job.run):
            result = await job.run(now)
        else:
            result = await asyncio.to_thread(job.run, now)
        job.runs += 1
        job.last_run = now
        job.next_run = now + job.interval
        job.last_result = _as_dict(result)
        job.last_error = ""
        return result

    async def run_job(self, name: str, now: Optional[int] = None) -> Any:
        """Run one job immediately, outside its schedule."""
        if now is None:
            now = int(time.time())
        return await self._execute(self.jobs[name], now)

    async def run_due(self, now: Optional[int] = None) -> dict[str, Any]:
        """Single pass: run every job whose next run time has come."""
        if now is None:
            now = int(time.time())
        results: dict[str, Any] = {}
        for job in self.jobs.values():
            if job.next_run > now:
                continue
            try:
                results[job.name] = await self._execute(job, now)
            except Exception as exc:
                self._record_error(job, exc)
                results[job.name] = JobResult(job.name, FAILED, {"error": str(exc)})
        return results

    def _record_error(self, job: ScheduledJob, exc: Exception) -> None:
        job.errors += 1
        job.last_error = str(exc)
        logger.exception(f"Job {job.name} failed", extra={"job": job.name})

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> None:
        self._running = True
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._job_loop(job)))
        logger.info(f"JobScheduler started with {len(self.jobs)} job(s)")

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()
        logger.info("JobScheduler stopped")

    @property
    def running(self) -> bool:
        return self._running

    async def _job_loop(self, job: ScheduledJob) -> None:
        while self._running:
            try:
                await self._execute(job, int(time.time()))
            except asyncio.CancelledError:
                break
            except Exception as exc:
                self._record_error(job, exc)
            try:
                await asyncio.sleep(job.interval)
            except asyncio.CancelledError:
                break

    def status(self) -> dict[str, Any]:
        return {
            "running": self._running,
            "jobs": [job.to_dict() for job in self.jobs.values()],
        }
