"""
Scheduler Driver: fires due automation schedules.

One coordinating asyncio task polls the store every ``POLL_INTERVAL``
seconds, recovers claims abandoned by crashed runs, and pushes due
schedule ids onto a queue drained by ``MAX_CONCURRENCY`` worker tasks.

A worker never runs a schedule without first winning its claim
(compare-and-set in the store), so two processes polling the same
database cannot open overlapping executions for one schedule.

Usage:
    from wpautopilot.scheduler import get_scheduler

    scheduler = get_scheduler()
    await scheduler.start()
    ...
    await scheduler.stop()
"""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Optional

from wpautopilot.config import (
    CLAIM_GRACE_SECONDS,
    MAX_CONCURRENCY,
    POLL_INTERVAL,
    SHUTDOWN_TIMEOUT,
)
from wpautopilot.errors import (
    ConcurrencyError,
    LedgerError,
    NotFoundError,
    describe_error,
)
from wpautopilot.ledger import ExecutionLedger, outcome_for
from wpautopilot.models import AutomationExecution, AutomationSchedule
from wpautopilot.runner import RunResult, ScheduleRunner
from wpautopilot.schedule_engine import compute_next_run

logger = logging.getLogger("scheduler")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

PENDING_JOBS_PER_TICK = 10


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


class AutomationScheduler:
    """
    Poll loop plus a bounded worker pool.

    Parameters
    ----------
    store : Store, optional
    runner : ScheduleRunner, optional
    ledger : ExecutionLedger, optional
    jobs : JobService, optional
        Processes PENDING jobs queued outside schedule runs.
    clock : callable, optional
        Returns the current aware UTC datetime.
    """

    def __init__(
        self,
        store=None,
        runner: Optional[ScheduleRunner] = None,
        ledger: Optional[ExecutionLedger] = None,
        jobs=None,
        clock: Callable[[], datetime] = _now_utc,
        poll_interval: int = POLL_INTERVAL,
        max_concurrency: int = MAX_CONCURRENCY,
        claim_grace_seconds: int = CLAIM_GRACE_SECONDS,
    ) -> None:
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        if jobs is None:
            from wpautopilot.jobs import JobService
            jobs = JobService(store)
        self.store = store
        self.runner = runner or ScheduleRunner(store, pipeline=jobs.pipeline)
        self.ledger = ledger or ExecutionLedger(store)
        self.jobs = jobs
        self._clock = clock
        self.poll_interval = poll_interval
        self.max_concurrency = max(1, max_concurrency)
        self.claim_grace_seconds = claim_grace_seconds

        self._running = False
        self._loop_task: Optional[asyncio.Task] = None
        self._workers: list[asyncio.Task] = []
        self._queue: Optional[asyncio.Queue] = None
        self._queued: set[str] = set()
        self._active_runs: set[str] = set()
        self._background: set[asyncio.Task] = set()
        self._job_pass: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._running

    @property
    def active_runs(self) -> set[str]:
        return set(self._active_runs)

    # ------------------------------------------------------------------
    # Running one schedule
    # ------------------------------------------------------------------

    def _begin(self, schedule_id: str) -> tuple[str, AutomationSchedule, AutomationExecution]:
        """Claim the schedule and open its execution. Raises ConcurrencyError."""
        now = self._clock()
        token = self.store.claim_schedule(schedule_id, now)
        schedule = self.store.get_schedule(schedule_id)
        if schedule is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        execution = self.ledger.start(schedule_id, now)
        self._active_runs.add(schedule_id)
        logger.info("Running schedule %r (id=%s)", schedule.name, schedule_id[:8])
        return token, schedule, execution

    async def _complete(
        self, token: str, schedule: AutomationSchedule, execution: AutomationExecution
    ) -> AutomationExecution:
        result = RunResult()
        error: Optional[str] = None
        try:
            await self.runner.run(schedule, execution, result)
        except asyncio.CancelledError:
            self._active_runs.discard(schedule.id)
            logger.warning(
                "Run of schedule %s cancelled; its claim will be recovered after %ds",
                schedule.id[:8],
                self.claim_grace_seconds,
            )
            raise
        except Exception as exc:
            error = describe_error(exc)
            logger.error("Schedule %s run failed: %s", schedule.id[:8], error)

        try:
            try:
                closed = self.ledger.finish(
                    execution.id,
                    outcome=outcome_for(result.created, result.failed, error),
                    articles_created=result.created,
                    articles_failed=result.failed,
                    articles_skipped=result.skipped,
                    error_message=error,
                    finished_at=self._clock(),
                )
            except LedgerError as exc:
                # Closed by stale-claim recovery while this run was still going
                logger.warning("Execution %s already closed: %s", execution.id[:8], exc)
                closed = self.store.get_execution(execution.id) or execution

            released_at = self._clock()
            released = self.store.release_schedule(
                schedule.id,
                token,
                released_at,
                lambda current: compute_next_run(current, released_at),
            )
            if released is not None:
                logger.info(
                    "Schedule %s next run: %s%s",
                    schedule.id[:8],
                    released.next_run_at.isoformat() if released.next_run_at else "none",
                    "" if released.is_active else " (inactive)",
                )
        finally:
            self._active_runs.discard(schedule.id)
        return closed

    async def run_schedule(self, schedule_id: str) -> AutomationExecution:
        """
        Claim, run and release one schedule, waiting for the run to finish.

        Raises
        ------
        ConcurrencyError
            Another run holds the claim.
        NotFoundError
            The schedule does not exist.
        """
        token, schedule, execution = self._begin(schedule_id)
        return await self._complete(token, schedule, execution)

    async def execute_now(
        self, schedule_id: str, owner_id: str, wait: bool = True
    ) -> AutomationExecution:
        """
        Run a schedule immediately, bypassing its timer but not its claim.

        With ``wait=False`` the claim is taken and the execution opened
        before returning; the run itself continues in the background.
        """
        if self.store.get_schedule(schedule_id, owner_id=owner_id) is None:
            raise NotFoundError(f"Schedule {schedule_id} not found")
        token, schedule, execution = self._begin(schedule_id)
        if wait:
            return await self._complete(token, schedule, execution)

        task = asyncio.create_task(self._complete(token, schedule, execution))
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        task.add_done_callback(self._task_done_callback)
        return execution

    # ------------------------------------------------------------------
    # Poll tick
    # ------------------------------------------------------------------

    def recover_stale_claims(self, now: Optional[datetime] = None) -> int:
        """Fail runs whose claim outlived the grace period. Returns how many."""
        now = now or self._clock()
        recovered = 0
        for schedule_id in self.store.stale_claim_ids(now, self.claim_grace_seconds):
            if schedule_id in self._active_runs:
                continue
            message = (
                f"Run abandoned: claim held longer than {self.claim_grace_seconds}s "
                "without completing"
            )
            if self.store.recover_claim(schedule_id, now, self.claim_grace_seconds, message):
                recovered += 1
        return recovered

    def due_schedules(self, now: Optional[datetime] = None) -> list[str]:
        return self.store.due_schedule_ids(now or self._clock())

    async def tick(self) -> int:
        """One poll: recover, enqueue due schedules, kick the job processor."""
        now = self._clock()
        recovered = self.recover_stale_claims(now)
        if recovered:
            logger.warning("Recovered %d abandoned run(s)", recovered)

        enqueued = 0
        for schedule_id in self.due_schedules(now):
            if schedule_id in self._queued or schedule_id in self._active_runs:
                continue
            if self._queue is None:
                break
            self._queued.add(schedule_id)
            self._queue.put_nowait(schedule_id)
            enqueued += 1
        if enqueued:
            logger.info("%d due schedule(s) queued", enqueued)

        self._kick_job_processor()
        return enqueued

    def _kick_job_processor(self) -> None:
        if not self._running:
            return
        if self._job_pass is not None and not self._job_pass.done():
            return
        self._job_pass = asyncio.create_task(self.jobs.run_pending(PENDING_JOBS_PER_TICK))
        self._job_pass.add_done_callback(self._task_done_callback)

    async def _worker(self, index: int) -> None:
        if self._queue is None:
            logger.warning("Worker %d: scheduler not started, exiting", index)
            return
        while True:
            schedule_id = await self._queue.get()
            try:
                await self.run_schedule(schedule_id)
            except ConcurrencyError as exc:
                logger.info("Skipping schedule %s this tick: %s", schedule_id[:8], exc)
            except NotFoundError:
                logger.debug("Schedule %s disappeared before it could run", schedule_id[:8])
            except Exception as exc:
                logger.error("Worker %d: unexpected error on schedule %s: %s", index, schedule_id[:8], exc)
            finally:
                self._queued.discard(schedule_id)
                self._queue.task_done()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """Start the poll loop and worker pool in the background."""
        if self._running:
            logger.warning("Scheduler is already running.")
            return

        self._running = True
        self._queue = asyncio.Queue()
        self._workers = [
            asyncio.create_task(self._worker(i)) for i in range(self.max_concurrency)
        ]
        self._loop_task = asyncio.create_task(self._scheduler_loop())
        logger.info(
            "Scheduler started. Polling every %ds with %d worker(s).",
            self.poll_interval,
            self.max_concurrency,
        )

    async def stop(self) -> None:
        """Stop polling, give in-flight runs up to SHUTDOWN_TIMEOUT, then cancel."""
        if not self._running:
            return

        self._running = False
        logger.info("Stopping scheduler...")

        if self._loop_task is not None:
            self._loop_task.cancel()
            try:
                await self._loop_task
            except asyncio.CancelledError:
                pass
            self._loop_task = None

        if self._active_runs:
            logger.info("Waiting for %d active run(s) to finish...", len(self._active_runs))
            deadline = time.monotonic() + SHUTDOWN_TIMEOUT
            while self._active_runs and time.monotonic() < deadline:
                await asyncio.sleep(0.5)

        pending = list(self._workers) + list(self._background)
        if self._job_pass is not None:
            pending.append(self._job_pass)
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        self._workers = []
        self._background.clear()
        self._job_pass = None
        self._queue = None
        self._queued.clear()
        logger.info("Scheduler stopped.")

    async def _scheduler_loop(self) -> None:
        logger.info("Scheduler loop started.")
        try:
            while self._running:
                try:
                    await self.tick()
                except Exception as exc:
                    logger.error("Error in scheduler loop iteration: %s", exc)
                await asyncio.sleep(self.poll_interval)
        except asyncio.CancelledError:
            logger.info("Scheduler loop cancelled.")
            raise

    def _task_done_callback(self, task: asyncio.Task) -> None:
        """Log unexpected errors from background tasks."""
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task raised unexpected error: %s", exc)


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_scheduler_instance: Optional[AutomationScheduler] = None


def get_scheduler() -> AutomationScheduler:
    """Get the global AutomationScheduler singleton."""
    global _scheduler_instance
    if _scheduler_instance is None:
        _scheduler_instance = AutomationScheduler()
    return _scheduler_instance
