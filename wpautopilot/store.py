"""
Relational store for WP Autopilot.

Thin SQLAlchemy layer over the tables in ``wpautopilot.models``. Every
public method opens its own short transaction, so ORM objects handed back
to callers are detached snapshots (``expire_on_commit=False``).

The schedule claim lives here as an explicit optimistic compare-and-set on
``claim_token`` so the scheduler never touches the ORM:

    token = store.claim_schedule(schedule_id, now)      # ConcurrencyError if held
    ...run...
    store.release_schedule(schedule_id, token, now, compute_next)

Usage:
    from wpautopilot.store import get_store

    store = get_store()
    schedule = store.get_schedule(schedule_id, owner_id="user-1")
"""

from __future__ import annotations

import logging
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Iterator, Optional

from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from wpautopilot.config import DATABASE_URL
from wpautopilot.errors import (
    ConcurrencyError,
    DuplicateJobError,
    LedgerError,
    NotFoundError,
)
from wpautopilot.models import (
    AutomationExecution,
    AutomationJob,
    AutomationSchedule,
    Base,
    ExecutionOutcome,
    JobStatus,
    RSSFeed,
    Site,
    TERMINAL_STATUSES,
)

logger = logging.getLogger("store")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

DEFAULT_PER_PAGE = 20


def _page_bounds(page: int, per_page: int) -> tuple[int, int]:
    page = max(1, page)
    per_page = max(1, min(per_page, 100))
    return (page - 1) * per_page, per_page


class Store:
    """Transactional access to sites, feeds, schedules, executions and jobs."""

    def __init__(self, database_url: str = DATABASE_URL, echo: bool = False) -> None:
        engine_kwargs: dict[str, Any] = {}
        if database_url.startswith("sqlite"):
            engine_kwargs["connect_args"] = {"check_same_thread": False}
            if database_url in ("sqlite://", "sqlite:///:memory:"):
                # One shared connection, otherwise every session sees an empty DB
                engine_kwargs["poolclass"] = StaticPool
        self.database_url = database_url
        self.engine = create_engine(database_url, echo=echo, **engine_kwargs)
        self._session_factory = sessionmaker(bind=self.engine, expire_on_commit=False)

    def create_all(self) -> None:
        Base.metadata.create_all(self.engine)

    def dispose(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Session scope: commit on success, roll back on any exception."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Sites
    # ------------------------------------------------------------------

    def add_site(self, site: Site) -> Site:
        with self.session() as s:
            s.add(site)
        return site

    def get_site(self, site_id: str, owner_id: Optional[str] = None) -> Optional[Site]:
        with self.session() as s:
            site = s.get(Site, site_id)
            if site is None or (owner_id is not None and site.owner_id != owner_id):
                return None
            return site

    def list_sites(self, owner_id: str) -> list[Site]:
        with self.session() as s:
            rows = s.scalars(
                select(Site).where(Site.owner_id == owner_id).order_by(Site.created_at.desc())
            )
            return list(rows)

    def delete_site(self, site_id: str, owner_id: str) -> bool:
        """Delete a site and park every schedule that targets it."""
        with self.session() as s:
            site = s.get(Site, site_id)
            if site is None or site.owner_id != owner_id:
                return False
            s.delete(site)
            s.execute(
                update(AutomationSchedule)
                .where(AutomationSchedule.site_id == site_id)
                .values(is_active=False, next_run_at=None)
                .execution_options(synchronize_session=False)
            )
        logger.info("Deleted site %s and deactivated its schedules", site_id[:8])
        return True

    # ------------------------------------------------------------------
    # Feeds
    # ------------------------------------------------------------------

    def add_feed(self, feed: RSSFeed) -> RSSFeed:
        with self.session() as s:
            s.add(feed)
        return feed

    def get_feed(self, feed_id: str, owner_id: Optional[str] = None) -> Optional[RSSFeed]:
        with self.session() as s:
            feed = s.get(RSSFeed, feed_id)
            if feed is None or (owner_id is not None and feed.owner_id != owner_id):
                return None
            return feed

    def list_feeds(self, owner_id: str) -> list[RSSFeed]:
        with self.session() as s:
            rows = s.scalars(
                select(RSSFeed).where(RSSFeed.owner_id == owner_id).order_by(RSSFeed.created_at.desc())
            )
            return list(rows)

    def touch_feed(self, feed_id: str, fetched_at: datetime) -> None:
        with self.session() as s:
            s.execute(
                update(RSSFeed)
                .where(RSSFeed.id == feed_id)
                .values(last_fetched_at=fetched_at)
                .execution_options(synchronize_session=False)
            )

    # ------------------------------------------------------------------
    # Schedules
    # ------------------------------------------------------------------

    def add_schedule(self, schedule: AutomationSchedule) -> AutomationSchedule:
        with self.session() as s:
            s.add(schedule)
        return schedule

    def get_schedule(
        self, schedule_id: str, owner_id: Optional[str] = None
    ) -> Optional[AutomationSchedule]:
        with self.session() as s:
            schedule = s.get(AutomationSchedule, schedule_id)
            if schedule is None or (owner_id is not None and schedule.owner_id != owner_id):
                return None
            return schedule

    def list_schedules(
        self,
        owner_id: str,
        *,
        site_id: Optional[str] = None,
        is_active: Optional[bool] = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> tuple[list[AutomationSchedule], int]:
        """Owner's schedules, newest first, plus the unpaged total."""
        conditions = [AutomationSchedule.owner_id == owner_id]
        if site_id:
            conditions.append(AutomationSchedule.site_id == site_id)
        if is_active is not None:
            conditions.append(AutomationSchedule.is_active == is_active)

        offset, limit = _page_bounds(page, per_page)
        with self.session() as s:
            total = s.scalar(
                select(func.count()).select_from(AutomationSchedule).where(*conditions)
            ) or 0
            rows = s.scalars(
                select(AutomationSchedule)
                .where(*conditions)
                .order_by(AutomationSchedule.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(rows), total

    def count_schedules(self, owner_id: str, site_id: Optional[str] = None) -> tuple[int, int]:
        """Return (total, active) schedule counts for an owner."""
        conditions = [AutomationSchedule.owner_id == owner_id]
        if site_id:
            conditions.append(AutomationSchedule.site_id == site_id)
        with self.session() as s:
            total = s.scalar(
                select(func.count()).select_from(AutomationSchedule).where(*conditions)
            ) or 0
            active = s.scalar(
                select(func.count())
                .select_from(AutomationSchedule)
                .where(*conditions, AutomationSchedule.is_active.is_(True))
            ) or 0
        return total, active

    def update_schedule(self, schedule_id: str, **fields: Any) -> AutomationSchedule:
        """Write only the named columns; claim columns are never touched here."""
        with self.session() as s:
            schedule = s.get(AutomationSchedule, schedule_id)
            if schedule is None:
                raise NotFoundError(f"Schedule {schedule_id} not found")
            for key, value in fields.items():
                if key in ("claim_token", "claimed_at", "version", "id", "owner_id"):
                    raise ValueError(f"Field {key!r} cannot be updated directly")
                setattr(schedule, key, value)
            schedule.version = (schedule.version or 0) + 1
        return schedule

    def delete_schedule(self, schedule_id: str) -> bool:
        """Delete a schedule together with its execution ledger. Jobs are kept."""
        with self.session() as s:
            schedule = s.get(AutomationSchedule, schedule_id)
            if schedule is None:
                return False
            s.execute(
                delete(AutomationExecution).where(AutomationExecution.schedule_id == schedule_id)
            )
            s.delete(schedule)
        return True

    def due_schedule_ids(self, now: datetime) -> list[str]:
        """Active, unclaimed schedules whose next run is at or before *now*."""
        with self.session() as s:
            rows = s.scalars(
                select(AutomationSchedule.id)
                .where(
                    AutomationSchedule.is_active.is_(True),
                    AutomationSchedule.next_run_at.isnot(None),
                    AutomationSchedule.next_run_at <= now,
                    AutomationSchedule.claim_token.is_(None),
                )
                .order_by(AutomationSchedule.next_run_at)
            )
            return list(rows)

    # -- Claims -----------------------------------------------------------

    def claim_schedule(self, schedule_id: str, now: datetime) -> str:
        """Atomically take the run claim for a schedule.

        Returns the claim token. Raises ConcurrencyError when another run
        holds the claim, NotFoundError when the schedule is gone.
        """
        token = str(uuid.uuid4())
        with self.session() as s:
            result = s.execute(
                update(AutomationSchedule)
                .where(
                    AutomationSchedule.id == schedule_id,
                    AutomationSchedule.claim_token.is_(None),
                )
                .values(
                    claim_token=token,
                    claimed_at=now,
                    version=AutomationSchedule.version + 1,
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                if s.get(AutomationSchedule, schedule_id) is None:
                    raise NotFoundError(f"Schedule {schedule_id} not found")
                raise ConcurrencyError(f"Schedule {schedule_id} is already running")
        logger.debug("Claimed schedule %s (token=%s)", schedule_id[:8], token[:8])
        return token

    def release_schedule(
        self,
        schedule_id: str,
        token: str,
        finished_at: datetime,
        compute_next: Callable[[AutomationSchedule], Optional[datetime]],
    ) -> Optional[AutomationSchedule]:
        """Drop the claim and persist last/next run times in one transaction.

        ``compute_next`` is evaluated against the current row so edits made
        while the run was in flight are respected. A paused schedule keeps
        ``next_run_at`` null; a schedule with no further fire time is
        deactivated. Returns None when the claim was lost (recovered by
        another process) or the schedule was deleted.
        """
        with self.session() as s:
            schedule = s.get(AutomationSchedule, schedule_id, with_for_update=True)
            if schedule is None:
                return None
            if schedule.claim_token != token:
                logger.warning(
                    "Claim on schedule %s was lost before release (token=%s)",
                    schedule_id[:8],
                    token[:8],
                )
                return None

            schedule.claim_token = None
            schedule.claimed_at = None
            schedule.version = (schedule.version or 0) + 1
            schedule.last_run_at = finished_at

            if schedule.is_active:
                next_run = compute_next(schedule)
                schedule.next_run_at = next_run
                if next_run is None:
                    schedule.is_active = False
            else:
                schedule.next_run_at = None
        return schedule

    def stale_claim_ids(self, now: datetime, grace_seconds: int) -> list[str]:
        cutoff = now - timedelta(seconds=grace_seconds)
        with self.session() as s:
            rows = s.scalars(
                select(AutomationSchedule.id).where(
                    AutomationSchedule.claim_token.isnot(None),
                    AutomationSchedule.claimed_at < cutoff,
                )
            )
            return list(rows)

    def recover_claim(
        self, schedule_id: str, now: datetime, grace_seconds: int, message: str
    ) -> bool:
        """Treat an abandoned run as failed and free the schedule.

        Open executions are closed as FAILURE, their unfinished jobs are
        moved to FAILED, and the claim is cleared so the next poll can fire
        the schedule again.
        """
        cutoff = now - timedelta(seconds=grace_seconds)
        with self.session() as s:
            schedule = s.get(AutomationSchedule, schedule_id, with_for_update=True)
            if (
                schedule is None
                or schedule.claim_token is None
                or schedule.claimed_at is None
                or schedule.claimed_at >= cutoff
            ):
                return False

            open_ids = list(
                s.scalars(
                    select(AutomationExecution.id).where(
                        AutomationExecution.schedule_id == schedule_id,
                        AutomationExecution.finished_at.is_(None),
                    )
                )
            )
            if open_ids:
                s.execute(
                    update(AutomationExecution)
                    .where(AutomationExecution.id.in_(open_ids))
                    .values(
                        finished_at=now,
                        outcome=ExecutionOutcome.FAILURE,
                        error_message=message,
                    )
                    .execution_options(synchronize_session=False)
                )
                s.execute(
                    update(AutomationJob)
                    .where(
                        AutomationJob.execution_id.in_(open_ids),
                        AutomationJob.status.notin_(list(TERMINAL_STATUSES)),
                    )
                    .values(status=JobStatus.FAILED, error_message=message)
                    .execution_options(synchronize_session=False)
                )

            schedule.claim_token = None
            schedule.claimed_at = None
            schedule.version = (schedule.version or 0) + 1
        logger.warning("Recovered abandoned run on schedule %s: %s", schedule_id[:8], message)
        return True

    # ------------------------------------------------------------------
    # Executions
    # ------------------------------------------------------------------

    def add_execution(self, schedule_id: str, started_at: datetime) -> AutomationExecution:
        execution = AutomationExecution(
            schedule_id=schedule_id,
            started_at=started_at,
            articles_created=0,
            articles_failed=0,
            articles_skipped=0,
        )
        with self.session() as s:
            s.add(execution)
        return execution

    def get_execution(self, execution_id: str) -> Optional[AutomationExecution]:
        with self.session() as s:
            return s.get(AutomationExecution, execution_id)

    def finish_execution(
        self,
        execution_id: str,
        *,
        finished_at: datetime,
        outcome: ExecutionOutcome,
        articles_created: int,
        articles_failed: int,
        articles_skipped: int,
        error_message: Optional[str],
    ) -> AutomationExecution:
        """Close an open execution. A finished execution is never rewritten."""
        with self.session() as s:
            result = s.execute(
                update(AutomationExecution)
                .where(
                    AutomationExecution.id == execution_id,
                    AutomationExecution.finished_at.is_(None),
                )
                .values(
                    finished_at=finished_at,
                    outcome=outcome,
                    articles_created=articles_created,
                    articles_failed=articles_failed,
                    articles_skipped=articles_skipped,
                    error_message=error_message,
                )
                .execution_options(synchronize_session=False)
            )
            execution = s.get(AutomationExecution, execution_id, populate_existing=True)
            if execution is None:
                raise NotFoundError(f"Execution {execution_id} not found")
            if result.rowcount != 1:
                raise LedgerError(f"Execution {execution_id} is already finished")
            return execution

    def list_executions(
        self, schedule_id: str, page: int = 1, per_page: int = DEFAULT_PER_PAGE
    ) -> tuple[list[AutomationExecution], int]:
        offset, limit = _page_bounds(page, per_page)
        with self.session() as s:
            total = s.scalar(
                select(func.count())
                .select_from(AutomationExecution)
                .where(AutomationExecution.schedule_id == schedule_id)
            ) or 0
            rows = s.scalars(
                select(AutomationExecution)
                .where(AutomationExecution.schedule_id == schedule_id)
                .order_by(AutomationExecution.started_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(rows), total

    def outcome_counts(
        self,
        owner_id: Optional[str] = None,
        *,
        site_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
    ) -> dict[ExecutionOutcome, int]:
        """Finished executions grouped by outcome."""
        stmt = (
            select(AutomationExecution.outcome, func.count())
            .join(AutomationSchedule, AutomationSchedule.id == AutomationExecution.schedule_id)
            .where(AutomationExecution.finished_at.isnot(None))
            .group_by(AutomationExecution.outcome)
        )
        if owner_id is not None:
            stmt = stmt.where(AutomationSchedule.owner_id == owner_id)
        if site_id:
            stmt = stmt.where(AutomationSchedule.site_id == site_id)
        if schedule_id:
            stmt = stmt.where(AutomationExecution.schedule_id == schedule_id)
        with self.session() as s:
            return {outcome: count for outcome, count in s.execute(stmt) if outcome is not None}

    # ------------------------------------------------------------------
    # Jobs
    # ------------------------------------------------------------------

    def add_job(self, job: AutomationJob) -> AutomationJob:
        """Insert a job. Raises DuplicateJobError if a live twin exists."""
        try:
            with self.session() as s:
                s.add(job)
        except IntegrityError as exc:
            raise DuplicateJobError(
                f"A live job already exists for {job.source_url!r} on schedule {job.schedule_id}"
            ) from exc
        return job

    def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[AutomationJob]:
        with self.session() as s:
            job = s.get(AutomationJob, job_id)
            if job is None or (owner_id is not None and job.owner_id != owner_id):
                return None
            return job

    def list_jobs(
        self,
        owner_id: str,
        *,
        status: Optional[JobStatus] = None,
        site_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        page: int = 1,
        per_page: int = DEFAULT_PER_PAGE,
    ) -> tuple[list[AutomationJob], int]:
        conditions = [AutomationJob.owner_id == owner_id]
        if status is not None:
            conditions.append(AutomationJob.status == status)
        if site_id:
            conditions.append(AutomationJob.site_id == site_id)
        if schedule_id:
            conditions.append(AutomationJob.schedule_id == schedule_id)

        offset, limit = _page_bounds(page, per_page)
        with self.session() as s:
            total = s.scalar(
                select(func.count()).select_from(AutomationJob).where(*conditions)
            ) or 0
            rows = s.scalars(
                select(AutomationJob)
                .where(*conditions)
                .order_by(AutomationJob.created_at.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(rows), total

    def find_live_job(self, schedule_id: str, source_url: str) -> Optional[AutomationJob]:
        """A prior non-FAILED job for the same schedule and source item, if any."""
        with self.session() as s:
            return s.scalars(
                select(AutomationJob)
                .where(
                    AutomationJob.schedule_id == schedule_id,
                    AutomationJob.source_url == source_url,
                    AutomationJob.status != JobStatus.FAILED,
                )
                .limit(1)
            ).first()

    def pending_unowned_jobs(self, limit: int = 10) -> list[AutomationJob]:
        """PENDING jobs not driven by a schedule run (created through the API)."""
        with self.session() as s:
            rows = s.scalars(
                select(AutomationJob)
                .where(
                    AutomationJob.status == JobStatus.PENDING,
                    AutomationJob.execution_id.is_(None),
                )
                .order_by(AutomationJob.created_at)
                .limit(limit)
            )
            return list(rows)

    def transition_job(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        fields: Optional[dict[str, Any]] = None,
    ) -> bool:
        """Compare-and-set a job's status. False if the job moved underneath us."""
        values: dict[str, Any] = dict(fields or {})
        values["status"] = to_status
        with self.session() as s:
            result = s.execute(
                update(AutomationJob)
                .where(AutomationJob.id == job_id, AutomationJob.status == from_status)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def add_job_spend(self, job_id: str, tokens: int, cost: float, model: str) -> None:
        with self.session() as s:
            s.execute(
                update(AutomationJob)
                .where(AutomationJob.id == job_id)
                .values(
                    tokens_used=AutomationJob.tokens_used + tokens,
                    ai_cost=AutomationJob.ai_cost + cost,
                    ai_model=model,
                )
                .execution_options(synchronize_session=False)
            )

    def job_status_counts(self, owner_id: str, site_id: Optional[str] = None) -> dict[JobStatus, int]:
        stmt = (
            select(AutomationJob.status, func.count())
            .where(AutomationJob.owner_id == owner_id)
            .group_by(AutomationJob.status)
        )
        if site_id:
            stmt = stmt.where(AutomationJob.site_id == site_id)
        with self.session() as s:
            return {status: count for status, count in s.execute(stmt)}


# ---------------------------------------------------------------------------
# Singleton
# ---------------------------------------------------------------------------

_store_instance: Optional[Store] = None


def get_store() -> Store:
    """Get the global Store, creating tables on first use."""
    global _store_instance
    if _store_instance is None:
        _store_instance = Store(DATABASE_URL)
        _store_instance.create_all()
    return _store_instance


def set_store(store: Optional[Store]) -> None:
    """Replace the global Store (used by the API lifespan and tests)."""
    global _store_instance
    _store_instance = store
