"""
One run of one schedule: source items in, jobs out.

The runner does not know about claims or the ledger; the scheduler wraps
it with both. It records its progress on a ``RunResult`` as it goes so the
scheduler can close the execution with accurate counts even when the run
stops half-way.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from wpautopilot.errors import DuplicateJobError, NotFoundError
from wpautopilot.models import (
    AutomationExecution,
    AutomationJob,
    AutomationSchedule,
    JobStatus,
    SourceType,
)
from wpautopilot.rss_parser import FeedItem
from wpautopilot.schedule_engine import effective_max_articles

logger = logging.getLogger("runner")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)

_SUCCEEDED = (JobStatus.GENERATED, JobStatus.PUBLISHED)


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class RunResult:
    created: int = 0
    failed: int = 0
    skipped: int = 0

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ScheduleRunner:
    """
    Creates and drives the jobs for a single execution.

    Parameters
    ----------
    store : Store
    pipeline : JobPipeline, optional
    rss : RSSParser, optional
    """

    def __init__(
        self,
        store,
        pipeline=None,
        rss=None,
        clock: Callable[[], datetime] = _now_utc,
    ) -> None:
        if pipeline is None:
            from wpautopilot.jobs import JobPipeline
            pipeline = JobPipeline(store)
        if rss is None:
            from wpautopilot.rss_parser import RSSParser
            rss = RSSParser()
        self.store = store
        self.pipeline = pipeline
        self.rss = rss
        self._clock = clock

    async def run(
        self,
        schedule: AutomationSchedule,
        execution: AutomationExecution,
        result: Optional[RunResult] = None,
    ) -> RunResult:
        """
        Run *schedule* once under *execution*.

        Raises on failures that stop the whole run (site or feed gone,
        feed unreachable). Per-item failures only bump ``result.failed``.
        """
        result = result if result is not None else RunResult()
        if self.store.get_site(schedule.site_id) is None:
            raise NotFoundError(f"Site {schedule.site_id} no longer exists")

        if schedule.rss_feed_id:
            await self._run_feed(schedule, execution, result)
        else:
            await self._run_topic(schedule, execution, result)
        return result

    # -- Sources -----------------------------------------------------------

    async def _run_feed(
        self, schedule: AutomationSchedule, execution: AutomationExecution, result: RunResult
    ) -> None:
        feed = self.store.get_feed(schedule.rss_feed_id)
        if feed is None:
            raise NotFoundError(f"RSS feed {schedule.rss_feed_id} no longer exists")

        data = await self.rss.parse_feed(feed.url)
        self.store.touch_feed(feed.id, self._clock())

        cap = effective_max_articles(schedule)
        fresh = 0
        for item in data.items:
            if fresh >= cap:
                logger.info("Schedule %s: per-run cap of %d reached", schedule.id[:8], cap)
                break
            if self.store.find_live_job(schedule.id, item.link) is not None:
                result.skipped += 1
                continue

            job = self._new_rss_job(schedule, execution, feed.id, item)
            try:
                self.store.add_job(job)
            except DuplicateJobError:
                # Lost a race with a concurrent insert for the same item
                result.skipped += 1
                continue
            fresh += 1
            await self._drive(schedule, job, result)

    async def _run_topic(
        self, schedule: AutomationSchedule, execution: AutomationExecution, result: RunResult
    ) -> None:
        job = AutomationJob(
            owner_id=schedule.owner_id,
            site_id=schedule.site_id,
            schedule_id=schedule.id,
            execution_id=execution.id,
            source_type=SourceType.TOPIC,
            topic=schedule.topic,
            source_title=(schedule.topic or "")[:500],
            status=JobStatus.PENDING,
            tokens_used=0,
            ai_cost=0.0,
        )
        self.store.add_job(job)
        await self._drive(schedule, job, result)

    @staticmethod
    def _new_rss_job(
        schedule: AutomationSchedule,
        execution: AutomationExecution,
        feed_id: str,
        item: FeedItem,
    ) -> AutomationJob:
        return AutomationJob(
            owner_id=schedule.owner_id,
            site_id=schedule.site_id,
            schedule_id=schedule.id,
            execution_id=execution.id,
            source_type=SourceType.RSS,
            rss_feed_id=feed_id,
            source_url=item.link,
            source_title=item.title[:500],
            source_content=item.content or item.description,
            status=JobStatus.PENDING,
            tokens_used=0,
            ai_cost=0.0,
        )

    async def _drive(self, schedule: AutomationSchedule, job: AutomationJob, result: RunResult) -> None:
        final = await self.pipeline.process(
            job,
            auto_publish=schedule.auto_publish,
            publish_status=schedule.publish_status,
        )
        if final.status in _SUCCEEDED:
            result.created += 1
        else:
            result.failed += 1
