"""
Automation jobs: the per-article state machine and the pipeline driving it.

    PENDING -> GENERATING -> GENERATED -> PUBLISHING -> PUBLISHED
    (any non-terminal state) -> FAILED

Every transition is persisted immediately with a compare-and-set on the
current status, so a job never moves backwards and two actors cannot both
advance it. FAILED jobs are never retried in place; ``JobService.retry_job``
creates a fresh job instead.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from wpautopilot.errors import (
    AlreadyPublishedError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
    describe_error,
)
from wpautopilot.models import (
    AutomationJob,
    JobStatus,
    PublishStatus,
    Site,
    SourceType,
)

logger = logging.getLogger("jobs")

if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)


TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.GENERATING, JobStatus.FAILED}),
    JobStatus.GENERATING: frozenset({JobStatus.GENERATED, JobStatus.FAILED}),
    JobStatus.GENERATED: frozenset({JobStatus.PUBLISHING, JobStatus.FAILED}),
    JobStatus.PUBLISHING: frozenset({JobStatus.PUBLISHED, JobStatus.FAILED}),
    JobStatus.PUBLISHED: frozenset(),
    JobStatus.FAILED: frozenset(),
}


def _now_utc() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: JobStatus, target: JobStatus) -> bool:
    return target in TRANSITIONS.get(current, frozenset())


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------


class JobStateMachine:
    """Moves jobs between statuses, persisting each step before returning."""

    def __init__(self, store) -> None:
        self.store = store

    def advance(self, job: AutomationJob, status: JobStatus, **fields: Any) -> AutomationJob:
        """
        Move *job* to *status* and write *fields* in the same update.

        Raises
        ------
        InvalidTransitionError
            The move is not in ``TRANSITIONS``, or the stored job is no
            longer in the status this object believes it is in.
        """
        current = job.status
        if not can_transition(current, status):
            raise InvalidTransitionError(
                f"Job {job.id} cannot move from {current.value} to {status.value}"
            )
        if not self.store.transition_job(job.id, current, status, fields):
            stored = self.store.get_job(job.id)
            actual = stored.status.value if stored else "deleted"
            raise InvalidTransitionError(
                f"Job {job.id} is no longer {current.value} (now {actual})"
            )
        job.status = status
        for key, value in fields.items():
            setattr(job, key, value)
        logger.debug("Job %s: %s -> %s", job.short_id, current.value, status.value)
        return job

    def fail(self, job: AutomationJob, cause: BaseException | str) -> AutomationJob:
        """Mark *job* FAILED with a readable error message."""
        message = cause if isinstance(cause, str) else describe_error(cause)
        self.advance(job, JobStatus.FAILED, error_message=message)
        logger.warning("Job %s FAILED: %s", job.short_id, message)
        return job


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class JobPipeline:
    """
    Drives one job through generation and (optionally) publishing.

    Parameters
    ----------
    store : Store
    generator : ContentGenerator, optional
    publisher : Publisher, optional
    """

    def __init__(self, store, generator=None, publisher=None) -> None:
        if generator is None:
            from wpautopilot.content_generator import ContentGenerator
            generator = ContentGenerator(store=store)
        if publisher is None:
            from wpautopilot.publisher import Publisher
            publisher = Publisher()
        self.store = store
        self.generator = generator
        self.publisher = publisher
        self.machine = JobStateMachine(store)

    def _site_for(self, job: AutomationJob) -> Optional[Site]:
        return self.store.get_site(job.site_id)

    def _fail_quietly(self, job: AutomationJob, cause: BaseException | str) -> None:
        try:
            self.machine.fail(job, cause)
        except InvalidTransitionError as exc:
            # Already terminal, e.g. failed by stale-claim recovery meanwhile
            logger.warning("Job %s: could not record failure: %s", job.short_id, exc)

    async def process(
        self,
        job: AutomationJob,
        auto_publish: bool = False,
        publish_status: str = PublishStatus.DRAFT.value,
    ) -> AutomationJob:
        """
        Generate *job* and publish it when *auto_publish* is set.

        Never raises for pipeline failures: the job ends FAILED with the
        cause in ``error_message``. Returns the job as stored.
        """
        site = self._site_for(job)
        if site is None:
            self._fail_quietly(job, f"Site {job.site_id} no longer exists")
            return self.store.get_job(job.id) or job

        try:
            self.machine.advance(job, JobStatus.GENERATING)
        except InvalidTransitionError as exc:
            logger.warning("Job %s: skipping, %s", job.short_id, exc)
            return self.store.get_job(job.id) or job

        try:
            article = await self.generator.generate(job)
            self.machine.advance(job, JobStatus.GENERATED, **article.to_job_fields())
        except Exception as exc:
            logger.error("Job %s: generation failed: %s", job.short_id, describe_error(exc))
            self._fail_quietly(job, exc)
            return self.store.get_job(job.id) or job

        if auto_publish:
            await self._publish(job, site, publish_status)
        return self.store.get_job(job.id) or job

    async def _publish(self, job: AutomationJob, site: Site, status: str) -> AutomationJob:
        try:
            self.machine.advance(job, JobStatus.PUBLISHING)
        except InvalidTransitionError as exc:
            logger.warning("Job %s: not publishing, %s", job.short_id, exc)
            return self.store.get_job(job.id) or job

        try:
            result = await self.publisher.publish(job, site, status)
        except Exception as exc:
            logger.error("Job %s: publish failed: %s", job.short_id, describe_error(exc))
            self._fail_quietly(job, exc)
            return job

        try:
            self.machine.advance(
                job,
                JobStatus.PUBLISHED,
                wp_post_id=result.wp_post_id,
                wp_post_link=result.link,
                published_at=_now_utc(),
            )
        except InvalidTransitionError as exc:
            logger.error(
                "Job %s: post %d was created but the job could not be marked PUBLISHED: %s",
                job.short_id, result.wp_post_id, exc,
            )
        return job

    async def publish_existing(
        self, job_id: str, owner_id: str, status: str = PublishStatus.DRAFT.value
    ) -> AutomationJob:
        """
        Manually publish a GENERATED job.

        Raises
        ------
        NotFoundError
            No such job for this owner.
        AlreadyPublishedError
            The job already has a post. Nothing is sent to WordPress.
        InvalidTransitionError
            The job is not GENERATED.
        """
        job = self.store.get_job(job_id, owner_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        if job.wp_post_id is not None or job.status == JobStatus.PUBLISHED:
            raise AlreadyPublishedError(f"Job {job.id} is already published (post {job.wp_post_id})")
        if job.status != JobStatus.GENERATED:
            raise InvalidTransitionError(
                f"Job {job.id} is {job.status.value}; only GENERATED jobs can be published"
            )
        if status not in (PublishStatus.DRAFT.value, PublishStatus.PUBLISH.value):
            raise ValidationError(f"Invalid publish status {status!r}; expected draft or publish")

        site = self._site_for(job)
        if site is None:
            self._fail_quietly(job, f"Site {job.site_id} no longer exists")
        else:
            await self._publish(job, site, status)
        return self.store.get_job(job.id) or job


# ---------------------------------------------------------------------------
# Job service (API / CLI surface)
# ---------------------------------------------------------------------------


class JobService:
    """Owner-scoped job queries plus creation of API-driven topic jobs."""

    def __init__(self, store=None, pipeline: Optional[JobPipeline] = None) -> None:
        if store is None:
            from wpautopilot.store import get_store
            store = get_store()
        self.store = store
        self._pipeline = pipeline

    @property
    def pipeline(self) -> JobPipeline:
        if self._pipeline is None:
            self._pipeline = JobPipeline(self.store)
        return self._pipeline

    def create_topic_job(self, owner_id: str, site_id: str, topic: str) -> AutomationJob:
        topic = (topic or "").strip()
        if not topic:
            raise ValidationError("topic is required")
        if self.store.get_site(site_id, owner_id) is None:
            raise NotFoundError(f"Site {site_id} not found")
        job = AutomationJob(
            owner_id=owner_id,
            site_id=site_id,
            source_type=SourceType.TOPIC,
            topic=topic,
            source_title=topic[:500],
            status=JobStatus.PENDING,
            tokens_used=0,
            ai_cost=0.0,
        )
        self.store.add_job(job)
        logger.info("Queued topic job %s for site %s", job.short_id, site_id[:8])
        return job

    def get_job(self, owner_id: str, job_id: str) -> AutomationJob:
        job = self.store.get_job(job_id, owner_id)
        if job is None:
            raise NotFoundError(f"Job {job_id} not found")
        return job

    def list_jobs(
        self,
        owner_id: str,
        *,
        status: Optional[str] = None,
        site_id: Optional[str] = None,
        schedule_id: Optional[str] = None,
        page: int = 1,
        per_page: int = 20,
    ) -> tuple[list[AutomationJob], int]:
        status_enum = None
        if status:
            try:
                status_enum = JobStatus(status.upper())
            except ValueError:
                raise ValidationError(f"Unknown job status {status!r}")
        return self.store.list_jobs(
            owner_id,
            status=status_enum,
            site_id=site_id,
            schedule_id=schedule_id,
            page=page,
            per_page=per_page,
        )

    def queue_stats(self, owner_id: str, site_id: Optional[str] = None) -> dict[str, int]:
        counts = self.store.job_status_counts(owner_id, site_id)
        stats = {status.value.lower(): counts.get(status, 0) for status in JobStatus}
        stats["total"] = sum(counts.values())
        return stats

    def retry_job(self, owner_id: str, job_id: str) -> AutomationJob:
        """Queue a new PENDING job with the same source as a FAILED one."""
        old = self.get_job(owner_id, job_id)
        if old.status != JobStatus.FAILED:
            raise ValidationError(f"Only FAILED jobs can be retried (job is {old.status.value})")
        job = AutomationJob(
            owner_id=old.owner_id,
            site_id=old.site_id,
            schedule_id=old.schedule_id,
            source_type=old.source_type,
            rss_feed_id=old.rss_feed_id,
            source_url=old.source_url,
            source_title=old.source_title,
            source_content=old.source_content,
            topic=old.topic,
            rewrite_style=old.rewrite_style,
            status=JobStatus.PENDING,
            tokens_used=0,
            ai_cost=0.0,
        )
        self.store.add_job(job)
        logger.info("Job %s retried as %s", old.short_id, job.short_id)
        return job

    async def run_pending(self, limit: int = 10) -> int:
        """Process PENDING jobs that no schedule run owns. Returns how many ran."""
        processed = 0
        for job in self.store.pending_unowned_jobs(limit):
            auto_publish = False
            publish_status = PublishStatus.DRAFT.value
            if job.schedule_id:
                schedule = self.store.get_schedule(job.schedule_id)
                if schedule is not None:
                    auto_publish = schedule.auto_publish
                    publish_status = schedule.publish_status
            await self.pipeline.process(job, auto_publish=auto_publish, publish_status=publish_status)
            processed += 1
        return processed
