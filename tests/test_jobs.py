"""
Tests for the job state machine, the generation/publish pipeline and the
owner-facing JobService.
"""

from unittest.mock import AsyncMock

import pytest

from wpautopilot.errors import (
    AlreadyPublishedError,
    InvalidTransitionError,
    NotFoundError,
    UpstreamError,
    ValidationError,
)
from wpautopilot.jobs import JobStateMachine, TRANSITIONS, can_transition
from wpautopilot.models import AutomationJob, JobStatus, SourceType


def _topic_job(store, site, owner, **fields):
    job = AutomationJob(
        owner_id=owner,
        site_id=site.id,
        source_type=SourceType.TOPIC,
        topic="Home composting for beginners",
        source_title="Home composting for beginners",
        status=JobStatus.PENDING,
        tokens_used=0,
        ai_cost=0.0,
        **fields,
    )
    return store.add_job(job)


# ===================================================================
# State machine
# ===================================================================


class TestTransitions:

    @pytest.mark.unit
    def test_forward_path_allowed(self):
        path = [JobStatus.PENDING, JobStatus.GENERATING, JobStatus.GENERATED, JobStatus.PUBLISHING, JobStatus.PUBLISHED]
        for current, target in zip(path, path[1:]):
            assert can_transition(current, target)

    @pytest.mark.unit
    def test_terminal_states_have_no_exits(self):
        assert TRANSITIONS[JobStatus.PUBLISHED] == frozenset()
        assert TRANSITIONS[JobStatus.FAILED] == frozenset()

    @pytest.mark.unit
    @pytest.mark.parametrize(
        "current, target",
        [
            (JobStatus.GENERATED, JobStatus.GENERATING),
            (JobStatus.PUBLISHED, JobStatus.PUBLISHING),
            (JobStatus.FAILED, JobStatus.PENDING),
            (JobStatus.PENDING, JobStatus.PUBLISHED),
        ],
    )
    def test_backward_or_skipping_moves_rejected(self, current, target):
        assert not can_transition(current, target)

    @pytest.mark.unit
    def test_advance_persists(self, store, site, owner):
        job = _topic_job(store, site, owner)
        JobStateMachine(store).advance(job, JobStatus.GENERATING)
        assert job.status == JobStatus.GENERATING
        assert store.get_job(job.id).status == JobStatus.GENERATING

    @pytest.mark.unit
    def test_advance_detects_stale_object(self, store, site, owner):
        job = _topic_job(store, site, owner)
        stale_copy = store.get_job(job.id)
        machine = JobStateMachine(store)
        machine.advance(job, JobStatus.GENERATING)
        with pytest.raises(InvalidTransitionError, match="no longer PENDING"):
            machine.advance(stale_copy, JobStatus.GENERATING)

    @pytest.mark.unit
    def test_fail_records_message(self, store, site, owner):
        job = _topic_job(store, site, owner)
        JobStateMachine(store).fail(job, UpstreamError("AI request timed out after 30s"))
        stored = store.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert stored.error_message == "AI request timed out after 30s"


# ===================================================================
# Pipeline
# ===================================================================


class TestJobPipeline:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate_only(self, store, site, owner, pipeline, fake_publisher):
        job = _topic_job(store, site, owner)
        result = await pipeline.process(job, auto_publish=False)
        assert result.status == JobStatus.GENERATED
        assert result.generated_title.startswith("Rewrite of")
        assert result.categories == ["News"]
        assert result.seo_meta == {"description": "A generated article", "keywords": ["ai"]}
        assert result.inline_images[0]["url"] == "https://images.example.com/1.jpg"
        fake_publisher.publish.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generate_and_publish(self, store, site, owner, pipeline, fake_publisher):
        job = _topic_job(store, site, owner)
        result = await pipeline.process(job, auto_publish=True, publish_status="publish")
        assert result.status == JobStatus.PUBLISHED
        assert result.wp_post_id == 42
        assert result.wp_post_link == "https://blog.example.com/?p=42"
        assert result.published_at is not None
        assert fake_publisher.publish.await_args.args[2] == "publish"

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_generation_failure_marks_failed(self, store, site, owner, pipeline, fake_generator):
        fake_generator.generate = AsyncMock(side_effect=UpstreamError("AI request to x timed out after 30s"))
        job = _topic_job(store, site, owner)
        result = await pipeline.process(job)
        assert result.status == JobStatus.FAILED
        assert "timed out" in result.error_message
        assert result.tokens_used == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_failure_marks_failed_and_keeps_content(self, store, site, owner, pipeline, fake_publisher):
        fake_publisher.publish = AsyncMock(side_effect=UpstreamError("HTTP 500 from https://blog.example.com"))
        job = _topic_job(store, site, owner)
        result = await pipeline.process(job, auto_publish=True)
        assert result.status == JobStatus.FAILED
        assert "HTTP 500" in result.error_message
        assert result.generated_content
        assert result.wp_post_id is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_job_failed_before_publishing_is_not_published(self, store, site, owner, pipeline, fake_publisher):
        advance = pipeline.machine.advance

        def advance_then_recover(job, status, **fields):
            advance(job, status, **fields)
            if status == JobStatus.GENERATED:
                # Stale-claim recovery fails the row while the pipeline holds an old copy
                store.transition_job(
                    job.id, JobStatus.GENERATED, JobStatus.FAILED, {"error_message": "Recovered stale claim"}
                )
            return job

        pipeline.machine.advance = advance_then_recover
        job = _topic_job(store, site, owner)
        result = await pipeline.process(job, auto_publish=True)

        assert result.status == JobStatus.FAILED
        assert result.error_message == "Recovered stale claim"
        fake_publisher.publish.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_site_fails_job(self, store, site, owner, pipeline, fake_generator):
        job = _topic_job(store, site, owner)
        store.delete_site(site.id, owner)
        result = await pipeline.process(job)
        assert result.status == JobStatus.FAILED
        assert result.error_message == f"Site {site.id} no longer exists"
        fake_generator.generate.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_existing(self, store, site, owner, pipeline):
        job = _topic_job(store, site, owner)
        await pipeline.process(job)
        result = await pipeline.publish_existing(job.id, owner, "draft")
        assert result.status == JobStatus.PUBLISHED

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_existing_twice_makes_no_second_call(self, store, site, owner, pipeline, fake_publisher):
        job = _topic_job(store, site, owner)
        await pipeline.process(job, auto_publish=True)
        assert fake_publisher.publish.await_count == 1

        with pytest.raises(AlreadyPublishedError):
            await pipeline.publish_existing(job.id, owner)
        assert fake_publisher.publish.await_count == 1
        assert store.get_job(job.id).wp_post_id == 42

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_existing_requires_generated(self, store, site, owner, pipeline):
        job = _topic_job(store, site, owner)
        with pytest.raises(InvalidTransitionError):
            await pipeline.publish_existing(job.id, owner)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_existing_other_owner(self, store, site, owner, pipeline):
        job = _topic_job(store, site, owner)
        with pytest.raises(NotFoundError):
            await pipeline.publish_existing(job.id, "intruder")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_publish_existing_bad_status(self, store, site, owner, pipeline):
        job = _topic_job(store, site, owner)
        await pipeline.process(job)
        with pytest.raises(ValidationError):
            await pipeline.publish_existing(job.id, owner, "private")


# ===================================================================
# JobService
# ===================================================================


class TestJobService:

    @pytest.mark.unit
    def test_create_topic_job(self, job_service, site, owner):
        job = job_service.create_topic_job(owner, site.id, "  Winter gardening  ")
        assert job.status == JobStatus.PENDING
        assert job.source_type == SourceType.TOPIC
        assert job.execution_id is None

    @pytest.mark.unit
    def test_create_topic_job_validates(self, job_service, site, owner):
        with pytest.raises(ValidationError):
            job_service.create_topic_job(owner, site.id, "   ")
        with pytest.raises(NotFoundError):
            job_service.create_topic_job("intruder", site.id, "Topic")

    @pytest.mark.unit
    def test_list_and_stats(self, job_service, store, site, owner):
        job_service.create_topic_job(owner, site.id, "One")
        failed = job_service.create_topic_job(owner, site.id, "Two")
        store.transition_job(failed.id, JobStatus.PENDING, JobStatus.FAILED, {"error_message": "x"})

        items, total = job_service.list_jobs(owner, status="failed")
        assert total == 1
        assert items[0].id == failed.id

        stats = job_service.queue_stats(owner)
        assert stats["pending"] == 1
        assert stats["failed"] == 1
        assert stats["total"] == 2

    @pytest.mark.unit
    def test_list_unknown_status(self, job_service, owner):
        with pytest.raises(ValidationError):
            job_service.list_jobs(owner, status="LOST")

    @pytest.mark.unit
    def test_retry_creates_new_pending_job(self, job_service, store, site, owner):
        original = job_service.create_topic_job(owner, site.id, "Retry me")
        store.transition_job(original.id, JobStatus.PENDING, JobStatus.FAILED, {"error_message": "boom"})

        retried = job_service.retry_job(owner, original.id)
        assert retried.id != original.id
        assert retried.status == JobStatus.PENDING
        assert retried.topic == original.topic
        assert store.get_job(original.id).status == JobStatus.FAILED

    @pytest.mark.unit
    def test_retry_only_failed(self, job_service, site, owner):
        job = job_service.create_topic_job(owner, site.id, "Still pending")
        with pytest.raises(ValidationError):
            job_service.retry_job(owner, job.id)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_run_pending_processes_api_jobs(self, job_service, store, site, owner):
        job = job_service.create_topic_job(owner, site.id, "Queued from the API")
        processed = await job_service.run_pending(limit=5)
        assert processed == 1
        assert store.get_job(job.id).status == JobStatus.GENERATED
