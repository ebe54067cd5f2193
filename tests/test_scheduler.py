"""
Tests for the schedule runner and the scheduler driver.

End-to-end scenarios run against the in-memory store with the RSS
parser, content generator and publisher mocked out.
"""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from conftest import make_article, make_feed_items
from wpautopilot.errors import ConcurrencyError, NotFoundError, UpstreamError
from wpautopilot.models import ExecutionOutcome, JobStatus
from wpautopilot.rss_parser import FeedData
from wpautopilot.runner import RunResult

UTC = timezone.utc
NINE = datetime(2026, 3, 10, 9, 0, tzinfo=UTC)


def _feed(items):
    return FeedData(title="Example News", description="", link="https://news.example.com", items=items)


# ===================================================================
# ScheduleRunner
# ===================================================================


class TestScheduleRunner:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_cap_limits_fresh_items(self, runner, make_schedule, store, clock):
        schedule = make_schedule(max_articles_per_run=2)
        execution = store.add_execution(schedule.id, clock.now)
        result = await runner.run(schedule, execution)
        assert result.to_dict() == {"created": 2, "failed": 0, "skipped": 0}

        jobs, total = store.list_jobs(schedule.owner_id, schedule_id=schedule.id)
        assert total == 2
        assert all(j.execution_id == execution.id for j in jobs)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_known_items_are_skipped(self, runner, make_schedule, store, clock, fake_rss):
        schedule = make_schedule()
        first = store.add_execution(schedule.id, clock.now)
        await runner.run(schedule, first)

        fake_rss.parse_feed = AsyncMock(return_value=_feed(make_feed_items(4)))
        second = store.add_execution(schedule.id, clock.now)
        result = await runner.run(schedule, second)
        assert result.created == 1
        assert result.skipped == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_failed_item_is_retried_on_next_run(self, runner, make_schedule, store, clock, fake_generator):
        schedule = make_schedule()
        fake_generator.generate = AsyncMock(side_effect=UpstreamError("AI request timed out"))
        first = await runner.run(schedule, store.add_execution(schedule.id, clock.now))
        assert first.failed == 3

        fake_generator.generate = AsyncMock(return_value=make_article())
        second = await runner.run(schedule, store.add_execution(schedule.id, clock.now))
        assert second.created == 3
        assert second.skipped == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_topic_schedule_creates_one_job(self, runner, make_schedule, store, clock, fake_rss):
        schedule = make_schedule(rss_feed_id=None, topic="Weekly gardening tips")
        result = await runner.run(schedule, store.add_execution(schedule.id, clock.now))
        assert result.created == 1
        fake_rss.parse_feed.assert_not_called()

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_missing_site_raises(self, runner, make_schedule, store, site, owner, clock):
        schedule = make_schedule()
        store.delete_site(site.id, owner)
        with pytest.raises(NotFoundError, match="no longer exists"):
            await runner.run(schedule, store.add_execution(schedule.id, clock.now))

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_feed_error_propagates_with_partial_counts(self, runner, make_schedule, store, clock, fake_rss):
        schedule = make_schedule()
        fake_rss.parse_feed = AsyncMock(side_effect=UpstreamError("Failed to fetch feed: HTTP 503"))
        result = RunResult()
        with pytest.raises(UpstreamError):
            await runner.run(schedule, store.add_execution(schedule.id, clock.now), result)
        assert result.created == 0


# ===================================================================
# AutomationScheduler
# ===================================================================


class TestAutomationScheduler:

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_daily_run_with_cap(self, scheduler, make_schedule, store, clock):
        """0 9 * * * UTC, cap 2, three feed items: two jobs, next run tomorrow 09:00."""
        schedule = make_schedule(cron_expression="0 9 * * *", max_articles_per_run=2)
        assert schedule.next_run_at == NINE

        clock.set(NINE)
        assert scheduler.due_schedules() == [schedule.id]
        execution = await scheduler.run_schedule(schedule.id)

        assert execution.outcome == ExecutionOutcome.SUCCESS
        assert execution.articles_created == 2
        assert execution.articles_failed == 0
        assert execution.finished_at is not None

        jobs, total = store.list_jobs(schedule.owner_id, schedule_id=schedule.id)
        assert total == 2
        assert {j.status for j in jobs} == {JobStatus.GENERATED}

        stored = store.get_schedule(schedule.id)
        assert stored.last_run_at == NINE
        assert stored.next_run_at == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)
        assert stored.claim_token is None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_second_run_dedups(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule()
        clock.set(NINE)
        await scheduler.run_schedule(schedule.id)
        clock.set(NINE + timedelta(days=1))
        second = await scheduler.run_schedule(schedule.id)

        assert second.articles_created == 0
        assert second.articles_skipped == 3
        assert second.outcome == ExecutionOutcome.SUCCESS
        assert store.list_jobs(schedule.owner_id, schedule_id=schedule.id)[1] == 3

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_partial_outcome(self, scheduler, make_schedule, clock, fake_generator):
        calls = {"n": 0}

        async def _flaky(job):
            calls["n"] += 1
            if calls["n"] == 2:
                raise UpstreamError("AI request timed out after 30s")
            return make_article()

        fake_generator.generate = AsyncMock(side_effect=_flaky)
        schedule = make_schedule()
        clock.set(NINE)
        execution = await scheduler.run_schedule(schedule.id)
        assert execution.outcome == ExecutionOutcome.PARTIAL
        assert (execution.articles_created, execution.articles_failed) == (2, 1)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_feed_failure_closes_execution_as_failure(self, scheduler, make_schedule, store, clock, fake_rss):
        fake_rss.parse_feed = AsyncMock(side_effect=UpstreamError("Failed to fetch feed: HTTP 503"))
        schedule = make_schedule()
        clock.set(NINE)
        execution = await scheduler.run_schedule(schedule.id)
        assert execution.outcome == ExecutionOutcome.FAILURE
        assert "HTTP 503" in execution.error_message

        stored = store.get_schedule(schedule.id)
        assert stored.claim_token is None
        assert stored.next_run_at == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_no_overlapping_executions(self, scheduler, make_schedule, store, clock, fake_rss):
        release = asyncio.Event()

        async def _slow_feed(url):
            await release.wait()
            return _feed(make_feed_items(1))

        fake_rss.parse_feed = AsyncMock(side_effect=_slow_feed)
        schedule = make_schedule()
        clock.set(NINE)

        first = asyncio.create_task(scheduler.run_schedule(schedule.id))
        await asyncio.sleep(0)
        with pytest.raises(ConcurrencyError):
            await scheduler.execute_now(schedule.id, schedule.owner_id)

        release.set()
        await first
        executions, total = store.list_executions(schedule.id)
        assert total == 1

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_execute_now_other_owner(self, scheduler, make_schedule):
        schedule = make_schedule()
        with pytest.raises(NotFoundError):
            await scheduler.execute_now(schedule.id, "intruder")

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_execute_now_without_waiting(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule()
        clock.set(NINE + timedelta(minutes=30))
        execution = await scheduler.execute_now(schedule.id, schedule.owner_id, wait=False)
        assert execution.finished_at is None

        for _ in range(50):
            if store.get_execution(execution.id).finished_at is not None:
                break
            await asyncio.sleep(0.01)
        assert store.get_execution(execution.id).outcome == ExecutionOutcome.SUCCESS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_once_schedule_deactivates_after_run(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule(schedule_type="ONCE", scheduled_for=NINE)
        clock.set(NINE)
        await scheduler.run_schedule(schedule.id)
        stored = store.get_schedule(schedule.id)
        assert stored.is_active is False
        assert stored.next_run_at is None
        assert scheduler.due_schedules(NINE + timedelta(days=1)) == []

    @pytest.mark.unit
    def test_recover_stale_claims(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule()
        store.claim_schedule(schedule.id, clock.now)
        execution = store.add_execution(schedule.id, clock.now)

        assert scheduler.recover_stale_claims(clock.now + timedelta(seconds=60)) == 0
        assert scheduler.recover_stale_claims(clock.now + timedelta(hours=1)) == 1

        closed = store.get_execution(execution.id)
        assert closed.outcome == ExecutionOutcome.FAILURE
        assert "abandoned" in closed.error_message
        assert store.get_schedule(schedule.id).claim_token is None

    @pytest.mark.unit
    def test_recovery_skips_runs_active_in_this_process(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule()
        store.claim_schedule(schedule.id, clock.now)
        scheduler._active_runs.add(schedule.id)
        assert scheduler.recover_stale_claims(clock.now + timedelta(hours=1)) == 0
        assert store.get_schedule(schedule.id).claim_token is not None

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_start_tick_stop(self, scheduler, make_schedule, store, clock):
        schedule = make_schedule()
        clock.set(NINE)
        await scheduler.start()
        try:
            assert scheduler.is_running
            for _ in range(100):
                if store.list_executions(schedule.id)[1] and store.get_schedule(schedule.id).claim_token is None:
                    break
                await asyncio.sleep(0.02)
        finally:
            await scheduler.stop()

        assert not scheduler.is_running
        executions, total = store.list_executions(schedule.id)
        assert total == 1
        assert executions[0].outcome == ExecutionOutcome.SUCCESS

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_tick_without_start_enqueues_nothing(self, scheduler, make_schedule, clock):
        make_schedule()
        clock.set(NINE)
        assert await scheduler.tick() == 0

    @pytest.mark.unit
    @pytest.mark.asyncio
    async def test_worker_without_start_exits(self, scheduler, caplog):
        with caplog.at_level("WARNING", logger="scheduler"):
            await asyncio.wait_for(scheduler._worker(0), timeout=1)
        assert "not started" in caplog.text
