"""
Tests for the relational store.

Focus on the pieces the scheduler relies on: the schedule claim
compare-and-set, release with next-run computation, stale-claim recovery,
job dedup and job status compare-and-set.
"""

from datetime import datetime, timedelta, timezone

import pytest

from wpautopilot.errors import ConcurrencyError, DuplicateJobError, NotFoundError
from wpautopilot.models import (
    AutomationJob,
    ExecutionOutcome,
    JobStatus,
    SourceType,
)
from wpautopilot.schedule_engine import compute_next_run

UTC = timezone.utc


def _job(schedule, source_url="https://news.example.com/a", status=JobStatus.PENDING, **fields):
    return AutomationJob(
        owner_id=schedule.owner_id,
        site_id=schedule.site_id,
        schedule_id=schedule.id,
        source_type=SourceType.RSS,
        source_url=source_url,
        source_title="A",
        status=status,
        tokens_used=0,
        ai_cost=0.0,
        **fields,
    )


# ===================================================================
# Claims
# ===================================================================


class TestScheduleClaims:

    @pytest.mark.unit
    def test_claim_then_second_claim_conflicts(self, store, make_schedule, clock):
        schedule = make_schedule()
        token = store.claim_schedule(schedule.id, clock.now)
        assert token
        with pytest.raises(ConcurrencyError):
            store.claim_schedule(schedule.id, clock.now)

    @pytest.mark.unit
    def test_claim_missing_schedule(self, store, clock):
        with pytest.raises(NotFoundError):
            store.claim_schedule("does-not-exist", clock.now)

    @pytest.mark.unit
    def test_claimed_schedule_not_due(self, store, make_schedule, clock):
        schedule = make_schedule()
        later = clock.now + timedelta(hours=2)
        assert store.due_schedule_ids(later) == [schedule.id]
        store.claim_schedule(schedule.id, later)
        assert store.due_schedule_ids(later) == []

    @pytest.mark.unit
    def test_release_sets_last_and_next_run(self, store, make_schedule):
        schedule = make_schedule()
        fired = datetime(2026, 3, 10, 9, 0, 5, tzinfo=UTC)
        token = store.claim_schedule(schedule.id, fired)
        released = store.release_schedule(
            schedule.id, token, fired, lambda current: compute_next_run(current, fired)
        )
        assert released.claim_token is None
        assert released.last_run_at == fired
        assert released.next_run_at == datetime(2026, 3, 11, 9, 0, tzinfo=UTC)

    @pytest.mark.unit
    def test_release_with_wrong_token_is_ignored(self, store, make_schedule, clock):
        schedule = make_schedule()
        store.claim_schedule(schedule.id, clock.now)
        assert store.release_schedule(schedule.id, "not-the-token", clock.now, lambda s: None) is None
        assert store.get_schedule(schedule.id).claim_token is not None

    @pytest.mark.unit
    def test_release_of_paused_schedule_keeps_it_paused(self, store, make_schedule, schedules, owner, clock):
        schedule = make_schedule()
        token = store.claim_schedule(schedule.id, clock.now)
        schedules.pause(owner, schedule.id)
        released = store.release_schedule(
            schedule.id, token, clock.now, lambda current: compute_next_run(current, clock.now)
        )
        assert released.is_active is False
        assert released.next_run_at is None

    @pytest.mark.unit
    def test_release_exhausted_once_deactivates(self, store, make_schedule, clock):
        schedule = make_schedule(schedule_type="ONCE", scheduled_for=clock.now + timedelta(minutes=5))
        fired = clock.now + timedelta(minutes=5)
        token = store.claim_schedule(schedule.id, fired)
        released = store.release_schedule(
            schedule.id, token, fired, lambda current: compute_next_run(current, fired)
        )
        assert released.is_active is False
        assert released.next_run_at is None


class TestStaleRecovery:

    @pytest.mark.unit
    def test_recover_closes_execution_and_fails_jobs(self, store, make_schedule, clock):
        schedule = make_schedule()
        store.claim_schedule(schedule.id, clock.now)
        execution = store.add_execution(schedule.id, clock.now)
        job = store.add_job(_job(schedule, execution_id=execution.id, status=JobStatus.GENERATING))

        later = clock.now + timedelta(hours=1)
        assert store.stale_claim_ids(later, 600) == [schedule.id]
        assert store.recover_claim(schedule.id, later, 600, "Run abandoned") is True

        closed = store.get_execution(execution.id)
        assert closed.outcome == ExecutionOutcome.FAILURE
        assert closed.error_message == "Run abandoned"
        assert store.get_job(job.id).status == JobStatus.FAILED
        assert store.get_schedule(schedule.id).claim_token is None

    @pytest.mark.unit
    def test_fresh_claim_not_recovered(self, store, make_schedule, clock):
        schedule = make_schedule()
        store.claim_schedule(schedule.id, clock.now)
        soon = clock.now + timedelta(seconds=30)
        assert store.stale_claim_ids(soon, 600) == []
        assert store.recover_claim(schedule.id, soon, 600, "x") is False


# ===================================================================
# Jobs
# ===================================================================


class TestJobs:

    @pytest.mark.unit
    def test_duplicate_live_job_rejected(self, store, make_schedule):
        schedule = make_schedule()
        store.add_job(_job(schedule))
        with pytest.raises(DuplicateJobError):
            store.add_job(_job(schedule))

    @pytest.mark.unit
    def test_failed_job_does_not_block_new_one(self, store, make_schedule):
        schedule = make_schedule()
        store.add_job(_job(schedule, status=JobStatus.FAILED))
        assert store.find_live_job(schedule.id, "https://news.example.com/a") is None
        store.add_job(_job(schedule))
        assert store.find_live_job(schedule.id, "https://news.example.com/a") is not None

    @pytest.mark.unit
    def test_transition_is_compare_and_set(self, store, make_schedule):
        schedule = make_schedule()
        job = store.add_job(_job(schedule))
        assert store.transition_job(job.id, JobStatus.PENDING, JobStatus.GENERATING) is True
        assert store.transition_job(job.id, JobStatus.PENDING, JobStatus.GENERATING) is False
        assert store.get_job(job.id).status == JobStatus.GENERATING

    @pytest.mark.unit
    def test_spend_accumulates(self, store, make_schedule):
        schedule = make_schedule()
        job = store.add_job(_job(schedule))
        store.add_job_spend(job.id, 100, 0.002, "claude-haiku-4-5-20251001")
        store.add_job_spend(job.id, 50, 0.001, "claude-haiku-4-5-20251001")
        stored = store.get_job(job.id)
        assert stored.tokens_used == 150
        assert stored.ai_cost == pytest.approx(0.003)
        assert stored.ai_model == "claude-haiku-4-5-20251001"

    @pytest.mark.unit
    def test_delete_site_deactivates_schedules(self, store, make_schedule, site, owner):
        schedule = make_schedule()
        assert store.delete_site(site.id, owner) is True
        stored = store.get_schedule(schedule.id)
        assert stored.is_active is False
        assert stored.next_run_at is None
