"""
Unit tests for the job lease scheduler.
"""
import uuid
from datetime import timedelta

import pytest

from loanspread.exceptions import JobNotFoundError, LeaseLostError
from loanspread.models.job import JobKind, JobStatus, PipelineJob
from loanspread.services.scheduler import JobLeaseScheduler, compute_backoff

TTL = 180


def _job(db, clock, kind=JobKind.RENDER_SPREADS, case_id="deal-1", max_attempts=3) -> PipelineJob:
    job = PipelineJob(
        tenant_id="bank-1",
        case_id=case_id,
        kind=kind,
        max_attempts=max_attempts,
        next_run_at=clock.now,
        created_at=clock.now,
        updated_at=clock.now,
        kind_metadata={},
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    return job


def _scheduler(db, clock, owner="worker-a") -> JobLeaseScheduler:
    return JobLeaseScheduler(
        db, owner, lease_ttl_seconds=TTL, backoff_base_seconds=30, backoff_cap_seconds=3600, clock=clock
    )


class _CandidateRows:
    """Query stand-in returning a fixed candidate list."""

    def __init__(self, rows):
        self.rows = rows

    def filter(self, *criteria):
        return self

    def order_by(self, *clauses):
        return self

    def limit(self, count):
        return self

    def all(self):
        return list(self.rows)


class TestBackoff:
    """Tests for retry delay."""

    def test_doubles_per_attempt(self):
        assert compute_backoff(1, 30, 3600) == timedelta(seconds=60)
        assert compute_backoff(2, 30, 3600) == timedelta(seconds=120)

    def test_monotonic_and_capped(self):
        delays = [compute_backoff(attempt, 30, 3600) for attempt in range(12)]
        assert delays == sorted(delays)
        assert delays[-1] == timedelta(seconds=3600)


class TestLease:
    """Tests for exclusive leasing."""

    def test_lease_marks_running(self, db_session, clock):
        job = _job(db_session, clock)
        leased = _scheduler(db_session, clock).lease(JobKind.RENDER_SPREADS)

        assert leased.id == job.id
        assert leased.status == JobStatus.RUNNING
        assert leased.lease_owner == "worker-a"
        assert leased.leased_until == clock.now + timedelta(seconds=TTL)

    def test_second_worker_gets_nothing(self, db_session, clock):
        _job(db_session, clock)
        assert _scheduler(db_session, clock, "worker-a").lease() is not None
        assert _scheduler(db_session, clock, "worker-b").lease() is None

    def test_filters_by_kind(self, db_session, clock):
        _job(db_session, clock, kind=JobKind.EXTRACT_DOCUMENT)
        assert _scheduler(db_session, clock).lease(JobKind.RENDER_SPREADS) is None

    def test_future_job_not_due(self, db_session, clock):
        job = _job(db_session, clock)
        job.next_run_at = clock.now + timedelta(minutes=5)
        db_session.commit()

        assert _scheduler(db_session, clock).lease() is None

    def test_expired_lease_is_reclaimed(self, db_session, clock):
        job = _job(db_session, clock)
        first = _scheduler(db_session, clock, "worker-a")
        second = _scheduler(db_session, clock, "worker-b")
        first.lease()

        clock.advance(seconds=TTL + 1)
        reclaimed = second.lease()

        assert reclaimed.id == job.id
        assert reclaimed.lease_owner == "worker-b"
        with pytest.raises(LeaseLostError):
            first.complete(job.id)

    def test_interleaved_leases_claim_once(self, db_session, clock, monkeypatch):
        """Test two workers that read the same candidates before claiming lease the job once."""
        job = _job(db_session, clock)
        first = _scheduler(db_session, clock, "worker-a")
        second = _scheduler(db_session, clock, "worker-b")
        real_query = db_session.query

        def query(*entities):
            # The (id, lease_owner) candidate read returns what both workers saw up front.
            if len(entities) == 2:
                return _CandidateRows([(job.id, None)])
            return real_query(*entities)

        monkeypatch.setattr(db_session, "query", query)
        leased = [first.lease(), second.lease()]
        monkeypatch.undo()

        assert leased[0].id == job.id
        assert leased[1] is None
        db_session.refresh(job)
        assert job.status == JobStatus.RUNNING
        assert job.lease_owner == "worker-a"


class TestCompletion:
    """Tests for completion and retry."""

    def test_complete(self, db_session, clock):
        job = _job(db_session, clock)
        scheduler = _scheduler(db_session, clock)
        scheduler.lease()
        scheduler.complete(job.id)

        db_session.refresh(job)
        assert job.status == JobStatus.SUCCEEDED
        assert job.leased_until is None
        assert job.completed_at == clock.now

    def test_complete_by_other_owner_fails(self, db_session, clock):
        job = _job(db_session, clock)
        _scheduler(db_session, clock, "worker-a").lease()

        with pytest.raises(LeaseLostError):
            _scheduler(db_session, clock, "worker-b").complete(job.id)

    def test_retry_then_fail(self, db_session, clock):
        job = _job(db_session, clock, max_attempts=2)
        scheduler = _scheduler(db_session, clock)

        scheduler.lease()
        assert scheduler.fail_or_retry(job.id, "boom") == JobStatus.QUEUED
        db_session.refresh(job)
        assert job.attempt == 1
        assert job.lease_owner is None
        assert job.next_run_at == clock.now + timedelta(seconds=60)

        assert scheduler.lease() is None
        clock.advance(seconds=61)
        assert scheduler.lease() is not None

        assert scheduler.fail_or_retry(job.id, "boom again") == JobStatus.FAILED
        db_session.refresh(job)
        assert job.status == JobStatus.FAILED
        assert job.attempt == 2
        assert job.last_error == "boom again"

    def test_error_truncated(self, db_session, clock):
        job = _job(db_session, clock)
        scheduler = _scheduler(db_session, clock)
        scheduler.lease()
        scheduler.fail_or_retry(job.id, "x" * 5000)

        db_session.refresh(job)
        assert len(job.last_error) == 2000

    def test_unknown_job(self, db_session, clock):
        with pytest.raises(JobNotFoundError):
            _scheduler(db_session, clock).fail_or_retry(uuid.uuid4(), "boom")


class TestStaleLeases:
    """Tests for the stale lease sweep."""

    def test_release_requeues_expired(self, db_session, clock):
        job = _job(db_session, clock)
        _scheduler(db_session, clock, "worker-a").lease()
        clock.advance(seconds=TTL + 1)

        released = _scheduler(db_session, clock, "observer").release_stale_leases()

        db_session.refresh(job)
        assert released == 1
        assert job.status == JobStatus.QUEUED
        assert job.lease_owner is None
        assert job.attempt == 0
        assert job.last_error.startswith("[observer]")
        assert "worker-a" in job.last_error

    def test_live_lease_untouched(self, db_session, clock):
        _job(db_session, clock)
        _scheduler(db_session, clock, "worker-a").lease()

        assert _scheduler(db_session, clock, "observer").release_stale_leases() == 0


class TestProcessNext:
    """Tests for lease, run and settle."""

    def test_success(self, db_session, clock):
        job = _job(db_session, clock)
        result = _scheduler(db_session, clock).process_next(None, lambda leased: {"done": True})

        assert result.job_id == str(job.id)
        assert result.status == "SUCCEEDED"
        assert result.output == {"done": True}

    def test_handler_failure_schedules_retry(self, db_session, clock):
        job = _job(db_session, clock)

        def handler(leased):
            raise RuntimeError("render exploded")

        result = _scheduler(db_session, clock).process_next(None, handler)

        db_session.refresh(job)
        assert result.status == "QUEUED"
        assert result.attempt == 1
        assert result.error == "render exploded"
        assert job.last_error == "RuntimeError: render exploded"

    def test_lost_lease_reported(self, db_session, clock):
        _job(db_session, clock)
        other = _scheduler(db_session, clock, "worker-b")

        def slow_handler(leased):
            clock.advance(seconds=TTL + 1)
            other.lease()
            return {}

        result = _scheduler(db_session, clock, "worker-a").process_next(None, slow_handler)
        assert result.status == "LEASE_LOST"

    def test_nothing_due(self, db_session, clock):
        assert _scheduler(db_session, clock).process_next(None, lambda leased: {}) is None

    def test_drain_respects_batch_size(self, db_session, clock):
        for case_id in ("deal-1", "deal-2", "deal-3"):
            _job(db_session, clock, case_id=case_id)

        results = _scheduler(db_session, clock).drain(None, lambda leased: {}, batch_size=2)

        assert len(results) == 2
        assert all(result.status == "SUCCEEDED" for result in results)
