"""
Job lease scheduler.

Workers share one job table and coordinate only through it. Leasing is a single
conditional UPDATE, so when several workers race for the same row exactly one
sees rowcount == 1. A lease that expires without completion is reclaimed by the
next lease attempt; completion and failure are conditional on the lease owner.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

import structlog
from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from loanspread.exceptions import JobNotFoundError, LeaseLostError
from loanspread.models.job import JobKind, JobStatus, PipelineJob
from loanspread.utils.clock import Clock, utcnow

logger = structlog.get_logger(__name__)

MAX_ERROR_LENGTH = 2000
LEASE_CANDIDATES = 5

JobHandler = Callable[[PipelineJob], Optional[Dict[str, Any]]]


def compute_backoff(attempt: int, base_seconds: int, cap_seconds: int) -> timedelta:
    """Delay before retry number `attempt`: min(base * 2^attempt, cap)."""
    return timedelta(seconds=min(base_seconds * (2 ** max(attempt, 0)), cap_seconds))


@dataclass
class JobRunResult:
    """What happened to one leased job."""

    job_id: str
    kind: str
    status: str
    attempt: int
    error: Optional[str] = None
    output: Optional[Dict[str, Any]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job_id": self.job_id,
            "kind": self.kind,
            "status": self.status,
            "attempt": self.attempt,
            "error": self.error,
            "output": self.output,
        }


class JobLeaseScheduler:
    """
    Leases, completes and retries pipeline jobs for one worker.

    Args:
        db: Session owned by the caller.
        owner: Lease owner id, unique per worker invocation.
        lease_ttl_seconds: How long a lease lasts before it may be reclaimed.
        backoff_base_seconds: Base of the exponential retry delay.
        backoff_cap_seconds: Ceiling of the retry delay.
        clock: Source of "now" (naive UTC).
    """

    def __init__(
        self,
        db: Session,
        owner: str,
        lease_ttl_seconds: int = 180,
        backoff_base_seconds: int = 30,
        backoff_cap_seconds: int = 3600,
        clock: Clock = utcnow,
    ):
        self.db = db
        self.owner = owner
        self.lease_ttl = timedelta(seconds=lease_ttl_seconds)
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.clock = clock

    @classmethod
    def from_settings(cls, db: Session, owner: str, settings: Any, clock: Clock = utcnow) -> "JobLeaseScheduler":
        return cls(
            db,
            owner,
            lease_ttl_seconds=settings.lease_ttl_seconds,
            backoff_base_seconds=settings.backoff_base_seconds,
            backoff_cap_seconds=settings.backoff_cap_seconds,
            clock=clock,
        )

    @staticmethod
    def _leasable(now: datetime):
        """Due QUEUED rows, or RUNNING rows whose lease has lapsed."""
        return or_(
            and_(PipelineJob.status == JobStatus.QUEUED, PipelineJob.next_run_at <= now),
            and_(
                PipelineJob.status == JobStatus.RUNNING,
                PipelineJob.leased_until.isnot(None),
                PipelineJob.leased_until < now,
            ),
        )

    def lease(self, kind: Optional[JobKind] = None, case_id: Optional[str] = None) -> Optional[PipelineJob]:
        """
        Lease the next due job, or return None.

        Candidates are read first, then claimed one at a time with a conditional
        UPDATE that repeats the leasable predicate; losing a race just moves on
        to the next candidate.
        """
        now = self.clock()
        query = self.db.query(PipelineJob.id, PipelineJob.lease_owner).filter(self._leasable(now))
        if kind is not None:
            query = query.filter(PipelineJob.kind == kind)
        if case_id is not None:
            query = query.filter(PipelineJob.case_id == case_id)
        candidates = query.order_by(PipelineJob.next_run_at, PipelineJob.created_at).limit(LEASE_CANDIDATES).all()

        for job_id, previous_owner in candidates:
            claimed = (
                self.db.query(PipelineJob)
                .filter(PipelineJob.id == job_id, self._leasable(now))
                .update(
                    {
                        PipelineJob.status: JobStatus.RUNNING,
                        PipelineJob.lease_owner: self.owner,
                        PipelineJob.leased_until: now + self.lease_ttl,
                        PipelineJob.updated_at: now,
                    },
                    synchronize_session=False,
                )
            )
            self.db.commit()
            if claimed != 1:
                logger.debug("job_lease_contended", job_id=str(job_id), owner=self.owner)
                continue

            job = self.db.get(PipelineJob, job_id)
            self.db.refresh(job)
            if previous_owner:
                logger.warning(
                    "job_lease_reclaimed",
                    job_id=str(job_id),
                    previous_owner=previous_owner,
                    owner=self.owner,
                )
            logger.info("job_leased", job_id=str(job_id), kind=job.kind.value, owner=self.owner, attempt=job.attempt)
            return job
        return None

    def _owned(self, job_id):
        return and_(
            PipelineJob.id == job_id,
            PipelineJob.status == JobStatus.RUNNING,
            PipelineJob.lease_owner == self.owner,
        )

    def complete(self, job_id) -> None:
        """
        Mark a leased job SUCCEEDED.

        Raises:
            LeaseLostError: The job is no longer RUNNING under this owner.
        """
        now = self.clock()
        updated = (
            self.db.query(PipelineJob)
            .filter(self._owned(job_id))
            .update(
                {
                    PipelineJob.status: JobStatus.SUCCEEDED,
                    PipelineJob.last_error: None,
                    PipelineJob.leased_until: None,
                    PipelineJob.completed_at: now,
                    PipelineJob.updated_at: now,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        if updated != 1:
            raise LeaseLostError(str(job_id), self.owner)
        logger.info("job_succeeded", job_id=str(job_id), owner=self.owner)

    def fail_or_retry(self, job_id, error: str) -> JobStatus:
        """
        Record a failed attempt.

        The attempt counter increments; once it reaches max_attempts the job is
        FAILED, otherwise it is re-queued after an exponential backoff.

        Raises:
            JobNotFoundError: Unknown job id.
            LeaseLostError: The job is no longer RUNNING under this owner.
        """
        job = self.db.get(PipelineJob, job_id)
        if job is None:
            raise JobNotFoundError(str(job_id))
        self.db.refresh(job)

        now = self.clock()
        attempt = job.attempt + 1
        error = (error or "")[:MAX_ERROR_LENGTH]
        values = {
            PipelineJob.attempt: attempt,
            PipelineJob.last_error: error,
            PipelineJob.leased_until: None,
            PipelineJob.updated_at: now,
        }
        if attempt >= job.max_attempts:
            status = JobStatus.FAILED
            values[PipelineJob.completed_at] = now
        else:
            status = JobStatus.QUEUED
            values[PipelineJob.lease_owner] = None
            values[PipelineJob.next_run_at] = now + compute_backoff(
                attempt, self.backoff_base_seconds, self.backoff_cap_seconds
            )
        values[PipelineJob.status] = status

        updated = (
            self.db.query(PipelineJob)
            .filter(self._owned(job_id), PipelineJob.attempt == job.attempt)
            .update(values, synchronize_session=False)
        )
        self.db.commit()
        if updated != 1:
            raise LeaseLostError(str(job_id), self.owner)

        log = logger.error if status == JobStatus.FAILED else logger.warning
        log(
            "job_failed" if status == JobStatus.FAILED else "job_retry_scheduled",
            job_id=str(job_id),
            attempt=attempt,
            max_attempts=job.max_attempts,
            error=error,
        )
        return status

    def release_stale_leases(self, kind: Optional[JobKind] = None) -> int:
        """
        Put RUNNING jobs with expired leases back on the queue.

        Optional: lease() already reclaims them. This exists so an observer can
        surface orphaned work with a readable error.
        """
        now = self.clock()
        query = self.db.query(PipelineJob.id, PipelineJob.lease_owner).filter(
            PipelineJob.status == JobStatus.RUNNING,
            PipelineJob.leased_until.isnot(None),
            PipelineJob.leased_until < now,
        )
        if kind is not None:
            query = query.filter(PipelineJob.kind == kind)

        released = 0
        for job_id, stale_owner in query.all():
            updated = (
                self.db.query(PipelineJob)
                .filter(
                    PipelineJob.id == job_id,
                    PipelineJob.status == JobStatus.RUNNING,
                    PipelineJob.leased_until < now,
                )
                .update(
                    {
                        PipelineJob.status: JobStatus.QUEUED,
                        PipelineJob.lease_owner: None,
                        PipelineJob.leased_until: None,
                        PipelineJob.next_run_at: now,
                        PipelineJob.updated_at: now,
                        PipelineJob.last_error: f"[observer] orphaned - lease expired, worker {stale_owner} stale",
                    },
                    synchronize_session=False,
                )
            )
            released += updated
        self.db.commit()
        if released:
            logger.warning("stale_leases_released", count=released)
        return released

    def process_next(self, kind: Optional[JobKind], handler: JobHandler) -> Optional[JobRunResult]:
        """
        Lease one job, run the handler, then complete or fail it.

        Handler exceptions never escape; they are recorded on the job.
        """
        job = self.lease(kind)
        if job is None:
            return None

        job_id = job.id
        attempt = job.attempt
        kind_value = job.kind.value
        structlog.contextvars.bind_contextvars(job_id=str(job_id))
        try:
            try:
                output = handler(job)
            except Exception as e:
                self.db.rollback()
                logger.warning("job_handler_failed", job_id=str(job_id), error=str(e), error_type=type(e).__name__)
                status = self.fail_or_retry(job_id, f"{type(e).__name__}: {e}")
                return JobRunResult(str(job_id), kind_value, status.value, attempt + 1, error=str(e))

            self.complete(job_id)
            return JobRunResult(str(job_id), kind_value, JobStatus.SUCCEEDED.value, attempt, output=output)
        except LeaseLostError as e:
            logger.warning("job_lease_lost", job_id=str(job_id), owner=self.owner)
            return JobRunResult(str(job_id), kind_value, "LEASE_LOST", attempt, error=e.message)
        finally:
            structlog.contextvars.unbind_contextvars("job_id")

    def drain(self, kind: Optional[JobKind], handler: JobHandler, batch_size: int = 10) -> List[JobRunResult]:
        """Process jobs until none is due or batch_size jobs have run."""
        results = []
        for _ in range(batch_size):
            result = self.process_next(kind, handler)
            if result is None:
                break
            results.append(result)
        if results:
            logger.info(
                "job_queue_drained",
                kind=kind.value if kind else None,
                processed=len(results),
                failed=sum(1 for r in results if r.status != JobStatus.SUCCEEDED.value),
            )
        return results
