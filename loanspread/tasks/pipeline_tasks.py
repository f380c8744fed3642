"""
Pipeline background tasks.

Celery beat fires these on a schedule. Each invocation leases jobs from the
pipeline table under its own owner id, so overlapping runs never share a job.
"""
import socket
from typing import Any, Dict

import structlog
from sqlalchemy.orm import Session

from loanspread.celery_app import celery_app
from loanspread.config import get_settings
from loanspread.database import SessionLocal
from loanspread.middleware.logging import correlation_scope
from loanspread.models.job import JobKind
from loanspread.services.pipeline import build_handlers
from loanspread.services.scheduler import JobLeaseScheduler

logger = structlog.get_logger(__name__)


def get_db_session() -> Session:
    """Get a database session for use in Celery tasks."""
    return SessionLocal()


def worker_owner(task_id: str) -> str:
    """Lease owner for one task invocation."""
    return f"{socket.gethostname()}:{task_id}"


def _with_correlation(handler):
    """Run a handler with the job id as correlation id."""
    def run(job):
        with correlation_scope(str(job.id)):
            return handler(job)
    return run


def _drain(task, kind: JobKind) -> Dict[str, Any]:
    settings = get_settings()
    db = get_db_session()
    owner = worker_owner(task.request.id)
    try:
        scheduler = JobLeaseScheduler.from_settings(db, owner, settings)
        handlers = build_handlers(db, settings)
        results = scheduler.drain(
            kind, _with_correlation(handlers[kind]), batch_size=settings.worker_batch_size
        )
        return {
            "kind": kind.value,
            "owner": owner,
            "processed": len(results),
            "results": [result.to_dict() for result in results],
        }
    finally:
        db.close()


@celery_app.task(bind=True)
def drain_extraction_queue(self) -> Dict[str, Any]:
    """Run due EXTRACT_DOCUMENT jobs."""
    return _drain(self, JobKind.EXTRACT_DOCUMENT)


@celery_app.task(bind=True)
def drain_render_queue(self) -> Dict[str, Any]:
    """Run due RENDER_SPREADS jobs."""
    return _drain(self, JobKind.RENDER_SPREADS)


@celery_app.task(bind=True)
def release_stale_leases(self) -> Dict[str, Any]:
    """
    Requeue RUNNING jobs whose lease has lapsed.

    The jobs keep their attempt count; the next drain picks them up.
    """
    settings = get_settings()
    db = get_db_session()
    try:
        scheduler = JobLeaseScheduler.from_settings(db, worker_owner(self.request.id), settings)
        released = scheduler.release_stale_leases()
        logger.info("stale_lease_sweep_finished", released=released)
        return {"released": released}
    finally:
        db.close()
