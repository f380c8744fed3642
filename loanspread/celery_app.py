"""
Celery application configuration.

Workers drain the pipeline job table on a beat schedule. Redis is only the
Celery broker; job state and leases live in the database.
"""
from celery import Celery
from celery.signals import worker_process_init

from loanspread.config import get_settings
from loanspread.middleware.logging import configure_logging

settings = get_settings()

# Create Celery application
celery_app = Celery(
    "loanspread",
    broker=settings.redis_url,
    backend=settings.redis_url,
    include=["loanspread.tasks.pipeline_tasks"],
)

# Celery configuration
celery_app.conf.update(
    # Task settings
    task_serializer="json",
    accept_content=["json"],
    result_serializer="json",
    timezone="UTC",
    enable_utc=True,

    # Task execution settings
    task_acks_late=True,  # Acknowledge after task completes (not before)
    task_reject_on_worker_lost=True,  # Requeue if worker dies
    task_time_limit=600,  # 10 minute hard limit
    task_soft_time_limit=540,  # 9 minute soft limit (allows cleanup)

    # Result settings
    result_expires=86400,  # Results expire after 24 hours

    # Worker settings
    worker_prefetch_multiplier=1,  # Process one task at a time

    # Beat scheduler: queue draining and the stale-lease observer
    beat_schedule={
        "drain-extraction-queue": {
            "task": "loanspread.tasks.pipeline_tasks.drain_extraction_queue",
            "schedule": 15.0,
        },
        "drain-render-queue": {
            "task": "loanspread.tasks.pipeline_tasks.drain_render_queue",
            "schedule": 15.0,
        },
        "release-stale-leases": {
            "task": "loanspread.tasks.pipeline_tasks.release_stale_leases",
            "schedule": float(settings.lease_ttl_seconds),
        },
    },
)

celery_app.conf.task_routes = {
    "loanspread.tasks.pipeline_tasks.drain_extraction_queue": {"queue": "extraction"},
    "loanspread.tasks.pipeline_tasks.drain_render_queue": {"queue": "rendering"},
}


@worker_process_init.connect
def _configure_worker_logging(**kwargs) -> None:
    configure_logging(settings.log_level, json_output=not settings.debug)
