"""
Pipeline job model.

Generic leased work item. Status transitions are owned by the job lease scheduler:
QUEUED -> RUNNING -> SUCCEEDED, or QUEUED -> RUNNING -> QUEUED (retry) -> ... -> FAILED.
"""
import uuid
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, Integer, String, Text

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class JobStatus(str, Enum):
    """Job status enumeration."""
    QUEUED = "QUEUED"        # Waiting for a lease (fresh or retry)
    RUNNING = "RUNNING"      # Leased by a worker
    SUCCEEDED = "SUCCEEDED"  # Terminal
    FAILED = "FAILED"        # Terminal, attempts exhausted


class JobKind(str, Enum):
    """Job kind enumeration."""
    EXTRACT_DOCUMENT = "EXTRACT_DOCUMENT"  # Run extraction for one source document
    RENDER_SPREADS = "RENDER_SPREADS"      # Re-render spreads for a case


ACTIVE_STATUSES = (JobStatus.QUEUED, JobStatus.RUNNING)
TERMINAL_STATUSES = (JobStatus.SUCCEEDED, JobStatus.FAILED)


class PipelineJob(Base):
    """Leased background job."""

    __tablename__ = "pipeline_jobs"
    __table_args__ = (
        Index("ix_pipeline_jobs_due", "kind", "status", "next_run_at"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    kind = Column(SQLEnum(JobKind), nullable=False)
    status = Column(SQLEnum(JobStatus), default=JobStatus.QUEUED, nullable=False)

    # Retry tracking
    attempt = Column(Integer, default=0, nullable=False)
    max_attempts = Column(Integer, default=3, nullable=False)

    # Lease
    lease_owner = Column(String(255), nullable=True)
    leased_until = Column(DateTime, nullable=True)
    next_run_at = Column(DateTime, default=utcnow, nullable=False)

    last_error = Column(Text, nullable=True)
    kind_metadata = Column(JSONType, nullable=True)

    # Timestamps
    created_at = Column(DateTime, default=utcnow, nullable=False)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    def __repr__(self) -> str:
        return f"<PipelineJob {self.id} kind={self.kind} status={self.status} attempt={self.attempt}>"

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def is_lease_stale(self, now: Optional[datetime] = None) -> bool:
        """Check if a RUNNING job's lease has lapsed."""
        now = now or utcnow()
        return (
            self.status == JobStatus.RUNNING
            and self.leased_until is not None
            and self.leased_until < now
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "kind": self.kind.value if self.kind else None,
            "status": self.status.value if self.status else None,
            "attempt": self.attempt,
            "max_attempts": self.max_attempts,
            "leased_until": self.leased_until.isoformat() if self.leased_until else None,
            "lease_owner": self.lease_owner,
            "next_run_at": self.next_run_at.isoformat() if self.next_run_at else None,
            "error": self.last_error,
            "kind_metadata": self.kind_metadata or {},
        }
