"""
Examiner grant model.

A scoped, expiring permission for a regulator to read specific cases and areas.
"""
import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import Boolean, Column, DateTime, String

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class ExaminerGrant(Base):
    """Read-only access grant for an examiner."""

    __tablename__ = "examiner_grants"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    examiner_name = Column(String(255), nullable=False)
    examiner_email = Column(String(255), nullable=True)
    case_ids = Column(JSONType, nullable=False, default=list)
    read_areas = Column(JSONType, nullable=False, default=list)
    allow_downloads = Column(Boolean, nullable=False, default=False)
    expires_at = Column(DateTime, nullable=True)
    revoked_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<ExaminerGrant {self.id} examiner='{self.examiner_name}'>"

    def is_active(self, now: Optional[datetime] = None) -> bool:
        """Not revoked and not past expiry."""
        now = now or utcnow()
        if self.revoked_at is not None:
            return False
        return self.expires_at is None or self.expires_at > now
