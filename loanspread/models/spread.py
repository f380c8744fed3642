"""
Stored spread model.

One row per (tenant, case, spread type); the payload is replaced wholesale on every render.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Enum as SQLEnum, String, Text, UniqueConstraint

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class SpreadStatus(str, Enum):
    """Spread render status."""
    QUEUED = "queued"
    READY = "ready"
    ERROR = "error"


class StoredSpread(Base):
    """Latest rendered spread for a case."""

    __tablename__ = "stored_spreads"
    __table_args__ = (
        UniqueConstraint("tenant_id", "case_id", "spread_type", name="uq_stored_spreads_case_type"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    spread_type = Column(String(64), nullable=False)
    status = Column(SQLEnum(SpreadStatus), default=SpreadStatus.QUEUED, nullable=False)
    payload = Column(JSONType, nullable=True)
    error_message = Column(Text, nullable=True)
    generated_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<StoredSpread {self.case_id}/{self.spread_type} status={self.status}>"
