"""
Ledger event model.

Case-scoped pipeline events surfaced to operators and referenced from decision snapshots.
"""
import uuid
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Enum as SQLEnum, Index, String, Text
from sqlalchemy.orm import Session

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class LedgerSeverity(str, Enum):
    """Severity levels for ledger events."""
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"


class LedgerEvent(Base):
    """Append-only pipeline event for a case."""

    __tablename__ = "ledger_events"
    __table_args__ = (
        Index("ix_ledger_events_case_created", "case_id", "created_at"),
    )

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False)
    event_key = Column(String(128), nullable=False, index=True)
    severity = Column(SQLEnum(LedgerSeverity), default=LedgerSeverity.INFO, nullable=False)
    message = Column(Text, nullable=True)
    meta = Column(JSONType, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    def __repr__(self) -> str:
        return f"<LedgerEvent {self.event_key} case={self.case_id}>"

    @classmethod
    def record(
        cls,
        db: Session,
        tenant_id: str,
        case_id: str,
        event_key: str,
        message: Optional[str] = None,
        severity: LedgerSeverity = LedgerSeverity.INFO,
        meta: Optional[Dict[str, Any]] = None,
    ) -> "LedgerEvent":
        """Add an event to the session. The caller commits."""
        event = cls(
            tenant_id=tenant_id,
            case_id=case_id,
            event_key=event_key,
            severity=severity,
            message=message,
            meta=meta or {},
        )
        db.add(event)
        return event
