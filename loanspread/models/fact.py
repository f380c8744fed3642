"""
Financial fact and rent-roll row models.
"""
import uuid
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import Column, DateTime, Float, Index, Integer, String, Text, UniqueConstraint

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow

HEARTBEAT_FACT_TYPE = "EXTRACTION_HEARTBEAT"


class Fact(Base):
    """
    A single normalized, provenance-tagged data point.

    Identity is (tenant, case, source document, fact type, fact key, period start,
    period end); re-extraction overwrites rather than duplicates.
    """

    __tablename__ = "financial_facts"
    __table_args__ = (
        UniqueConstraint(
            "tenant_id", "case_id", "source_document_id", "fact_type", "fact_key",
            "fact_period_start", "fact_period_end",
            name="uq_financial_facts_identity",
        ),
        Index("ix_financial_facts_lookup", "tenant_id", "case_id", "fact_type", "fact_key"),
    )

    id: uuid.UUID = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: str = Column(String(64), nullable=False)
    case_id: str = Column(String(64), nullable=False, index=True)
    source_document_id: str = Column(String(64), nullable=False, index=True)
    fact_type: str = Column(String(64), nullable=False)
    fact_key: str = Column(String(128), nullable=False)
    fact_period_start: Optional[str] = Column(String(10), nullable=True)
    fact_period_end: Optional[str] = Column(String(10), nullable=True)
    fact_value_num: Optional[float] = Column(Float, nullable=True)
    fact_value_text: Optional[str] = Column(Text, nullable=True)
    currency: str = Column(String(3), nullable=False, default="USD")
    confidence: Optional[float] = Column(Float, nullable=True)
    provenance = Column(JSONType, nullable=True)
    created_at: datetime = Column(DateTime, default=utcnow, nullable=False)
    updated_at: datetime = Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    def __repr__(self) -> str:
        return (
            f"<Fact {self.fact_type}.{self.fact_key} "
            f"period={self.fact_period_start}..{self.fact_period_end} value={self.fact_value_num}>"
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": str(self.id),
            "tenant_id": self.tenant_id,
            "case_id": self.case_id,
            "source_document_id": self.source_document_id,
            "fact_type": self.fact_type,
            "fact_key": self.fact_key,
            "fact_period_start": self.fact_period_start,
            "fact_period_end": self.fact_period_end,
            "fact_value_num": self.fact_value_num,
            "fact_value_text": self.fact_value_text,
            "currency": self.currency,
            "confidence": self.confidence,
            "provenance": self.provenance,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }


class RentRollRow(Base):
    """One unit line of an extracted rent roll."""

    __tablename__ = "rent_roll_rows"

    id: uuid.UUID = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id: str = Column(String(64), nullable=False)
    case_id: str = Column(String(64), nullable=False, index=True)
    source_document_id: str = Column(String(64), nullable=False, index=True)
    as_of_date: Optional[str] = Column(String(10), nullable=True)
    unit_id: str = Column(String(64), nullable=False)
    unit_type: Optional[str] = Column(String(64), nullable=True)
    sqft: Optional[float] = Column(Float, nullable=True)
    tenant_name: Optional[str] = Column(String(255), nullable=True)
    lease_start: Optional[str] = Column(String(10), nullable=True)
    lease_end: Optional[str] = Column(String(10), nullable=True)
    monthly_rent: Optional[float] = Column(Float, nullable=True)
    annual_rent: Optional[float] = Column(Float, nullable=True)
    market_rent_monthly: Optional[float] = Column(Float, nullable=True)
    occupancy_status: str = Column(String(16), nullable=False, default="OCCUPIED")
    concessions_monthly: Optional[float] = Column(Float, nullable=True)
    notes: Optional[str] = Column(Text, nullable=True)
    row_index: int = Column(Integer, nullable=False, default=0)
    created_at: datetime = Column(DateTime, default=utcnow, nullable=False)
