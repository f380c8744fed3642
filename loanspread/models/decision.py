"""
Credit decision, committee and snapshot models.

Overrides, attestations, votes and snapshots are append-only: a correction is a new row.
"""
import uuid
from enum import Enum

from sqlalchemy import Column, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from loanspread.database import Base
from loanspread.models.types import JSONType, UUID
from loanspread.utils.clock import utcnow


class VoteChoice(str, Enum):
    """Committee vote values."""
    APPROVE = "approve"
    APPROVE_WITH_CONDITIONS = "approve_with_conditions"
    DECLINE = "decline"


class CreditDecision(Base):
    """Decision record for a loan case."""

    __tablename__ = "credit_decisions"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    status = Column(String(32), nullable=False, default="draft")
    outcome = Column(String(64), nullable=True)
    summary = Column(Text, nullable=True)
    confidence = Column(Float, nullable=True)
    confidence_explanation = Column(Text, nullable=True)
    created_by_user_id = Column(String(64), nullable=True)
    model = Column(String(128), nullable=True)
    policy_results = Column(JSONType, nullable=True)
    committee_minutes = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    overrides = relationship(
        "DecisionOverride", back_populates="decision", order_by="DecisionOverride.created_at",
    )
    attestations = relationship(
        "DecisionAttestation", back_populates="decision", order_by="DecisionAttestation.created_at",
    )

    def __repr__(self) -> str:
        return f"<CreditDecision {self.id} case={self.case_id} outcome={self.outcome}>"


class DecisionOverride(Base):
    """Manual override of a decision field."""

    __tablename__ = "decision_overrides"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    decision_id = Column(UUID(), ForeignKey("credit_decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    field_path = Column(String(255), nullable=False)
    old_value = Column(JSONType, nullable=True)
    new_value = Column(JSONType, nullable=True)
    reason = Column(Text, nullable=True)
    justification = Column(Text, nullable=True)
    severity = Column(String(32), nullable=True)
    created_by_user_id = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    decision = relationship("CreditDecision", back_populates="overrides")


class DecisionAttestation(Base):
    """Signed statement by a reviewer about a decision."""

    __tablename__ = "decision_attestations"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    decision_id = Column(UUID(), ForeignKey("credit_decisions.id", ondelete="CASCADE"), nullable=False, index=True)
    attested_by_user_id = Column(String(64), nullable=False)
    attested_by_name = Column(String(255), nullable=True)
    attested_role = Column(String(64), nullable=True)
    statement = Column(Text, nullable=False)
    snapshot_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)

    decision = relationship("CreditDecision", back_populates="attestations")


class CommitteeMember(Base):
    """Credit committee roster entry for a case."""

    __tablename__ = "committee_members"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    name = Column(String(255), nullable=True)
    role = Column(String(64), nullable=True)


class CommitteeVote(Base):
    """A committee member's vote."""

    __tablename__ = "committee_votes"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    voter_user_id = Column(String(64), nullable=False)
    voter_name = Column(String(255), nullable=True)
    vote = Column(String(32), nullable=False)
    comment = Column(Text, nullable=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)


class DecisionSnapshotRecord(Base):
    """
    Persisted decision snapshot.

    The canonical hash sits next to the body, never inside it.
    """

    __tablename__ = "decision_snapshots"

    id = Column(UUID(), primary_key=True, default=uuid.uuid4)
    tenant_id = Column(String(64), nullable=False)
    case_id = Column(String(64), nullable=False, index=True)
    decision_id = Column(UUID(), ForeignKey("credit_decisions.id"), nullable=True)
    snapshot_version = Column(String(16), nullable=False, default="1.0")
    sequence = Column(Integer, nullable=False, default=1)
    body = Column(JSONType, nullable=False)
    snapshot_hash = Column(String(64), nullable=False, index=True)
    created_at = Column(DateTime, default=utcnow, nullable=False)
