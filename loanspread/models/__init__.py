"""Models package."""
from loanspread.models.access import ExaminerGrant
from loanspread.models.audit import LedgerEvent, LedgerSeverity
from loanspread.models.decision import (
    CommitteeMember,
    CommitteeVote,
    CreditDecision,
    DecisionAttestation,
    DecisionOverride,
    DecisionSnapshotRecord,
    VoteChoice,
)
from loanspread.models.document import DocumentStatus, SourceDocument
from loanspread.models.fact import HEARTBEAT_FACT_TYPE, Fact, RentRollRow
from loanspread.models.job import JobKind, JobStatus, PipelineJob
from loanspread.models.spread import SpreadStatus, StoredSpread

__all__ = [
    "ExaminerGrant",
    "LedgerEvent", "LedgerSeverity",
    "CommitteeMember", "CommitteeVote", "CreditDecision", "DecisionAttestation",
    "DecisionOverride", "DecisionSnapshotRecord", "VoteChoice",
    "DocumentStatus", "SourceDocument",
    "HEARTBEAT_FACT_TYPE", "Fact", "RentRollRow",
    "JobKind", "JobStatus", "PipelineJob",
    "SpreadStatus", "StoredSpread",
]
