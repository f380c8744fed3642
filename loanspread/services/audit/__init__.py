"""Decision snapshots, examiner drops and integrity verification."""
from loanspread.services.audit.manifest import (
    Artifact,
    ExaminerDrop,
    ExaminerDropBuilder,
    ManifestBuilder,
    compute_drop_hash,
    write_zip,
)
from loanspread.services.audit.snapshot_builder import (
    AuditSnapshotBuilder,
    SnapshotResult,
    committee_outcome,
    committee_quorum,
)
from loanspread.services.audit.verifier import IntegrityVerifier, VerificationResult, verify_artifact_set

__all__ = [
    "Artifact",
    "ExaminerDrop",
    "ExaminerDropBuilder",
    "ManifestBuilder",
    "compute_drop_hash",
    "write_zip",
    "AuditSnapshotBuilder",
    "SnapshotResult",
    "committee_outcome",
    "committee_quorum",
    "IntegrityVerifier",
    "VerificationResult",
    "verify_artifact_set",
]
