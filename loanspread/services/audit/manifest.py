"""
Artifact manifests and examiner drops.

A drop is an ordered set of artifacts plus a manifest binding each path to its
SHA-256, size and content type. The drop hash is the SHA-256 of the artifact
hashes joined with "|" in manifest order.
"""
import io
import uuid
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence

import structlog
from sqlalchemy.orm import Session

from loanspread.exceptions import ManifestError
from loanspread.models.audit import LedgerEvent
from loanspread.services.audit.snapshot_builder import AuditSnapshotBuilder, SnapshotResult
from loanspread.services.hashing import canonicalize, hash_value, sha256_hex
from loanspread.utils.clock import Clock, iso_timestamp, utcnow

logger = structlog.get_logger(__name__)

DROP_VERSION = "1.0"
DROP_HASH_DELIMITER = "|"

JSON_CONTENT = "application/json"
TEXT_CONTENT = "text/plain"

CREDIT_DECISION_PATH = "credit-decision/snapshot.json"
BORROWER_AUDIT_PATH = "borrower-audit/snapshot.json"
FINANCIALS_PATH = "financials/financial-snapshot.json"
POLICY_EVAL_PATH = "policies/policy-eval.json"
EXCEPTIONS_PATH = "policies/exceptions.json"
GOVERNANCE_PATH = "policies/model-governance.json"
PLAYBOOKS_PATH = "playbooks/examiner-playbooks.json"
README_PATH = "README.txt"
CHECKSUMS_PATH = "integrity/checksums.txt"
MANIFEST_PATH = "integrity/manifest.json"

ZIP_TIMESTAMP = (1980, 1, 1, 0, 0, 0)


@dataclass(frozen=True)
class Artifact:
    """One file in a drop."""

    path: str
    content: bytes
    content_type: str = TEXT_CONTENT

    @classmethod
    def json(cls, path: str, value: Any) -> "Artifact":
        """Canonical JSON artifact."""
        return cls(path, canonicalize(value).encode("utf-8"), JSON_CONTENT)

    @classmethod
    def text(cls, path: str, text: str) -> "Artifact":
        return cls(path, text.encode("utf-8"), TEXT_CONTENT)

    @property
    def sha256(self) -> str:
        return sha256_hex(self.content)

    def entry(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "sha256": self.sha256,
            "size_bytes": len(self.content),
            "content_type": self.content_type,
        }


def compute_drop_hash(hashes: Sequence[str]) -> str:
    return sha256_hex(DROP_HASH_DELIMITER.join(hashes))


def checksums_text(entries: Sequence[Mapping[str, Any]]) -> str:
    """`<sha256>  <path>` per line, sha256sum style."""
    return "".join(f"{entry['sha256']}  {entry['path']}\n" for entry in entries)


class ManifestBuilder:
    """Builds a manifest for an ordered artifact list."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def build(self, artifacts: Sequence[Artifact], **header: Any) -> Dict[str, Any]:
        """
        Manifest for the artifacts, in the given order.

        Args:
            artifacts: Artifacts in drop order.
            header: Extra top-level fields (case_id, sub-hashes, ...).

        Raises:
            ManifestError: No artifacts, or a path appears twice.
        """
        if not artifacts:
            raise ManifestError("A manifest needs at least one artifact")
        paths = [artifact.path for artifact in artifacts]
        duplicates = sorted({path for path in paths if paths.count(path) > 1})
        if duplicates:
            raise ManifestError("Duplicate artifact paths", details={"paths": duplicates})

        entries = [artifact.entry() for artifact in artifacts]
        return {
            "drop_version": DROP_VERSION,
            "generated_at": iso_timestamp(self.clock()),
            **header,
            "artifacts": entries,
            "drop_hash": compute_drop_hash([entry["sha256"] for entry in entries]),
        }


def _zip_entry(path: str) -> zipfile.ZipInfo:
    # Fixed timestamp so the same drop always packs to the same bytes
    info = zipfile.ZipInfo(path, date_time=ZIP_TIMESTAMP)
    info.compress_type = zipfile.ZIP_DEFLATED
    info.external_attr = 0o644 << 16
    return info


def write_zip(artifacts: Sequence[Artifact], manifest: Mapping[str, Any]) -> bytes:
    """Deflate-compressed zip of the artifacts, with the manifest written last."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=9) as archive:
        for artifact in artifacts:
            archive.writestr(_zip_entry(artifact.path), artifact.content, compresslevel=9)
        archive.writestr(
            _zip_entry(MANIFEST_PATH), canonicalize(dict(manifest)).encode("utf-8"), compresslevel=9
        )
    return buffer.getvalue()


# Static drop documents

MODEL_GOVERNANCE = {
    "governance_version": "1.0",
    "registry": [
        {
            "model_id": "deterministic-extraction",
            "purpose": "Parse financial line items from document text and structured fields",
            "provider": "internal",
            "decision_authority": "none",
            "human_override_required": True,
        },
        {
            "model_id": "legacy-llm-extraction",
            "purpose": "Fallback text-to-JSON line item extraction",
            "provider": "openai",
            "decision_authority": "none",
            "human_override_required": True,
        },
    ],
    "override_policy": {
        "override_is_mandatory": True,
        "description": (
            "Disagreement with a model output is recorded as an override with the field, "
            "old and new values, reason, justification, user and timestamp. Overrides are "
            "append-only and appear in every decision snapshot."
        ),
    },
    "human_in_the_loop": {
        "description": "Models are assistive only. Credit decisions are made and attested by people.",
    },
}

EXAMINER_PLAYBOOKS = {
    "playbook_version": "1.0",
    "credit_decision_process": (
        "Each decision snapshot records the decision, the financial metrics with their sources, "
        "the policy rule results and exceptions, overrides, attestations and the committee record. "
        "The committee outcome is decline if any member declines, otherwise approve with "
        "conditions if any member conditions their approval, otherwise approve once a quorum "
        "of half the committee has voted."
    ),
    "override_handling": (
        "Overrides and attestations are never edited. A new override produces a new snapshot "
        "with a new hash."
    ),
    "integrity_verification": (
        "Every artifact is listed in integrity/manifest.json with its SHA-256. The drop hash is "
        "the SHA-256 of all artifact hashes joined with '|' in manifest order. "
        "integrity/checksums.txt can be checked with `sha256sum -c`."
    ),
    "audit_artifacts_map": [
        CREDIT_DECISION_PATH, BORROWER_AUDIT_PATH, FINANCIALS_PATH, POLICY_EVAL_PATH,
        EXCEPTIONS_PATH, GOVERNANCE_PATH, PLAYBOOKS_PATH, README_PATH, CHECKSUMS_PATH, MANIFEST_PATH,
    ],
}


def build_readme(case_id: str, snapshot: Mapping[str, Any], generated_at: str, artifact_count: int) -> str:
    outcome = (snapshot.get("decision") or {}).get("outcome") or "pending"
    return (
        "EXAMINER DROP\n"
        "=============\n\n"
        f"Generated:  {generated_at}\n"
        f"Case:       {case_id}\n"
        f"Decision:   {outcome.upper()}\n"
        f"Snapshot:   {snapshot['meta']['snapshot_id']}\n"
        f"Artifacts:  {artifact_count} files\n\n"
        "INTEGRITY\n"
        "---------\n"
        "integrity/checksums.txt lists the SHA-256 of every file above it.\n"
        "integrity/manifest.json lists every artifact and the aggregate drop hash.\n"
    )


@dataclass
class ExaminerDrop:
    """A built drop: artifacts in order, manifest, and snapshot."""

    case_id: str
    artifacts: List[Artifact]
    manifest: Dict[str, Any]
    snapshot: SnapshotResult

    @property
    def drop_hash(self) -> str:
        return self.manifest["drop_hash"]

    @property
    def contents(self) -> Dict[str, bytes]:
        return {artifact.path: artifact.content for artifact in self.artifacts}

    def to_zip(self) -> bytes:
        return write_zip(self.artifacts, self.manifest)

    def save(self, directory: Path) -> Path:
        directory = Path(directory)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{self.case_id}-{self.drop_hash[:12]}.zip"
        path.write_bytes(self.to_zip())
        logger.info("examiner_drop_saved", case_id=self.case_id, path=str(path))
        return path


class ExaminerDropBuilder:
    """Assembles the examiner drop for a case."""

    def __init__(self, db: Session, tenant_id: str, clock: Clock = utcnow):
        self.db = db
        self.tenant_id = tenant_id
        self.clock = clock

    def build(self, case_id: str, borrower_audit: Optional[Mapping[str, Any]] = None) -> ExaminerDrop:
        """
        Build a fresh decision snapshot and package it with its supporting artifacts.

        Raises:
            DecisionNotFoundError: The case has no decision.
        """
        result = AuditSnapshotBuilder(self.db, self.tenant_id, clock=self.clock).build(case_id)
        generated_at = iso_timestamp(self.clock())

        artifacts = [Artifact.json(CREDIT_DECISION_PATH, result.snapshot)]
        if borrower_audit is not None:
            artifacts.append(Artifact.json(BORROWER_AUDIT_PATH, dict(borrower_audit)))
        artifacts.extend([
            Artifact.json(FINANCIALS_PATH, result.financial_snapshot),
            Artifact.json(POLICY_EVAL_PATH, {"rule_results": result.policy_results}),
            Artifact.json(EXCEPTIONS_PATH, result.snapshot["policy"]["exceptions"]),
            Artifact.json(GOVERNANCE_PATH, {**MODEL_GOVERNANCE, "generated_at": generated_at}),
            Artifact.json(PLAYBOOKS_PATH, EXAMINER_PLAYBOOKS),
        ])
        readme = build_readme(case_id, result.snapshot, generated_at, artifact_count=len(artifacts) + 2)
        artifacts.append(Artifact.text(README_PATH, readme))
        artifacts.append(Artifact.text(CHECKSUMS_PATH, checksums_text([a.entry() for a in artifacts])))

        manifest = ManifestBuilder(clock=self.clock).build(
            artifacts,
            drop_id=str(uuid.uuid4()),
            case_id=case_id,
            tenant_id=self.tenant_id,
            decision_snapshot_id=result.snapshot_id,
            credit_decision_hash=result.snapshot_hash,
            borrower_audit_hash=hash_value(dict(borrower_audit)) if borrower_audit is not None else None,
        )

        LedgerEvent.record(
            self.db,
            self.tenant_id,
            case_id,
            "drop.built",
            f"Examiner drop built with {len(artifacts)} artifacts",
            meta={"drop_hash": manifest["drop_hash"], "snapshot_id": result.snapshot_id},
        )
        self.db.commit()
        logger.info("examiner_drop_built", case_id=case_id, artifacts=len(artifacts), drop_hash=manifest["drop_hash"])
        return ExaminerDrop(case_id=case_id, artifacts=artifacts, manifest=manifest, snapshot=result)
