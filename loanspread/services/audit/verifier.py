"""
Artifact set verification.

Re-derives every artifact hash from supplied content and compares it to the
manifest. Strictly read-only: mismatches are reported, never corrected, and one
failing artifact does not stop the others from being checked.
"""
import io
import json
import zipfile
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

import structlog

from loanspread.exceptions import ManifestError
from loanspread.services.audit.manifest import (
    BORROWER_AUDIT_PATH,
    CREDIT_DECISION_PATH,
    MANIFEST_PATH,
    compute_drop_hash,
)
from loanspread.services.hashing import hash_value, sha256_hex
from loanspread.utils.clock import Clock, iso_timestamp, utcnow

logger = structlog.get_logger(__name__)

CHECK_VERSION = "1.0"

VERIFIED = "verified"
MISMATCHED = "mismatched"
MISSING = "missing"

# Manifest sub-hash -> artifact it must agree with.
CROSS_REFERENCES = {
    "credit_decision_hash": CREDIT_DECISION_PATH,
    "borrower_audit_hash": BORROWER_AUDIT_PATH,
}


@dataclass
class ConsistencyCheck:
    check: str
    passed: bool
    detail: str

    def to_dict(self) -> Dict[str, Any]:
        return {"check": self.check, "passed": self.passed, "detail": self.detail}


@dataclass
class ArtifactCheck:
    path: str
    artifact_type: str
    expected_hash: str
    computed_hash: Optional[str]
    status: str
    details: str

    @property
    def match(self) -> bool:
        return self.status == VERIFIED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "artifact_type": self.artifact_type,
            "expected_hash": self.expected_hash,
            "computed_hash": self.computed_hash,
            "status": self.status,
            "match": self.match,
            "details": self.details,
        }


@dataclass
class VerificationResult:
    """Itemized outcome of verifying one artifact set."""

    checked_at: str
    expected_drop_hash: Optional[str]
    computed_drop_hash: str
    results: List[ArtifactCheck] = field(default_factory=list)
    consistency: List[ConsistencyCheck] = field(default_factory=list)

    @property
    def verified(self) -> int:
        return sum(1 for r in self.results if r.status == VERIFIED)

    @property
    def mismatched(self) -> int:
        return sum(1 for r in self.results if r.status == MISMATCHED)

    @property
    def missing(self) -> int:
        return sum(1 for r in self.results if r.status == MISSING)

    @property
    def drop_hash_match(self) -> bool:
        return self.expected_drop_hash is not None and self.expected_drop_hash == self.computed_drop_hash

    @property
    def valid(self) -> bool:
        return (
            self.mismatched == 0
            and self.missing == 0
            and self.drop_hash_match
            and all(check.passed for check in self.consistency)
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "check_version": CHECK_VERSION,
            "checked_at": self.checked_at,
            "valid": self.valid,
            "total_artifacts": len(self.results),
            "verified": self.verified,
            "mismatched": self.mismatched,
            "missing": self.missing,
            "drop_hash_match": self.drop_hash_match,
            "expected_drop_hash": self.expected_drop_hash,
            "computed_drop_hash": self.computed_drop_hash,
            "results": [r.to_dict() for r in self.results],
            "consistency": [c.to_dict() for c in self.consistency],
        }


def _check_artifact(
    entry: Mapping[str, Any],
    contents: Mapping[str, Union[str, bytes]],
    snapshots: Mapping[str, Any],
) -> ArtifactCheck:
    path = entry.get("path", "")
    expected = entry.get("sha256", "")
    if path in snapshots:
        computed = hash_value(snapshots[path])
        source = "structured snapshot"
        artifact_type = "snapshot"
    elif path in contents:
        computed = sha256_hex(contents[path])
        source = "content"
        artifact_type = entry.get("content_type") or "file"
    else:
        return ArtifactCheck(
            path, entry.get("content_type") or "file", expected, None, MISSING,
            f'"{path}" not provided for verification.',
        )
    if computed == expected:
        return ArtifactCheck(path, artifact_type, expected, computed, VERIFIED, f'"{path}" verified from {source}.')
    return ArtifactCheck(path, artifact_type, expected, computed, MISMATCHED, f'"{path}" hash mismatch ({source}).')


class IntegrityVerifier:
    """Verifies manifests against supplied content."""

    def __init__(self, clock: Clock = utcnow):
        self.clock = clock

    def verify(
        self,
        manifest: Mapping[str, Any],
        contents: Mapping[str, Union[str, bytes]],
        snapshots: Optional[Mapping[str, Any]] = None,
    ) -> VerificationResult:
        """
        Verify every manifest entry, the drop hash and the whole-set consistency checks.

        Args:
            manifest: Parsed manifest.
            contents: Path -> raw content (text is hashed as UTF-8).
            snapshots: Optional path -> structured value, hashed canonically in preference to contents.
        """
        entries = list(manifest.get("artifacts") or [])
        snapshots = snapshots or {}
        result = VerificationResult(
            checked_at=iso_timestamp(self.clock()),
            expected_drop_hash=manifest.get("drop_hash"),
            computed_drop_hash=compute_drop_hash([entry.get("sha256", "") for entry in entries]),
            results=[_check_artifact(entry, contents, snapshots) for entry in entries],
        )

        result.consistency.append(ConsistencyCheck(
            "manifest_has_artifacts",
            bool(entries),
            f"Manifest declares {len(entries)} artifact(s)." if entries else "Manifest has no artifacts.",
        ))
        result.consistency.append(ConsistencyCheck(
            "all_content_provided",
            result.missing == 0,
            "All artifact contents provided for verification."
            if result.missing == 0 else f"{result.missing} artifact(s) missing content.",
        ))
        paths = [entry.get("path") for entry in entries]
        duplicates = len(paths) - len(set(paths))
        result.consistency.append(ConsistencyCheck(
            "no_duplicate_paths",
            duplicates == 0,
            "All artifact paths are unique." if duplicates == 0 else f"{duplicates} duplicate path(s) found.",
        ))

        by_path = {entry.get("path"): entry for entry in entries}
        for key, path in CROSS_REFERENCES.items():
            expected = manifest.get(key)
            if not expected:
                continue
            entry = by_path.get(path)
            passed = entry is not None and entry.get("sha256") == expected
            result.consistency.append(ConsistencyCheck(
                f"{key}_crossref",
                passed,
                f"{key} matches the {path} entry." if passed else f"{key} does not match the {path} entry.",
            ))

        logger.info(
            "artifact_set_verified",
            valid=result.valid,
            verified=result.verified,
            mismatched=result.mismatched,
            missing=result.missing,
            drop_hash_match=result.drop_hash_match,
        )
        return result

    def verify_zip(self, data: bytes) -> VerificationResult:
        """
        Verify a drop zip against the manifest it carries.

        Raises:
            ManifestError: Not a zip, or no readable manifest inside.
        """
        try:
            with zipfile.ZipFile(io.BytesIO(data)) as archive:
                names = archive.namelist()
                if MANIFEST_PATH not in names:
                    raise ManifestError("Drop has no manifest", details={"expected": MANIFEST_PATH})
                manifest = json.loads(archive.read(MANIFEST_PATH).decode("utf-8"))
                contents = {name: archive.read(name) for name in names if name != MANIFEST_PATH}
        except zipfile.BadZipFile as e:
            raise ManifestError("Drop is not a valid zip archive", details={"error": str(e)})
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise ManifestError("Drop manifest is not valid JSON", details={"error": str(e)})
        return self.verify(manifest, contents)


def verify_artifact_set(
    manifest: Mapping[str, Any],
    contents: Mapping[str, Union[str, bytes]],
    snapshots: Optional[Mapping[str, Any]] = None,
) -> VerificationResult:
    return IntegrityVerifier().verify(manifest, contents, snapshots)
