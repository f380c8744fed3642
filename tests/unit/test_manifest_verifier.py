"""
Unit tests for manifests, examiner drops and integrity verification.
"""
import io
import json
import zipfile
from datetime import datetime

import pytest

from loanspread.exceptions import DecisionNotFoundError, ManifestError
from loanspread.models.decision import CreditDecision, DecisionSnapshotRecord
from loanspread.services.audit import (
    Artifact,
    ExaminerDropBuilder,
    IntegrityVerifier,
    ManifestBuilder,
    compute_drop_hash,
    write_zip,
)
from loanspread.services.audit.manifest import (
    BORROWER_AUDIT_PATH,
    CHECKSUMS_PATH,
    CREDIT_DECISION_PATH,
    MANIFEST_PATH,
    README_PATH,
)
from loanspread.services.hashing import sha256_hex

TENANT = "bank-1"
CASE = "deal-1"


def _artifacts():
    return [
        Artifact.json("a/one.json", {"b": 2, "a": 1}),
        Artifact.text("b/two.txt", "hello\n"),
        Artifact.text("c/three.txt", "third"),
    ]


def _manifest(clock, artifacts=None, **header):
    return ManifestBuilder(clock=clock).build(artifacts or _artifacts(), **header)


def _contents(artifacts=None):
    return {artifact.path: artifact.content for artifact in (artifacts or _artifacts())}


def _decision(db):
    db.add(CreditDecision(
        tenant_id=TENANT,
        case_id=CASE,
        status="final",
        outcome="approve",
        created_at=datetime(2025, 2, 20, 9, 0, 0),
    ))
    db.commit()


class TestManifestBuilder:
    """Tests for manifest construction."""

    def test_entries_in_order(self, clock):
        manifest = _manifest(clock, case_id=CASE)

        assert [entry["path"] for entry in manifest["artifacts"]] == ["a/one.json", "b/two.txt", "c/three.txt"]
        assert manifest["case_id"] == CASE
        assert manifest["generated_at"] == "2025-03-01T12:00:00.000Z"
        assert manifest["artifacts"][1]["sha256"] == sha256_hex("hello\n")
        assert manifest["artifacts"][1]["size_bytes"] == 6

    def test_json_artifacts_are_canonical(self):
        assert Artifact.json("x.json", {"b": 2, "a": 1}).content == b'{"a":1,"b":2}'

    def test_drop_hash_joins_artifact_hashes(self, clock):
        manifest = _manifest(clock)
        hashes = [entry["sha256"] for entry in manifest["artifacts"]]

        assert manifest["drop_hash"] == sha256_hex("|".join(hashes))
        assert manifest["drop_hash"] == compute_drop_hash(hashes)

    def test_order_changes_drop_hash(self, clock):
        artifacts = _artifacts()
        assert _manifest(clock, artifacts)["drop_hash"] != _manifest(clock, artifacts[::-1])["drop_hash"]

    def test_empty_rejected(self, clock):
        with pytest.raises(ManifestError):
            ManifestBuilder(clock=clock).build([])

    def test_duplicate_paths_rejected(self, clock):
        with pytest.raises(ManifestError):
            ManifestBuilder(clock=clock).build([Artifact.text("x", "1"), Artifact.text("x", "2")])


class TestVerifier:
    """Tests for artifact set verification."""

    def test_valid_set(self, clock):
        result = IntegrityVerifier(clock=clock).verify(_manifest(clock), _contents())

        assert result.valid is True
        assert result.verified == 3
        assert result.drop_hash_match is True

    def test_tampered_byte_flags_only_that_artifact(self, clock):
        contents = _contents()
        contents["b/two.txt"] = b"hellO\n"

        result = IntegrityVerifier(clock=clock).verify(_manifest(clock), contents)

        statuses = {r.path: r.status for r in result.results}
        assert statuses == {"a/one.json": "verified", "b/two.txt": "mismatched", "c/three.txt": "verified"}
        assert result.valid is False
        assert result.drop_hash_match is True

    def test_missing_content(self, clock):
        contents = _contents()
        del contents["c/three.txt"]

        result = IntegrityVerifier(clock=clock).verify(_manifest(clock), contents)

        assert result.missing == 1
        assert result.verified == 2
        checks = {c.check: c.passed for c in result.consistency}
        assert checks["all_content_provided"] is False

    def test_tampered_drop_hash(self, clock):
        manifest = _manifest(clock)
        manifest["drop_hash"] = "0" * 64

        result = IntegrityVerifier(clock=clock).verify(manifest, _contents())

        assert result.verified == 3
        assert result.drop_hash_match is False
        assert result.valid is False

    def test_text_content_hashed_as_utf8(self, clock):
        contents = {path: content.decode("utf-8") for path, content in _contents().items()}
        assert IntegrityVerifier(clock=clock).verify(_manifest(clock), contents).valid is True

    def test_structured_snapshot_hashed_canonically(self, clock):
        contents = _contents()
        del contents["a/one.json"]

        result = IntegrityVerifier(clock=clock).verify(
            _manifest(clock), contents, snapshots={"a/one.json": {"a": 1, "b": 2}}
        )

        assert result.valid is True
        assert result.results[0].artifact_type == "snapshot"

    def test_cross_reference_mismatch(self, clock):
        artifacts = [Artifact.json(CREDIT_DECISION_PATH, {"meta": {}}), Artifact.text("x.txt", "x")]
        manifest = _manifest(clock, artifacts, credit_decision_hash="f" * 64)

        result = IntegrityVerifier(clock=clock).verify(manifest, _contents(artifacts))

        checks = {c.check: c.passed for c in result.consistency}
        assert checks["credit_decision_hash_crossref"] is False
        assert result.verified == 2
        assert result.valid is False

    def test_result_dict(self, clock):
        payload = IntegrityVerifier(clock=clock).verify(_manifest(clock), _contents()).to_dict()

        assert payload["valid"] is True
        assert payload["total_artifacts"] == 3
        assert payload["checked_at"] == "2025-03-01T12:00:00.000Z"
        assert payload["results"][0]["match"] is True


class TestZip:
    """Tests for zipped drops."""

    def test_manifest_written_last(self, clock):
        data = write_zip(_artifacts(), _manifest(clock))
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            names = archive.namelist()
            manifest = json.loads(archive.read(MANIFEST_PATH))

        assert names[-1] == MANIFEST_PATH
        assert manifest["drop_hash"] == _manifest(clock)["drop_hash"]

    def test_same_drop_same_bytes(self, clock):
        manifest = _manifest(clock)
        assert write_zip(_artifacts(), manifest) == write_zip(_artifacts(), manifest)

    def test_verify_zip(self, clock):
        data = write_zip(_artifacts(), _manifest(clock))
        assert IntegrityVerifier(clock=clock).verify_zip(data).valid is True

    def test_verify_zip_rejects_garbage(self, clock):
        with pytest.raises(ManifestError):
            IntegrityVerifier(clock=clock).verify_zip(b"not a zip")

    def test_verify_zip_requires_manifest(self, clock):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w") as archive:
            archive.writestr("a.txt", "a")
        with pytest.raises(ManifestError):
            IntegrityVerifier(clock=clock).verify_zip(buffer.getvalue())


class TestExaminerDropBuilder:
    """Tests for complete examiner drops."""

    def test_requires_decision(self, db_session, clock):
        with pytest.raises(DecisionNotFoundError):
            ExaminerDropBuilder(db_session, TENANT, clock=clock).build(CASE)

    def test_drop_verifies(self, db_session, clock):
        _decision(db_session)
        drop = ExaminerDropBuilder(db_session, TENANT, clock=clock).build(CASE)

        paths = [artifact.path for artifact in drop.artifacts]
        assert paths[0] == CREDIT_DECISION_PATH
        assert paths[-2:] == [README_PATH, CHECKSUMS_PATH]
        assert BORROWER_AUDIT_PATH not in paths
        assert drop.manifest["credit_decision_hash"] == drop.snapshot.snapshot_hash
        assert drop.manifest["borrower_audit_hash"] is None

        result = IntegrityVerifier(clock=clock).verify(drop.manifest, drop.contents)
        assert result.valid is True
        assert IntegrityVerifier(clock=clock).verify_zip(drop.to_zip()).valid is True

    def test_borrower_audit_included(self, db_session, clock):
        _decision(db_session)
        drop = ExaminerDropBuilder(db_session, TENANT, clock=clock).build(
            CASE, borrower_audit={"borrower": "ACME", "kyc": "clear"}
        )

        assert BORROWER_AUDIT_PATH in drop.contents
        checks = {c.check: c.passed for c in IntegrityVerifier(clock=clock).verify(drop.manifest, drop.contents).consistency}
        assert checks["borrower_audit_hash_crossref"] is True
        assert checks["credit_decision_hash_crossref"] is True

    def test_checksums_cover_earlier_artifacts(self, db_session, clock):
        _decision(db_session)
        drop = ExaminerDropBuilder(db_session, TENANT, clock=clock).build(CASE)

        lines = drop.contents[CHECKSUMS_PATH].decode("utf-8").splitlines()
        assert len(lines) == len(drop.artifacts) - 1
        assert lines[0] == f"{drop.artifacts[0].sha256}  {CREDIT_DECISION_PATH}"

    def test_each_drop_appends_snapshot(self, db_session, clock):
        _decision(db_session)
        builder = ExaminerDropBuilder(db_session, TENANT, clock=clock)
        builder.build(CASE)
        builder.build(CASE)

        assert db_session.query(DecisionSnapshotRecord).count() == 2

    def test_save(self, db_session, clock, temp_dir):
        _decision(db_session)
        drop = ExaminerDropBuilder(db_session, TENANT, clock=clock).build(CASE)

        path = drop.save(temp_dir / "drops")

        assert path.exists()
        assert path.name == f"{CASE}-{drop.drop_hash[:12]}.zip"
        assert path.read_bytes() == drop.to_zip()
