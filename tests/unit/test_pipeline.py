"""
Unit tests for pipeline enqueueing and job handlers.
"""
import uuid

import pytest

from loanspread.exceptions import DocumentNotFoundError
from loanspread.models.audit import LedgerEvent, LedgerSeverity
from loanspread.models.document import DocumentStatus, SourceDocument
from loanspread.models.job import JobKind, JobStatus, PipelineJob
from loanspread.models.spread import SpreadStatus, StoredSpread
from loanspread.services.fact_store import FactInput, FactStore
from loanspread.services.pipeline import (
    build_handlers,
    enqueue_document_extraction,
    enqueue_spread_recompute,
    extract_document,
    render_spreads,
)

TENANT = "bank-1"
CASE = "deal-1"

BALANCE_SHEET_TEXT = """ACME HOLDINGS LLC
Balance Sheet
As of 2024-12-31
Total Assets $1,500,000
Total Liabilities 900,000
"""


def _seed_fact(db, key="TOTAL_ASSETS", value=1500000.0, period_end="2024-12-31"):
    FactStore(db).upsert_facts([
        FactInput(
            tenant_id=TENANT,
            case_id=CASE,
            source_document_id="doc-1",
            fact_type="BALANCE_SHEET",
            fact_key=key,
            value_num=value,
            confidence=0.9,
            period_end=period_end,
        )
    ])


def _document(db, **overrides) -> SourceDocument:
    values = dict(
        tenant_id=TENANT,
        case_id=CASE,
        filename="balance-sheet.pdf",
        document_type="BALANCE_SHEET",
        ocr_text=BALANCE_SHEET_TEXT,
    )
    values.update(overrides)
    document = SourceDocument(**values)
    db.add(document)
    db.commit()
    db.refresh(document)
    return document


def _events(db, key):
    return db.query(LedgerEvent).filter(LedgerEvent.event_key == key).all()


class TestEnqueueSpreadRecompute:
    """Tests for spread recompute requests."""

    def test_waits_for_facts(self, db_session, clock):
        result = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET"], clock=clock)

        assert result.ok is False
        assert result.waiting_on_facts is True
        assert db_session.query(PipelineJob).count() == 0
        assert len(_events(db_session, "spread.waiting_on_facts")) == 1

    def test_enqueues_with_placeholders(self, db_session, clock):
        _seed_fact(db_session)
        result = enqueue_spread_recompute(db_session, TENANT, CASE, ["balance_sheet"], max_attempts=5, clock=clock)

        job = db_session.query(PipelineJob).one()
        assert result.ok is True
        assert result.job_id == str(job.id)
        assert job.kind == JobKind.RENDER_SPREADS
        assert job.max_attempts == 5
        assert job.kind_metadata == {"spread_types": ["BALANCE_SHEET"]}
        placeholder = db_session.query(StoredSpread).one()
        assert placeholder.status == SpreadStatus.QUEUED

    def test_unknown_types_skipped(self, db_session, clock):
        _seed_fact(db_session)
        result = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET", "CASH_BUDGET"], clock=clock)

        assert result.ok is True
        assert result.spread_types == ["BALANCE_SHEET"]
        assert result.skipped_types == ["CASH_BUDGET"]
        events = _events(db_session, "spread.type_skipped")
        assert events[0].severity == LedgerSeverity.WARNING

    def test_only_unknown_types(self, db_session, clock):
        _seed_fact(db_session)
        result = enqueue_spread_recompute(db_session, TENANT, CASE, ["CASH_BUDGET"], clock=clock)

        assert result.ok is False
        assert db_session.query(PipelineJob).count() == 0

    def test_merges_into_active_job(self, db_session, clock):
        _seed_fact(db_session)
        first = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET"], clock=clock)
        second = enqueue_spread_recompute(db_session, TENANT, CASE, ["STANDARD"], clock=clock)

        assert second.merged is True
        assert second.job_id == first.job_id
        assert second.spread_types == ["BALANCE_SHEET", "STANDARD"]
        assert db_session.query(PipelineJob).count() == 1

    def test_finished_job_not_merged(self, db_session, clock):
        _seed_fact(db_session)
        first = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET"], clock=clock)
        job = db_session.get(PipelineJob, uuid.UUID(first.job_id))
        job.status = JobStatus.SUCCEEDED
        db_session.commit()

        second = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET"], clock=clock)

        assert second.merged is False
        assert second.job_id != first.job_id

    def test_running_job_not_merged(self, db_session, clock):
        """Test a request arriving while the render job runs gets its own job."""
        _seed_fact(db_session)
        first = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET"], clock=clock)
        job = db_session.get(PipelineJob, uuid.UUID(first.job_id))
        job.status = JobStatus.RUNNING
        db_session.commit()

        second = enqueue_spread_recompute(db_session, TENANT, CASE, ["STANDARD"], clock=clock)

        assert second.merged is False
        assert second.job_id != first.job_id
        assert second.spread_types == ["STANDARD"]
        assert db_session.query(PipelineJob).count() == 2
        db_session.refresh(job)
        assert job.kind_metadata == {"spread_types": ["BALANCE_SHEET"]}

    def test_template_waits_for_its_fact_types(self, db_session, clock):
        _seed_fact(db_session)
        result = enqueue_spread_recompute(db_session, TENANT, CASE, ["BALANCE_SHEET", "T12"], clock=clock)

        assert result.ok is True
        assert result.spread_types == ["BALANCE_SHEET"]
        assert result.waiting_types == {"T12": ["facts:INCOME_STATEMENT|TAX_RETURN"]}
        assert result.to_dict()["waiting_types"] == result.waiting_types
        event = _events(db_session, "spread.waiting_on_facts")[0]
        assert event.meta["spread_type"] == "T12"
        assert db_session.query(StoredSpread).filter(StoredSpread.spread_type == "T12").count() == 0

    def test_nothing_ready(self, db_session, clock):
        _seed_fact(db_session)
        result = enqueue_spread_recompute(
            db_session, TENANT, CASE, ["T12", "PERSONAL_FINANCIAL_STATEMENT"], clock=clock
        )

        assert result.ok is False
        assert result.waiting_on_facts is True
        assert set(result.waiting_types) == {"T12", "PERSONAL_FINANCIAL_STATEMENT"}
        assert db_session.query(PipelineJob).count() == 0

    def test_rent_roll_waits_for_unit_rows(self, db_session, clock):
        _seed_fact(db_session)
        waiting = enqueue_spread_recompute(db_session, TENANT, CASE, ["RENT_ROLL"], clock=clock)
        FactStore(db_session).replace_rent_roll_rows(TENANT, CASE, "doc-2", [
            {"unit_id": "101", "as_of_date": "2025-01-01", "monthly_rent": 1000.0, "sqft": 700.0},
        ])
        ready = enqueue_spread_recompute(db_session, TENANT, CASE, ["RENT_ROLL"], clock=clock)

        assert waiting.waiting_types == {"RENT_ROLL": ["rent_roll_rows"]}
        assert ready.ok is True
        assert ready.spread_types == ["RENT_ROLL"]
        assert ready.waiting_types == {}


class TestEnqueueDocumentExtraction:
    """Tests for extraction jobs."""

    def test_reuses_active_job(self, db_session, clock):
        document = _document(db_session)
        first = enqueue_document_extraction(db_session, document, clock=clock)
        second = enqueue_document_extraction(db_session, document, clock=clock)

        assert first.id == second.id
        assert first.kind_metadata == {"document_id": str(document.id)}

    def test_separate_documents_get_separate_jobs(self, db_session, clock):
        first = enqueue_document_extraction(db_session, _document(db_session), clock=clock)
        second = enqueue_document_extraction(db_session, _document(db_session, filename="other.pdf"), clock=clock)

        assert first.id != second.id


class TestHandlers:
    """Tests for the job handlers."""

    def test_extract_document_queues_render(self, db_session, test_settings, clock):
        document = _document(db_session)
        job = enqueue_document_extraction(db_session, document, clock=clock)

        output = extract_document(db_session, test_settings, job, clock=clock)

        db_session.refresh(document)
        assert output["facts_written"] == 2
        assert document.status == DocumentStatus.EXTRACTED
        render_job = (
            db_session.query(PipelineJob).filter(PipelineJob.kind == JobKind.RENDER_SPREADS).one()
        )
        assert render_job.kind_metadata["spread_types"] == ["BALANCE_SHEET", "STANDARD"]

    def test_extract_missing_document(self, db_session, test_settings, clock):
        job = PipelineJob(
            tenant_id=TENANT,
            case_id=CASE,
            kind=JobKind.EXTRACT_DOCUMENT,
            kind_metadata={"document_id": str(uuid.uuid4())},
        )

        with pytest.raises(DocumentNotFoundError):
            extract_document(db_session, test_settings, job, clock=clock)

    def test_render_spreads_stores_ready_payload(self, db_session, clock):
        _seed_fact(db_session, "TOTAL_ASSETS", 1500000.0)
        _seed_fact(db_session, "TOTAL_LIABILITIES", 900000.0)
        job = PipelineJob(
            tenant_id=TENANT,
            case_id=CASE,
            kind=JobKind.RENDER_SPREADS,
            kind_metadata={"spread_types": ["BALANCE_SHEET"]},
        )

        output = render_spreads(db_session, job, clock=clock)

        spread = db_session.query(StoredSpread).one()
        assert output["rendered"] == {"BALANCE_SHEET": 1}
        assert spread.status == SpreadStatus.READY
        assert spread.generated_at == clock.now
        assert spread.payload["totals"]["TOTAL_ASSETS"] == 1500000.0

    def test_rerender_replaces_payload(self, db_session, clock):
        _seed_fact(db_session, "TOTAL_ASSETS", 1000.0)
        job = PipelineJob(
            tenant_id=TENANT, case_id=CASE, kind=JobKind.RENDER_SPREADS,
            kind_metadata={"spread_types": ["BALANCE_SHEET"]},
        )
        render_spreads(db_session, job, clock=clock)
        _seed_fact(db_session, "TOTAL_ASSETS", 2000.0)
        render_spreads(db_session, job, clock=clock)

        spread = db_session.query(StoredSpread).one()
        assert spread.payload["totals"]["TOTAL_ASSETS"] == 2000.0

    def test_rendered_totals_not_reported_missing(self, db_session, clock):
        """Test validation sees totals the same job just rendered."""
        _seed_fact(db_session, "CASH_AND_EQUIVALENTS", 500.0)
        _seed_fact(db_session, "ACCOUNTS_PAYABLE", 200.0)
        job = PipelineJob(
            tenant_id=TENANT, case_id=CASE, kind=JobKind.RENDER_SPREADS,
            kind_metadata={"spread_types": ["BALANCE_SHEET"]},
        )

        render_spreads(db_session, job, clock=clock)

        spread = db_session.query(StoredSpread).one()
        assert spread.payload["totals"]["TOTAL_ASSETS"] == 500.0
        assert spread.payload["meta"]["validated"] is True
        missing = {
            warning["metric"]
            for warning in spread.payload["meta"]["validation_warnings"]
            if warning["code"] == "MISSING_REQUIRED_METRIC"
        }
        assert "TOTAL_ASSETS" not in missing
        assert "TOTAL_LIABILITIES" not in missing
        assert "DSCR" in missing

    def test_render_rent_roll(self, db_session, clock):
        FactStore(db_session).replace_rent_roll_rows(TENANT, CASE, "doc-2", [
            {"unit_id": "101", "as_of_date": "2025-01-01", "monthly_rent": 1000.0, "sqft": 700.0},
            {"unit_id": "102", "as_of_date": "2025-01-01", "occupancy_status": "VACANT", "sqft": 300.0},
        ])
        job = PipelineJob(
            tenant_id=TENANT, case_id=CASE, kind=JobKind.RENDER_SPREADS,
            kind_metadata={"spread_types": ["RENT_ROLL"]},
        )

        render_spreads(db_session, job, clock=clock)

        spread = db_session.query(StoredSpread).one()
        assert spread.payload["as_of"] == "2025-01-01"
        assert spread.payload["totals"]["OCCUPANCY_PCT"] == pytest.approx(0.7)

    def test_build_handlers_covers_every_kind(self, db_session, test_settings):
        handlers = build_handlers(db_session, test_settings)
        assert set(handlers) == set(JobKind)
