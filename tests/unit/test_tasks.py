"""
Unit tests for pipeline Celery tasks.

Tasks run eagerly against the test session.
"""
import pytest

from loanspread.models.job import JobStatus, PipelineJob
from loanspread.models.spread import SpreadStatus, StoredSpread
from loanspread.services.fact_store import FactInput, FactStore
from loanspread.services.pipeline import enqueue_spread_recompute
from loanspread.tasks import pipeline_tasks

TENANT = "bank-1"
CASE = "deal-1"


@pytest.fixture
def task_db(db_session, test_settings, monkeypatch):
    monkeypatch.setattr(pipeline_tasks, "get_db_session", lambda: db_session)
    monkeypatch.setattr(pipeline_tasks, "get_settings", lambda: test_settings)
    return db_session


def _queue_render(db):
    FactStore(db).upsert_facts([
        FactInput(
            tenant_id=TENANT, case_id=CASE, source_document_id="doc-1", fact_type="BALANCE_SHEET",
            fact_key="TOTAL_ASSETS", value_num=1500000.0, confidence=0.9, period_end="2024-12-31",
        )
    ])
    return enqueue_spread_recompute(db, TENANT, CASE, ["BALANCE_SHEET"])


class TestWorkerOwner:
    """Tests for lease owner naming."""

    def test_owner_includes_task_id(self):
        owner = pipeline_tasks.worker_owner("task-123")
        assert owner.endswith(":task-123")


class TestDrainTasks:
    """Tests for the queue-draining tasks."""

    def test_render_queue_drained(self, task_db):
        """Test a queued render job runs to completion."""
        _queue_render(task_db)

        result = pipeline_tasks.drain_render_queue.apply().get()

        assert result["kind"] == "RENDER_SPREADS"
        assert result["processed"] == 1
        assert result["results"][0]["status"] == "SUCCEEDED"
        spread = task_db.query(StoredSpread).filter(StoredSpread.spread_type == "BALANCE_SHEET").one()
        assert spread.status == SpreadStatus.READY
        assert task_db.query(PipelineJob).one().status == JobStatus.SUCCEEDED

    def test_empty_queue(self, task_db):
        """Test draining an empty queue is a no-op."""
        result = pipeline_tasks.drain_extraction_queue.apply().get()

        assert result["processed"] == 0
        assert result["results"] == []

    def test_release_stale_leases_nothing_stale(self, task_db):
        """Test the reaper reports zero when no lease lapsed."""
        _queue_render(task_db)

        assert pipeline_tasks.release_stale_leases.apply().get() == {"released": 0}
