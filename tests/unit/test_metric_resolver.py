"""
Unit tests for metric resolution and best-fact selection.
"""
from datetime import datetime

import pytest

from loanspread.exceptions import UnknownMetricError
from loanspread.models.fact import Fact
from loanspread.models.spread import SpreadStatus, StoredSpread
from loanspread.services.fact_store import FactInput, FactStore
from loanspread.services.metric_resolver import (
    PENDING_SOURCE,
    Composite,
    FactRef,
    MetricResolver,
    fact_as_of_date,
    select_best_fact,
)

TENANT = "bank-1"
CASE = "deal-1"


def _candidate(value, source_type=None, confidence=0.8, period_end="2024-12-31", **kwargs) -> Fact:
    provenance = {"source_type": source_type} if source_type else {}
    provenance.update(kwargs.pop("provenance", {}))
    return Fact(
        fact_type="BALANCE_SHEET",
        fact_key="TOTAL_ASSETS",
        fact_value_num=value,
        confidence=confidence,
        fact_period_end=period_end,
        provenance=provenance,
        **kwargs,
    )


def _store(db, fact_type, fact_key, value, period_end="2024-12-31", document="doc-1"):
    FactStore(db).upsert_facts([
        FactInput(
            tenant_id=TENANT, case_id=CASE, source_document_id=document, fact_type=fact_type,
            fact_key=fact_key, value_num=value, confidence=0.9, period_end=period_end,
        )
    ])


def _stored_spread(db, spread_type, row_key, values, status=SpreadStatus.READY):
    columns = [{"key": f"P{i}", "label": end, "end_date": end} for i, end in enumerate(values)]
    cells = {f"P{i}": {"value": value} for i, value in enumerate(values.values())}
    db.add(StoredSpread(
        tenant_id=TENANT,
        case_id=CASE,
        spread_type=spread_type,
        status=status,
        payload={"columns": columns, "rows": [{"key": row_key, "values": cells}]},
        generated_at=datetime(2025, 2, 1, 8, 0, 0),
    ))
    db.commit()


class TestBestFact:
    """Tests for choosing among competing facts."""

    def test_empty(self):
        assert select_best_fact([]).fact is None

    def test_source_priority_beats_confidence(self):
        manual = _candidate(1.0, "MANUAL", confidence=0.1)
        extracted = _candidate(2.0, "DOC_EXTRACT", confidence=0.99)

        best = select_best_fact([extracted, manual])

        assert best.fact is manual
        assert best.rejected == [extracted]

    def test_newer_as_of_wins(self):
        old = _candidate(1.0, "DOC_EXTRACT", period_end="2023-12-31")
        new = _candidate(2.0, "DOC_EXTRACT", period_end="2024-12-31")

        assert select_best_fact([old, new]).fact is new

    def test_confidence_breaks_date_ties(self):
        low = _candidate(1.0, confidence=0.5)
        high = _candidate(2.0, confidence=0.7)

        assert select_best_fact([low, high]).fact is high

    def test_as_of_prefers_provenance(self):
        fact = _candidate(1.0, provenance={"as_of_date": "2025-01-15T00:00:00"})
        assert fact_as_of_date(fact) == "2025-01-15"

    def test_as_of_falls_back_to_created_at(self):
        fact = _candidate(1.0, period_end=None, created_at=datetime(2025, 2, 2, 10, 0, 0))
        assert fact_as_of_date(fact) == "2025-02-02"


class TestResolve:
    """Tests for fallback chains."""

    def test_unknown_metric(self, db_session):
        with pytest.raises(UnknownMetricError):
            MetricResolver(db_session, TENANT, CASE).resolve("MAGIC")

    def test_pending_when_nothing_found(self, db_session):
        resolved = MetricResolver(db_session, TENANT, CASE).resolve("TOTAL_ASSETS")

        assert resolved.is_pending
        assert resolved.source == PENDING_SOURCE

    def test_falls_back_to_fact(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0)

        resolved = MetricResolver(db_session, TENANT, CASE).resolve("TOTAL_ASSETS")

        assert resolved.value == 1500.0
        assert resolved.source == "fact:BALANCE_SHEET.TOTAL_ASSETS"
        assert resolved.as_of_date == "2024-12-31"

    def test_spread_value_preferred(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0)
        _stored_spread(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", {"2023-12-31": 900.0, "2024-12-31": 1600.0})

        resolved = MetricResolver(db_session, TENANT, CASE).resolve("TOTAL_ASSETS")

        assert resolved.value == 1600.0
        assert resolved.source == "spread:BALANCE_SHEET.TOTAL_ASSETS"
        assert resolved.as_of_date == "2024-12-31"

    def test_queued_spread_ignored(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0)
        _stored_spread(
            db_session, "BALANCE_SHEET", "TOTAL_ASSETS", {"2024-12-31": 1600.0}, status=SpreadStatus.QUEUED
        )

        assert MetricResolver(db_session, TENANT, CASE).resolve("TOTAL_ASSETS").value == 1500.0

    def test_second_fact_link(self, db_session):
        _store(db_session, "TAX_RETURN", "GROSS_RECEIPTS", 800.0)

        resolved = MetricResolver(db_session, TENANT, CASE).resolve("TOTAL_REVENUE")

        assert resolved.source == "fact:TAX_RETURN.GROSS_RECEIPTS"

    def test_exact_period(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1000.0, period_end="2023-12-31")
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0, period_end="2024-12-31")
        resolver = MetricResolver(db_session, TENANT, CASE)

        assert resolver.resolve("TOTAL_ASSETS", period_end="2023-12-31").value == 1000.0
        assert resolver.resolve("TOTAL_ASSETS", period_end="2022-12-31").is_pending


class TestComposite:
    """Tests for computed metrics."""

    def test_dscr(self, db_session):
        _store(db_session, "INCOME_STATEMENT", "NET_OPERATING_INCOME", 125.0)
        _store(db_session, "INCOME_STATEMENT", "DEBT_SERVICE", 100.0)

        resolved = MetricResolver(db_session, TENANT, CASE).resolve("DSCR")

        assert resolved.value == pytest.approx(1.25)
        assert resolved.source == "computed:DSCR=CASH_FLOW_AVAILABLE/ANNUAL_DEBT_SERVICE"
        assert resolved.as_of_date == "2024-12-31"
        assert resolved.updated_at is not None

    def test_excess_cash_flow(self, db_session):
        _store(db_session, "INCOME_STATEMENT", "NET_OPERATING_INCOME", 125.0)
        _store(db_session, "INCOME_STATEMENT", "DEBT_SERVICE", 100.0)

        assert MetricResolver(db_session, TENANT, CASE).resolve("EXCESS_CASH_FLOW").value == 25.0

    def test_null_input_propagates(self, db_session):
        _store(db_session, "INCOME_STATEMENT", "NET_OPERATING_INCOME", 125.0)

        resolved = MetricResolver(db_session, TENANT, CASE).resolve("DSCR")

        assert resolved.value is None
        assert resolved.source.startswith("computed:")

    def test_division_by_zero(self, db_session):
        _store(db_session, "INCOME_STATEMENT", "NET_OPERATING_INCOME", 125.0)
        _store(db_session, "INCOME_STATEMENT", "DEBT_SERVICE", 0.0)

        assert MetricResolver(db_session, TENANT, CASE).resolve("DSCR").value is None

    def test_custom_chains(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 300.0)
        _store(db_session, "BALANCE_SHEET", "TOTAL_LIABILITIES", 100.0)
        chains = {
            "A": [FactRef("BALANCE_SHEET", "TOTAL_ASSETS")],
            "L": [FactRef("BALANCE_SHEET", "TOTAL_LIABILITIES")],
            "LEVERAGE": Composite("L", "/", "A"),
        }

        resolved = MetricResolver(db_session, TENANT, CASE, chains=chains).resolve("LEVERAGE")

        assert resolved.value == pytest.approx(1 / 3)


class TestFinancialSnapshot:
    """Tests for the audit financial block."""

    def test_completeness(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0)
        _store(db_session, "BALANCE_SHEET", "TOTAL_LIABILITIES", 900.0)

        snapshot = MetricResolver(db_session, TENANT, CASE).financial_snapshot()

        assert snapshot["completeness_pct"] == 40.0
        assert snapshot["as_of_date"] == "2024-12-31"
        assert snapshot["missing_required"] == ["CASH_FLOW_AVAILABLE", "ANNUAL_DEBT_SERVICE", "DSCR"]
        assert snapshot["metrics"]["TOTAL_ASSETS"]["source"] == "fact:BALANCE_SHEET.TOTAL_ASSETS"

    def test_dates_disagree(self, db_session):
        _store(db_session, "BALANCE_SHEET", "TOTAL_ASSETS", 1500.0, period_end="2024-12-31")
        _store(db_session, "BALANCE_SHEET", "TOTAL_LIABILITIES", 900.0, period_end="2023-12-31")

        snapshot = MetricResolver(db_session, TENANT, CASE).financial_snapshot()

        assert snapshot["as_of_date"] is None

    def test_empty_case(self, db_session):
        snapshot = MetricResolver(db_session, TENANT, CASE).financial_snapshot()

        assert snapshot["completeness_pct"] == 0.0
        assert all(metric["value"] is None for metric in snapshot["metrics"].values())
