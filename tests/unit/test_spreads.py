"""
Unit tests for spread templates, formulas and rendering.
"""
from datetime import datetime

import pytest

from loanspread.exceptions import FormulaRegistryError, UnknownFormulaError, UnknownMetricError, UnknownSpreadTypeError
from loanspread.models.fact import HEARTBEAT_FACT_TYPE, Fact, RentRollRow
from loanspread.services.spreads import (
    SPREAD_TYPES,
    FactSnapshot,
    Formula,
    FormulaEngine,
    SpreadRow,
    attach_validation,
    evaluate_metric,
    evaluate_structural,
    format_display,
    get_template,
    render_spread,
    render_with_validation,
    validate_registry,
)
from loanspread.services.spreads.metrics import compile_expression, evaluate_expression
from loanspread.services.spreads.renderer import EMPTY_DISPLAY, period_label

GENERATED_AT = datetime(2025, 3, 1, 12, 0, 0)


def _fact(key, value, period_end="2024-12-31", fact_type="BALANCE_SHEET", **kwargs) -> Fact:
    return Fact(
        tenant_id="bank-1",
        case_id="deal-1",
        source_document_id=kwargs.pop("document", "doc-1"),
        fact_type=fact_type,
        fact_key=key,
        fact_period_start=period_end,
        fact_period_end=period_end,
        fact_value_num=value,
        confidence=kwargs.pop("confidence", 0.9),
        provenance=kwargs.pop("provenance", {"extractor": "balanceSheetExtractor:v1:deterministic"}),
    )


def _row(spread, key):
    return next(row for row in spread["rows"] if row["key"] == key)


class TestFactSnapshot:
    """Tests for the immutable per-column snapshot."""

    def test_with_value_returns_new_snapshot(self):
        original = FactSnapshot({"A": 1.0})
        updated = original.with_value("B", 2.0)

        assert dict(original) == {"A": 1.0}
        assert dict(updated) == {"A": 1.0, "B": 2.0}

    def test_none_value_is_ignored(self):
        original = FactSnapshot({"A": 1.0})
        assert original.with_value("B", None) is original

    def test_cannot_assign(self):
        snapshot = FactSnapshot({"A": 1.0})
        with pytest.raises(TypeError):
            snapshot["A"] = 2.0


class TestExpressions:
    """Tests for structural and metric expressions."""

    def test_structural_skips_missing_terms(self):
        assert evaluate_structural("A + B - C", {"A": 10.0, "C": 3.0}) == 7.0

    def test_structural_all_missing_is_none(self):
        assert evaluate_structural("A + B", {}) is None

    def test_precedence_and_parentheses(self):
        assert evaluate_expression("2 + 3 * A", {"A": 2.0}) == 8.0
        assert evaluate_expression("(2 + 3) * A", {"A": 2.0}) == 10.0
        assert evaluate_expression("-A + 1", {"A": 4.0}) == -3.0

    def test_missing_identifier_counts_as_zero(self):
        assert evaluate_expression("A + B", {"A": 2.0}) == 2.0

    def test_no_identifier_present_is_none(self):
        assert evaluate_expression("A + B", {}) is None

    def test_divide_by_zero_is_none(self):
        assert evaluate_expression("A / B", {"A": 1.0, "B": 0.0}) is None

    @pytest.mark.parametrize("expr", ["A +", "(A + B", "A $ B", ""])
    def test_malformed_expression_rejected(self, expr):
        with pytest.raises(FormulaRegistryError):
            compile_expression(expr)

    def test_metric_requires_inputs(self):
        assert evaluate_metric("DSCR", {"CASH_FLOW_AVAILABLE": 150.0, "ANNUAL_DEBT_SERVICE": 100.0}) == 1.5
        assert evaluate_metric("DSCR", {"CASH_FLOW_AVAILABLE": 150.0}) is None

    def test_unknown_metric(self):
        with pytest.raises(UnknownMetricError):
            evaluate_metric("NOT_A_METRIC", {})


class TestFormulaEngine:
    """Tests for column evaluation."""

    def test_extracted_value_wins_over_formula(self):
        engine = FormulaEngine({"SUM": Formula("SUM", "A + B")})
        result = engine.evaluate_column(
            [("A", None), ("B", None), ("TOTAL", "SUM")],
            FactSnapshot({"A": 1.0, "B": 2.0, "TOTAL": 10.0}),
        )
        assert result.cells["TOTAL"].value == 10.0

    def test_formula_fills_empty_cell_and_feeds_later_rows(self):
        engine = FormulaEngine({
            "SUM": Formula("SUM", "A + B"),
            "DOUBLE": Formula("DOUBLE", "TOTAL + TOTAL"),
        })
        result = engine.evaluate_column(
            [("A", None), ("B", None), ("TOTAL", "SUM"), ("TWICE", "DOUBLE")],
            FactSnapshot({"A": 1.0, "B": 2.0}),
        )
        assert result.cells["TOTAL"].value == 3.0
        assert result.cells["TOTAL"].provenance["source"] == "Formula"
        assert result.cells["TWICE"].value == 6.0
        assert result.snapshot.value("TWICE") == 6.0

    def test_computed_rows_not_visible_to_other_statements(self):
        """Test a derived subtotal only feeds later rows of its own statement."""
        engine = FormulaEngine({
            "SUM": Formula("SUM", "A + B"),
            "COPY": Formula("COPY", "TOTAL"),
        })
        result = engine.evaluate_column(
            [
                ("A", None, "INCOME_STATEMENT"),
                ("B", None, "INCOME_STATEMENT"),
                ("TOTAL", "SUM", "INCOME_STATEMENT"),
                ("SAME", "COPY", "INCOME_STATEMENT"),
                ("OTHER", "COPY", "CASH_FLOW"),
            ],
            FactSnapshot({"A": 1.0, "B": 2.0}),
        )
        assert result.cells["SAME"].value == 3.0
        assert result.cells["OTHER"].value is None
        assert result.snapshot.value("TOTAL") == 3.0

    def test_extracted_values_visible_to_every_statement(self):
        engine = FormulaEngine({"COPY": Formula("COPY", "TOTAL")})
        result = engine.evaluate_column(
            [("TOTAL", None, "INCOME_STATEMENT"), ("OTHER", "COPY", "CASH_FLOW")],
            FactSnapshot({"TOTAL": 9.0}),
        )
        assert result.cells["OTHER"].value == 9.0

    def test_unknown_formula(self):
        engine = FormulaEngine({})
        with pytest.raises(UnknownFormulaError):
            engine.evaluate_column([("X", "MISSING")], FactSnapshot())


class TestRegistry:
    """Tests for template registry validation."""

    def test_cycle_detected(self):
        rows = [
            SpreadRow(key="A", label="A", section="S", order=10, formula_id="F_A"),
            SpreadRow(key="B", label="B", section="S", order=20, formula_id="F_B"),
        ]
        formulas = {"F_A": Formula("F_A", "B"), "F_B": Formula("F_B", "A")}

        with pytest.raises(FormulaRegistryError) as exc_info:
            validate_registry(rows, formulas)
        assert "cycle" in exc_info.value.message

    def test_forward_reference_rejected(self):
        rows = [
            SpreadRow(key="A", label="A", section="S", order=10, formula_id="F_A"),
            SpreadRow(key="B", label="B", section="S", order=20),
        ]
        with pytest.raises(FormulaRegistryError):
            validate_registry(rows, {"F_A": Formula("F_A", "B")})

    def test_duplicate_keys_rejected(self):
        rows = [
            SpreadRow(key="A", label="A", section="S", order=10),
            SpreadRow(key="A", label="A again", section="S", order=20),
        ]
        with pytest.raises(FormulaRegistryError):
            validate_registry(rows, {})

    def test_unregistered_formula_rejected(self):
        rows = [SpreadRow(key="A", label="A", section="S", order=10, formula_id="NOPE")]
        with pytest.raises(UnknownFormulaError):
            validate_registry(rows, {})

    def test_templates_registered(self):
        assert set(SPREAD_TYPES) == {
            "BALANCE_SHEET",
            "STANDARD",
            "T12",
            "RENT_ROLL",
            "PERSONAL_FINANCIAL_STATEMENT",
        }
        assert get_template("balance_sheet").spread_type == "BALANCE_SHEET"

    def test_prerequisites(self):
        t12 = get_template("T12").prerequisites
        assert t12.missing({"BALANCE_SHEET"}, 0) == ["facts:INCOME_STATEMENT|TAX_RETURN"]
        assert t12.missing({"TAX_RETURN"}, 0) == []
        assert get_template("RENT_ROLL").prerequisites.missing(set(), 0) == ["rent_roll_rows"]
        assert get_template("RENT_ROLL").prerequisites.missing(set(), 3) == []
        assert get_template("STANDARD").prerequisites.missing(set(), 0) == []

    def test_unknown_template(self):
        with pytest.raises(UnknownSpreadTypeError):
            get_template("CASH_BUDGET")


class TestFormatDisplay:
    """Tests for cell display strings."""

    def test_empty(self):
        assert format_display(None) == EMPTY_DISPLAY

    def test_rounds_half_up_with_grouping(self):
        assert format_display(1234.5) == "1,235"
        assert format_display(2.5) == "3"

    def test_paren_negative(self):
        assert format_display(-1234.0, sign="PAREN_NEGATIVE") == "(1,234)"

    def test_percent(self):
        assert format_display(0.1234, precision=4, is_percent=True) == "12.34%"

    def test_fixed_precision(self):
        assert format_display(1.4, precision=2) == "1.40"

    def test_fixed_precision_with_grouping(self):
        assert format_display(1234.5, precision=2) == "1,234.50"
        assert format_display(-1234567.891, precision=2) == "-1,234,567.89"
        assert format_display(-1234.5, precision=2, sign="PAREN_NEGATIVE") == "(1,234.50)"

    def test_period_label(self):
        assert period_label("2024-12-31") == "Dec 2024"
        assert period_label("FY2024") == "FY2024"


class TestBalanceSheetRender:
    """Tests for the balance sheet spread."""

    def test_one_column_per_as_of_date_newest_first(self):
        facts = [
            _fact("TOTAL_ASSETS", 1000.0, "2023-12-31"),
            _fact("TOTAL_ASSETS", 1200.0, "2024-12-31"),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        assert [column["key"] for column in spread["columns"]] == ["2024-12-31", "2023-12-31"]
        values = _row(spread, "TOTAL_ASSETS")["values"]
        assert values["2024-12-31"]["value"] == 1200.0
        assert values["2023-12-31"]["value"] == 1000.0
        assert values["2024-12-31"]["display"] == "1,200"
        assert spread["as_of"] == "2024-12-31"
        assert spread["totals"]["TOTAL_ASSETS"] == 1200.0
        assert spread["generated_at"] == "2025-03-01T12:00:00.000Z"

    def test_totals_computed_per_column(self):
        facts = [
            _fact("TOTAL_ASSETS", 1200.0, "2024-12-31"),
            _fact("TOTAL_LIABILITIES", 700.0, "2024-12-31"),
            _fact("TOTAL_EQUITY", 500.0, "2024-12-31"),
            _fact("TOTAL_ASSETS", 1000.0, "2023-12-31"),
            _fact("TOTAL_LIABILITIES", 600.0, "2023-12-31"),
            _fact("TOTAL_EQUITY", 350.0, "2023-12-31"),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        funding = _row(spread, "TOTAL_LIABILITIES_AND_EQUITY")["values"]
        assert funding["2024-12-31"]["value"] == 1200.0
        assert funding["2023-12-31"]["value"] == 950.0
        assert funding["2024-12-31"]["provenance"]["formula"] == "BS_TOTAL_LIABILITIES_AND_EQUITY"

        net_worth = _row(spread, "NET_WORTH")["values"]["2024-12-31"]
        assert net_worth["value"] == 500.0
        debt_to_equity = _row(spread, "DEBT_TO_EQUITY")["values"]["2024-12-31"]
        assert debt_to_equity["display"] == "1.40"

    def test_extracted_total_keeps_fact_provenance(self):
        facts = [
            _fact("CASH_AND_EQUIVALENTS", 100.0),
            _fact("TOTAL_ASSETS", 1200.0),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        cell = _row(spread, "TOTAL_ASSETS")["values"]["2024-12-31"]
        assert cell["value"] == 1200.0
        assert cell["provenance"]["source"] == "BALANCE_SHEET"
        assert cell["provenance"]["input"] == "TOTAL_ASSETS"

    def test_missing_inputs_render_empty_cells(self):
        spread = render_spread("BALANCE_SHEET", [_fact("TOTAL_ASSETS", 1200.0)], generated_at=GENERATED_AT)

        cell = _row(spread, "CURRENT_RATIO")["values"]["2024-12-31"]
        assert cell["value"] is None
        assert cell["display"] == EMPTY_DISPLAY
        assert spread["status"] == "ready"

    def test_undated_facts_dropped_when_others_dated(self):
        facts = [
            _fact("TOTAL_ASSETS", 1200.0),
            _fact("CASH_AND_EQUIVALENTS", 50.0, period_end=None),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        assert [column["key"] for column in spread["columns"]] == ["2024-12-31"]
        assert _row(spread, "CASH_AND_EQUIVALENTS")["values"]["2024-12-31"]["value"] is None

    def test_all_undated_uses_single_value_column(self):
        spread = render_spread(
            "BALANCE_SHEET", [_fact("TOTAL_ASSETS", 1200.0, period_end=None)], generated_at=GENERATED_AT
        )

        assert [column["key"] for column in spread["columns"]] == ["VALUE"]
        assert spread["as_of"] is None

    def test_ignores_heartbeat_and_other_fact_types(self):
        facts = [
            _fact("TOTAL_ASSETS", 1200.0),
            _fact("TOTAL_ASSETS", 9999.0, fact_type="INCOME_STATEMENT"),
            _fact("TEXT_LENGTH", 40.0, fact_type=HEARTBEAT_FACT_TYPE),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        assert spread["totals"]["TOTAL_ASSETS"] == 1200.0

    def test_best_fact_wins_within_column(self):
        facts = [
            _fact("TOTAL_ASSETS", 1000.0, confidence=0.5, document="doc-1"),
            _fact("TOTAL_ASSETS", 1100.0, confidence=0.95, document="doc-2"),
        ]
        spread = render_spread("BALANCE_SHEET", facts, generated_at=GENERATED_AT)

        assert spread["totals"]["TOTAL_ASSETS"] == 1100.0


class TestStandardRender:
    """Tests for the standard financial analysis spread."""

    def test_single_period_collapses_to_current(self):
        facts = [
            _fact("TOTAL_REVENUE", 1000.0, fact_type="INCOME_STATEMENT"),
            _fact("COST_OF_GOODS_SOLD", 600.0, fact_type="INCOME_STATEMENT"),
        ]
        spread = render_spread("STANDARD", facts, generated_at=GENERATED_AT)

        assert [column["key"] for column in spread["columns"]] == ["CURRENT"]
        assert _row(spread, "GROSS_PROFIT")["values"]["CURRENT"]["value"] == 400.0

    def test_ratios_use_extracted_inputs(self):
        facts = [
            _fact("REVENUE", 1000.0, fact_type="INCOME_STATEMENT"),
            _fact("GROSS_PROFIT", 400.0, fact_type="INCOME_STATEMENT"),
        ]
        spread = render_spread("STANDARD", facts, generated_at=GENERATED_AT)

        assert _row(spread, "GROSS_MARGIN")["values"]["CURRENT"]["display"] == "40.00%"

    def test_computed_rows_stay_within_their_statement(self):
        """Test a derived income statement subtotal does not feed cash flow or ratio rows."""
        facts = [
            _fact("GROSS_RENTAL_INCOME", 100.0, fact_type="INCOME_STATEMENT"),
            _fact("REPAIRS_MAINTENANCE", 40.0, fact_type="INCOME_STATEMENT"),
        ]
        spread = render_spread("STANDARD", facts, generated_at=GENERATED_AT)

        assert _row(spread, "NOI")["values"]["CURRENT"]["value"] == 60.0
        assert _row(spread, "CASH_FLOW_AVAILABLE")["values"]["CURRENT"]["value"] is None
        assert _row(spread, "NOI_MARGIN")["values"]["CURRENT"]["value"] is None

    def test_extracted_noi_reaches_cash_flow(self):
        facts = [_fact("NOI", 75.0, fact_type="INCOME_STATEMENT")]
        spread = render_spread("STANDARD", facts, generated_at=GENERATED_AT)

        cell = _row(spread, "CASH_FLOW_AVAILABLE")["values"]["CURRENT"]
        assert cell["value"] == 75.0
        assert cell["provenance"]["formula"] == "STD_CASH_FLOW_AVAILABLE"

    def test_periods_ascending_with_labels(self):
        facts = [
            _fact("TOTAL_REVENUE", 1100.0, "2024-12-31", fact_type="INCOME_STATEMENT"),
            _fact("TOTAL_REVENUE", 1000.0, "2023-12-31", fact_type="INCOME_STATEMENT"),
        ]
        spread = render_spread("STANDARD", facts, generated_at=GENERATED_AT)

        assert [column["label"] for column in spread["columns"]] == ["Dec 2023", "Dec 2024"]
        assert spread["as_of"] == "2024-12-31"

    def test_section_headers(self):
        spread = render_spread("STANDARD", [], generated_at=GENERATED_AT)

        headers = [row["key"] for row in spread["rows"] if row.get("notes") == "section_header"]
        assert headers[0] == "_header_BALANCE_SHEET"
        assert "_header_RATIOS" in headers


class TestValidation:
    """Tests for validation warnings attached to a render."""

    def test_balanced_sheet_has_no_imbalance(self):
        facts = [
            _fact("TOTAL_ASSETS", 1200.0),
            _fact("TOTAL_LIABILITIES", 700.0),
            _fact("TOTAL_EQUITY", 500.0),
        ]
        spread = render_with_validation("BALANCE_SHEET", facts, financial_snapshot={"missing_required": []})

        assert spread["meta"]["validated"] is True
        assert "validation_warnings" not in spread["meta"]

    def test_large_imbalance_is_error(self):
        facts = [
            _fact("TOTAL_ASSETS", 1200.0),
            _fact("TOTAL_LIABILITIES_AND_EQUITY", 1100.0),
        ]
        spread = render_with_validation("BALANCE_SHEET", facts, financial_snapshot={"missing_required": []})

        warnings = spread["meta"]["validation_warnings"]
        assert warnings[0]["code"] == "ACCOUNTING_EQUATION_IMBALANCE"
        assert warnings[0]["severity"] == "error"
        assert warnings[0]["difference"] == 100.0

    def test_small_imbalance_is_warning(self):
        facts = [
            _fact("TOTAL_ASSETS", 1_000_000.0),
            _fact("TOTAL_LIABILITIES_AND_EQUITY", 999_000.0),
        ]
        spread = render_with_validation("BALANCE_SHEET", facts, financial_snapshot={"missing_required": []})

        assert spread["meta"]["validation_warnings"][0]["severity"] == "warning"

    def test_missing_required_metrics_reported(self):
        spread = render_with_validation(
            "BALANCE_SHEET", [_fact("TOTAL_ASSETS", 1.0)], financial_snapshot={"missing_required": ["DSCR"]}
        )

        codes = [w["code"] for w in spread["meta"]["validation_warnings"]]
        assert codes == ["MISSING_REQUIRED_METRIC"]

    def test_without_snapshot_skips_validation(self):
        spread = render_with_validation("BALANCE_SHEET", [_fact("TOTAL_ASSETS", 1.0)])
        assert "validated" not in spread["meta"]

    def test_attach_validation_replaces_stale_warnings(self):
        spread = render_spread("BALANCE_SHEET", [_fact("TOTAL_ASSETS", 1.0)], generated_at=GENERATED_AT)
        spread["meta"]["validation_warnings"] = [{"code": "MISSING_REQUIRED_METRIC", "metric": "TOTAL_ASSETS"}]

        validated = attach_validation(spread, {"missing_required": []})

        assert validated["meta"]["validated"] is True
        assert "validation_warnings" not in validated["meta"]
        assert "validated" not in spread["meta"]


class TestT12Render:
    """Tests for the operating performance spread."""

    def test_income_statement_aliases_map_to_rows(self):
        facts = [
            _fact("GROSS_RENTAL_INCOME", 1000.0, fact_type="INCOME_STATEMENT"),
            _fact("NET_OPERATING_INCOME", 500.0, fact_type="INCOME_STATEMENT"),
        ]
        spread = render_spread("T12", facts, generated_at=GENERATED_AT)

        noi = _row(spread, "NOI")["values"]["CURRENT"]
        assert noi["value"] == 500.0
        assert noi["provenance"]["input"] == "NET_OPERATING_INCOME"
        assert _row(spread, "TOTAL_INCOME")["values"]["CURRENT"]["value"] == 1000.0
        assert _row(spread, "NOI_MARGIN")["values"]["CURRENT"]["display"] == "50.0%"

    def test_income_statement_wins_over_tax_return(self):
        facts = [
            _fact("GROSS_RECEIPTS", 900.0, fact_type="TAX_RETURN", confidence=0.99),
            _fact("GROSS_RENTAL_INCOME", 1000.0, fact_type="INCOME_STATEMENT", confidence=0.6),
        ]
        spread = render_spread("T12", facts, generated_at=GENERATED_AT)

        cell = _row(spread, "GROSS_RENTAL_INCOME")["values"]["CURRENT"]
        assert cell["value"] == 1000.0
        assert cell["provenance"]["source"] == "INCOME_STATEMENT"

    def test_tax_return_only(self):
        facts = [
            _fact("GROSS_RECEIPTS", 900.0, fact_type="TAX_RETURN"),
            _fact("INSURANCE_EXPENSE", 100.0, fact_type="TAX_RETURN"),
            _fact("DEPRECIATION", 50.0, fact_type="TAX_RETURN"),
        ]
        spread = render_spread("T12", facts, generated_at=GENERATED_AT)

        assert _row(spread, "INSURANCE")["values"]["CURRENT"]["value"] == 100.0
        assert _row(spread, "NOI")["values"]["CURRENT"]["value"] == 800.0
        assert _row(spread, "NET_CASH_FLOW_BEFORE_DEBT")["values"]["CURRENT"]["value"] == 800.0
        assert "DEPRECIATION" not in [row["key"] for row in spread["rows"]]

    def test_ignores_balance_sheet_facts(self):
        spread = render_spread("T12", [_fact("TOTAL_ASSETS", 1200.0)], generated_at=GENERATED_AT)

        assert spread["totals"]["NOI"] is None


class TestPersonalFinancialStatementRender:
    """Tests for the personal financial statement spread."""

    def _facts(self, **values):
        return [_fact(key, value, fact_type="PERSONAL_FINANCIAL_STATEMENT") for key, value in values.items()]

    def test_totals_and_net_worth(self):
        facts = self._facts(PFS_CASH=100.0, PFS_REAL_ESTATE=900.0, PFS_MORTGAGES=400.0)
        spread = render_spread("PERSONAL_FINANCIAL_STATEMENT", facts, generated_at=GENERATED_AT)

        assert [column["key"] for column in spread["columns"]] == ["2024-12-31"]
        assert spread["totals"]["PFS_TOTAL_ASSETS"] == 1000.0
        assert spread["totals"]["PFS_TOTAL_LIABILITIES"] == 400.0
        assert spread["totals"]["PFS_NET_WORTH"] == 600.0

    def test_net_worth_needs_liabilities(self):
        spread = render_spread(
            "PERSONAL_FINANCIAL_STATEMENT", self._facts(PFS_CASH=100.0), generated_at=GENERATED_AT
        )

        cell = _row(spread, "PFS_NET_WORTH")["values"]["2024-12-31"]
        assert cell["value"] is None
        assert cell["display"] == EMPTY_DISPLAY


def _unit(unit_id, row_index, as_of="2025-01-01", **kwargs) -> RentRollRow:
    return RentRollRow(
        tenant_id="bank-1",
        case_id="deal-1",
        source_document_id="doc-1",
        row_index=row_index,
        as_of_date=as_of,
        unit_id=unit_id,
        occupancy_status=kwargs.pop("status", "OCCUPIED"),
        **kwargs,
    )


class TestRentRollRender:
    """Tests for the rent roll unit listing."""

    def _rows(self):
        return [
            _unit("102", 0, tenant_name="Beta", sqft=1000.0, monthly_rent=2000.0, lease_end="2027-01-01"),
            _unit("101", 1, status="VACANT", sqft=500.0),
            _unit("101", 2, tenant_name="Alpha", sqft=500.0, annual_rent=12000.0, lease_end="2026-01-01"),
            _unit("999", 3, as_of="2024-01-01", tenant_name="Old", sqft=800.0, monthly_rent=900.0),
        ]

    def test_latest_as_of_only_sorted_by_unit(self):
        spread = render_spread("RENT_ROLL", [], generated_at=GENERATED_AT, rent_roll_rows=self._rows())

        units = [row for row in spread["rows"] if not row["is_total"]]
        assert [row["values"]["UNIT"]["value"] for row in units] == ["101", "101", "102"]
        assert [row["values"]["TENANT"]["value"] for row in units] == ["Alpha", None, "Beta"]
        assert spread["as_of"] == "2025-01-01"
        assert spread["meta"]["row_count"] == 6
        assert [row["key"] for row in spread["rows"][-3:]] == ["TOTAL_OCCUPIED", "TOTAL_VACANT", "TOTALS"]

    def test_rent_and_walt(self):
        spread = render_spread("RENT_ROLL", [], generated_at=GENERATED_AT, rent_roll_rows=self._rows())

        alpha = spread["rows"][0]["values"]
        assert alpha["RENT_MO"]["value"] == 1000.0
        assert alpha["WALT_YEARS"]["value"] == pytest.approx(365 / 365.25)
        beta = spread["rows"][2]["values"]
        assert beta["RENT_YR"]["display"] == "$24,000"
        vacant = spread["rows"][1]["values"]
        assert vacant["STATUS"]["value"] == "VACANT"
        assert vacant["WALT_YEARS"]["value"] is None

    def test_totals_by_square_footage(self):
        spread = render_spread("RENT_ROLL", [], generated_at=GENERATED_AT, rent_roll_rows=self._rows())

        totals = spread["totals"]
        assert totals["TOTAL_OCCUPIED_RENT_MO"] == 3000.0
        assert totals["TOTAL_OCCUPIED_SQFT"] == 1500.0
        assert totals["TOTAL_SQFT"] == 2000.0
        assert totals["OCCUPANCY_PCT"] == pytest.approx(0.75)
        assert totals["VACANCY_PCT"] == pytest.approx(0.25)
        assert _row(spread, "TOTALS")["values"]["RENT_YR"]["value"] == 36000.0

    def test_no_rows(self):
        spread = render_spread("RENT_ROLL", [], generated_at=GENERATED_AT, rent_roll_rows=[])

        assert [row["key"] for row in spread["rows"]] == ["no_data"]
        assert spread["as_of"] is None
        assert spread["totals"]["OCCUPANCY_PCT"] is None
