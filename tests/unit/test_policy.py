"""
Unit tests for policy expressions and rule evaluation.
"""
import pytest

from loanspread.exceptions import ValidationError
from loanspread.services.policy import (
    DEFAULT_POLICY_RULES,
    AllOf,
    AnyOf,
    Compare,
    PolicyRule,
    evaluate,
    evaluate_policy,
    metric_values,
    parse_expression,
)


class TestEvaluate:
    """Tests for the expression interpreter."""

    def test_compare(self):
        assert evaluate(Compare("DSCR", ">=", 1.25), {"DSCR": 1.3}) is True
        assert evaluate(Compare("DSCR", ">=", 1.25), {"DSCR": 1.1}) is False

    def test_missing_field_is_false(self):
        assert evaluate(Compare("DSCR", ">=", 1.25), {}) is False
        assert evaluate(Compare("DSCR", "<", 99), {"DSCR": float("nan")}) is False

    def test_incomparable_is_false(self):
        assert evaluate(Compare("DSCR", ">", 1), {"DSCR": "n/a"}) is False

    def test_membership(self):
        expr = Compare("RISK_GRADE", "in", ("A", "B"))
        assert evaluate(expr, {"RISK_GRADE": "B"}) is True
        assert evaluate(expr, {"RISK_GRADE": "D"}) is False

    def test_nested(self):
        expr = AnyOf((
            Compare("OCCUPANCY_PCT", ">=", 0.85),
            AllOf((Compare("DSCR", ">=", 1.5), Compare("LTV", "<=", 0.6))),
        ))
        assert evaluate(expr, {"OCCUPANCY_PCT": 0.9}) is True
        assert evaluate(expr, {"OCCUPANCY_PCT": 0.7, "DSCR": 1.6, "LTV": 0.5}) is True
        assert evaluate(expr, {"OCCUPANCY_PCT": 0.7, "DSCR": 1.6}) is False

    def test_empty_groups(self):
        assert evaluate(AllOf(()), {}) is True
        assert evaluate(AnyOf(()), {}) is False


class TestParseExpression:
    """Tests for JSON expression parsing."""

    def test_round_trip_shape(self):
        expr = parse_expression({
            "all": [
                {"field": "DSCR", "op": ">=", "value": 1.25},
                {"any": [{"field": "LTV", "op": "<=", "value": 0.8}, {"field": "GRADE", "op": "in", "value": ["A"]}]},
            ]
        })
        assert expr == AllOf((
            Compare("DSCR", ">=", 1.25),
            AnyOf((Compare("LTV", "<=", 0.8), Compare("GRADE", "in", ("A",)))),
        ))

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            parse_expression({"field": "DSCR", "op": "~=", "value": 1})

    def test_unknown_shape(self):
        with pytest.raises(ValidationError):
            parse_expression({"not": {"field": "DSCR"}})

    def test_non_object(self):
        with pytest.raises(ValidationError):
            parse_expression(["DSCR"])


class TestPolicyRules:
    """Tests for rule evaluation."""

    def test_from_dict(self):
        rule = PolicyRule.from_dict({
            "rule_key": "min_dscr",
            "condition": {"field": "DSCR", "op": ">=", "value": 1.25},
        })
        assert rule.severity == "warning"
        assert rule.condition == Compare("DSCR", ">=", 1.25)

    def test_results_in_rule_order(self):
        metrics = {"DSCR": 1.4, "LTV": 0.9, "EXCESS_CASH_FLOW": 10.0, "OCCUPANCY_PCT": 0.95, "NET_WORTH": 5.0}
        results = evaluate_policy(DEFAULT_POLICY_RULES, metrics)

        assert [r["rule_key"] for r in results] == [rule.rule_key for rule in DEFAULT_POLICY_RULES]
        by_key = {r["rule_key"]: r for r in results}
        assert by_key["min_dscr"]["result"] == "pass"
        assert by_key["max_ltv"]["result"] == "fail"
        assert by_key["max_ltv"]["severity"] == "error"

    def test_missing_metrics_fail(self):
        results = evaluate_policy(DEFAULT_POLICY_RULES, {})
        assert all(r["passed"] is False for r in results)

    def test_metric_values(self):
        snapshot = {"metrics": {"DSCR": {"value": 1.3, "source": "x"}, "LTV": {"value": None}}}
        assert metric_values(snapshot) == {"DSCR": 1.3, "LTV": None}
        assert metric_values({}) == {}
