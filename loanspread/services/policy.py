"""
Credit policy rules.

A rule's condition is a closed expression tree (AllOf / AnyOf / Compare) evaluated
by a total interpreter: every input produces True or False, and a field that is
missing or not comparable simply makes its comparison false.
"""
import math
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from loanspread.exceptions import ValidationError

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Compare:
    """field <op> value."""
    field: str
    op: str
    value: Any


@dataclass(frozen=True)
class AllOf:
    children: Tuple["Expr", ...]


@dataclass(frozen=True)
class AnyOf:
    children: Tuple["Expr", ...]


Expr = Union[AllOf, AnyOf, Compare]

COMPARATORS: Dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
    "in": lambda left, right: left in right,
}


def _missing(value: Any) -> bool:
    return value is None or (isinstance(value, float) and math.isnan(value))


def evaluate(expr: Expr, values: Mapping[str, Any]) -> bool:
    """Evaluate an expression against a flat field mapping."""
    if isinstance(expr, AllOf):
        return all(evaluate(child, values) for child in expr.children)
    if isinstance(expr, AnyOf):
        return any(evaluate(child, values) for child in expr.children)

    left = values.get(expr.field)
    if _missing(left):
        return False
    try:
        return bool(COMPARATORS[expr.op](left, expr.value))
    except TypeError:
        # e.g. a text value compared with a number
        return False


def parse_expression(raw: Mapping[str, Any]) -> Expr:
    """
    Build an expression from its JSON form.

    {"all": [...]}, {"any": [...]} or {"field": "DSCR", "op": ">=", "value": 1.25}.

    Raises:
        ValidationError: Unknown node shape or operator.
    """
    if not isinstance(raw, Mapping):
        raise ValidationError("Policy condition must be an object", errors=[{"node": repr(raw)}])
    if "all" in raw:
        return AllOf(tuple(parse_expression(child) for child in raw["all"]))
    if "any" in raw:
        return AnyOf(tuple(parse_expression(child) for child in raw["any"]))
    if "field" in raw and "op" in raw:
        if raw["op"] not in COMPARATORS:
            raise ValidationError(f"Unknown policy operator: {raw['op']}", errors=[{"op": raw["op"]}])
        value = raw.get("value")
        if raw["op"] == "in":
            value = tuple(value or ())
        return Compare(str(raw["field"]), raw["op"], value)
    raise ValidationError("Unrecognized policy condition", errors=[{"keys": sorted(raw)}])


@dataclass(frozen=True)
class PolicyRule:
    """A rule passes when its condition holds."""

    rule_key: str
    severity: str
    condition: Expr
    reason: str

    @classmethod
    def from_dict(cls, raw: Mapping[str, Any]) -> "PolicyRule":
        return cls(
            rule_key=raw["rule_key"],
            severity=raw.get("severity", "warning"),
            condition=parse_expression(raw["condition"]),
            reason=raw.get("reason", ""),
        )


DEFAULT_POLICY_RULES: List[PolicyRule] = [
    PolicyRule("min_dscr", "error", Compare("DSCR", ">=", 1.25), "Debt service coverage below 1.25x"),
    PolicyRule("max_ltv", "error", Compare("LTV", "<=", 0.80), "Loan-to-value above 80%"),
    PolicyRule(
        "positive_excess_cash_flow",
        "warning",
        Compare("EXCESS_CASH_FLOW", ">", 0),
        "Cash flow does not cover annual debt service",
    ),
    PolicyRule(
        "stabilized_occupancy",
        "warning",
        AnyOf((Compare("OCCUPANCY_PCT", ">=", 0.85), AllOf((Compare("DSCR", ">=", 1.5),)))),
        "Occupancy below 85% without a 1.5x coverage cushion",
    ),
    PolicyRule("positive_net_worth", "warning", Compare("NET_WORTH", ">", 0), "Guarantor net worth is not positive"),
]


def metric_values(financial_snapshot: Mapping[str, Any]) -> Dict[str, Optional[float]]:
    """Flatten a financial snapshot's metrics block to name -> value."""
    return {name: (metric or {}).get("value") for name, metric in (financial_snapshot.get("metrics") or {}).items()}


def evaluate_policy(rules: Sequence[PolicyRule], metrics: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """One result per rule, in rule order."""
    results = []
    for rule in rules:
        passed = evaluate(rule.condition, metrics)
        results.append({
            "rule_key": rule.rule_key,
            "passed": passed,
            "result": "pass" if passed else "fail",
            "severity": rule.severity,
            "reason": rule.reason,
        })
    failed = [r["rule_key"] for r in results if not r["passed"]]
    logger.debug("policy_evaluated", rules=len(results), failed=failed)
    return results
