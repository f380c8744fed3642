"""
Formula engine.

Evaluates a template's rows for one column. Each column starts from an immutable
FactSnapshot of extracted values; as rows resolve, their values are folded into a
new snapshot so later rows of the same statement see them. The evaluation order
is an explicit input.
"""
import math
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Tuple

from loanspread.exceptions import UnknownFormulaError
from loanspread.services.spreads.metrics import evaluate_metric, expression_identifiers, get_metric


class FactSnapshot(Mapping):
    """
    Read-only fact key -> value mapping for one column.

    with_value() returns a new snapshot; the original never changes.
    """

    __slots__ = ("_values",)

    def __init__(self, values: Optional[Mapping[str, Optional[float]]] = None):
        self._values = MappingProxyType(dict(values or {}))

    def __getitem__(self, key: str) -> Optional[float]:
        return self._values[key]

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"FactSnapshot({dict(self._values)!r})"

    def value(self, key: str) -> Optional[float]:
        return self._values.get(key)

    def with_value(self, key: str, value: Optional[float]) -> "FactSnapshot":
        """Copy with one key set. A None value leaves the snapshot as is."""
        if value is None:
            return self
        updated = dict(self._values)
        updated[key] = value
        return FactSnapshot(updated)


def evaluate_structural(expr: str, values: Mapping[str, Optional[float]]) -> Optional[float]:
    """
    Left-to-right walk over "A + B - C" style expressions.

    Missing terms are skipped (zero for + and - chains); the result is None when
    no term has a value or the sum is not finite.
    """
    result: Optional[float] = None
    op = "+"
    for part in expr.split():
        if part in ("+", "-"):
            op = part
            continue
        value = values.get(part)
        if value is None:
            continue
        if result is None:
            result = -value if op == "-" else value
        elif op == "+":
            result += value
        else:
            result -= value

    if result is not None and not math.isfinite(result):
        return None
    return result


@dataclass(frozen=True)
class Formula:
    """
    A row formula: either delegated to a registered metric, or a structural
    sum/difference over other keys.
    """

    id: str
    expr: str = ""
    metric_id: Optional[str] = None

    @property
    def references(self) -> List[str]:
        if self.metric_id:
            return expression_identifiers(get_metric(self.metric_id).expr)
        return [part for part in self.expr.split() if part not in ("+", "-")]

    def evaluate(self, values: Mapping[str, Optional[float]]) -> Optional[float]:
        if self.metric_id:
            return evaluate_metric(self.metric_id, values)
        return evaluate_structural(self.expr, values)


@dataclass
class CellResult:
    """Value of one row in one column, and where it came from."""

    value: Optional[float]
    provenance: Optional[Dict[str, Any]] = None


@dataclass
class ColumnEvaluation:
    """Every row's result for one column, plus the final snapshot."""

    cells: Dict[str, CellResult] = field(default_factory=dict)
    snapshot: FactSnapshot = field(default_factory=FactSnapshot)


class FormulaEngine:
    """
    Evaluates ordered rows against per-column fact snapshots.

    An extracted value always wins; a row's formula only fills an empty cell.
    Every resolved value is folded into its statement's snapshot before the
    next row runs.
    """

    def __init__(self, formulas: Mapping[str, Formula]):
        self.formulas = formulas

    def formula(self, formula_id: str) -> Formula:
        formula = self.formulas.get(formula_id)
        if formula is None:
            raise UnknownFormulaError(formula_id)
        return formula

    def evaluate_column(
        self,
        order: Sequence[Tuple[Any, ...]],
        snapshot: FactSnapshot,
        fact_provenance: Optional[Mapping[str, Dict[str, Any]]] = None,
    ) -> ColumnEvaluation:
        """
        Evaluate rows in the given order.

        A formula sees the extracted values plus rows already resolved in the
        same statement. Computed rows of another statement are not visible, so
        a cash flow row never picks up an income statement subtotal that was
        only derived, not extracted.

        Args:
            order: (row key, formula id or None[, statement]) tuples. Rows are
                resolved in this order; a missing statement groups the row with
                every other row that has none.
            snapshot: Extracted values for the column.
            fact_provenance: Provenance of each extracted value, by key.
        """
        fact_provenance = fact_provenance or {}
        result = ColumnEvaluation(snapshot=snapshot)
        by_statement: Dict[Optional[str], FactSnapshot] = {}

        for item in order:
            row_key, formula_id = item[0], item[1]
            statement = item[2] if len(item) > 2 else None
            scoped = by_statement.get(statement, snapshot)

            extracted = snapshot.value(row_key)
            if extracted is not None or formula_id is None:
                cell = CellResult(extracted, fact_provenance.get(row_key) if extracted is not None else None)
            else:
                formula = self.formula(formula_id)
                value = formula.evaluate(scoped)
                provenance = None
                if value is not None:
                    provenance = {"source": "Formula", "formula": formula.id, "expr": formula.expr or formula.metric_id}
                cell = CellResult(value, provenance)
            result.cells[row_key] = cell
            by_statement[statement] = scoped.with_value(row_key, cell.value)
            result.snapshot = result.snapshot.with_value(row_key, cell.value)
        return result
