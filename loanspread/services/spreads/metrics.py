"""
Metric registry.

Every computed ratio or subtotal that a spread shows through a metric formula is
defined here once, as an arithmetic expression over fact keys (or over other
metric ids that an earlier spread row has already resolved).

Expressions are parsed by a small recursive-descent parser supporting
+ - * / ( ), unary minus, numbers and identifiers. Nothing is ever passed to eval().
"""
import math
import re
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from loanspread.exceptions import FormulaRegistryError, UnknownMetricError

METRIC_REGISTRY_VERSION = 1

OPERATING_COMPANY = "OPERATING_COMPANY"
REAL_ESTATE = "REAL_ESTATE"
MIXED = "MIXED"

ALL_MODELS = (OPERATING_COMPANY, REAL_ESTATE, MIXED)
RE_MODELS = (REAL_ESTATE, MIXED)
OP_MODELS = (OPERATING_COMPANY, MIXED)


@dataclass(frozen=True)
class MetricDefinition:
    """A registered metric."""

    id: str
    label: str
    expr: str
    precision: int = 0
    is_percent: bool = False
    required_facts: Tuple[str, ...] = ()
    applicable_to: Tuple[str, ...] = ALL_MODELS
    version: int = 1


# Expression parsing

TOKEN = re.compile(r"\s*(?:(\d+(?:\.\d+)?)|([A-Za-z_][A-Za-z0-9_]*)|(\S))")

# Parsed nodes are plain tuples:
#   ("num", value) ("var", name) ("neg", node) ("bin", op, left, right)
Node = tuple


def _tokenize(expr: str) -> List[Tuple[str, str]]:
    tokens = []
    position = 0
    expr = expr.rstrip()
    while position < len(expr):
        match = TOKEN.match(expr, position)
        if match is None:
            break
        number, name, symbol = match.groups()
        if number is not None:
            tokens.append(("num", number))
        elif name is not None:
            tokens.append(("var", name))
        elif symbol in "+-*/()":
            tokens.append(("op", symbol))
        else:
            raise FormulaRegistryError(
                f"Unexpected character {symbol!r} in expression",
                details={"expr": expr, "position": match.start(3)},
            )
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, expr: str):
        self.expr = expr
        self.tokens = _tokenize(expr)
        self.index = 0

    def _peek(self) -> Optional[Tuple[str, str]]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def _take(self) -> Tuple[str, str]:
        token = self._peek()
        if token is None:
            raise FormulaRegistryError("Unexpected end of expression", details={"expr": self.expr})
        self.index += 1
        return token

    def parse(self) -> Node:
        if not self.tokens:
            raise FormulaRegistryError("Empty expression", details={"expr": self.expr})
        node = self._expression()
        if self._peek() is not None:
            raise FormulaRegistryError(
                f"Unexpected token {self._peek()[1]!r}", details={"expr": self.expr}
            )
        return node

    def _expression(self) -> Node:
        node = self._term()
        while self._peek() in (("op", "+"), ("op", "-")):
            op = self._take()[1]
            node = ("bin", op, node, self._term())
        return node

    def _term(self) -> Node:
        node = self._factor()
        while self._peek() in (("op", "*"), ("op", "/")):
            op = self._take()[1]
            node = ("bin", op, node, self._factor())
        return node

    def _factor(self) -> Node:
        kind, text = self._take()
        if kind == "num":
            return ("num", float(text))
        if kind == "var":
            return ("var", text)
        if text == "-":
            return ("neg", self._factor())
        if text == "+":
            return self._factor()
        if text == "(":
            node = self._expression()
            if self._take() != ("op", ")"):
                raise FormulaRegistryError("Unbalanced parenthesis", details={"expr": self.expr})
            return node
        raise FormulaRegistryError(f"Unexpected token {text!r}", details={"expr": self.expr})


_compiled: Dict[str, Node] = {}


def compile_expression(expr: str) -> Node:
    """Parse an expression once and cache the tree."""
    node = _compiled.get(expr)
    if node is None:
        node = _Parser(expr).parse()
        _compiled[expr] = node
    return node


def expression_identifiers(expr: str) -> List[str]:
    """Identifiers referenced by an expression, in first-seen order."""
    names: List[str] = []

    def walk(node: Node) -> None:
        if node[0] == "var" and node[1] not in names:
            names.append(node[1])
        elif node[0] == "neg":
            walk(node[1])
        elif node[0] == "bin":
            walk(node[2])
            walk(node[3])

    walk(compile_expression(expr))
    return names


class _DivideByZero(Exception):
    pass


def _evaluate(node: Node, values: Mapping[str, Optional[float]]) -> float:
    kind = node[0]
    if kind == "num":
        return node[1]
    if kind == "var":
        value = values.get(node[1])
        return 0.0 if value is None else float(value)
    if kind == "neg":
        return -_evaluate(node[1], values)

    _, op, left, right = node
    a = _evaluate(left, values)
    b = _evaluate(right, values)
    if op == "+":
        return a + b
    if op == "-":
        return a - b
    if op == "*":
        return a * b
    if b == 0:
        raise _DivideByZero()
    return a / b


def evaluate_expression(expr: str, values: Mapping[str, Optional[float]]) -> Optional[float]:
    """
    Evaluate an expression against a value mapping.

    Identifiers without a value count as zero, but if none of the expression's
    identifiers has a value the result is None. Division by zero and non-finite
    results are None too.
    """
    names = expression_identifiers(expr)
    if names and all(values.get(name) is None for name in names):
        return None
    try:
        result = _evaluate(compile_expression(expr), values)
    except _DivideByZero:
        return None
    return result if math.isfinite(result) else None


def get_metric(metric_id: str) -> MetricDefinition:
    definition = METRIC_REGISTRY.get(metric_id)
    if definition is None:
        raise UnknownMetricError(metric_id)
    return definition


def evaluate_metric(metric_id: str, values: Mapping[str, Optional[float]]) -> Optional[float]:
    """
    Value of a registered metric, or None when a required fact is missing.

    Raises:
        UnknownMetricError: If the metric is not registered.
    """
    definition = get_metric(metric_id)
    if any(values.get(key) is None for key in definition.required_facts):
        return None
    return evaluate_expression(definition.expr, values)


def _metric(id: str, label: str, expr: str, precision: int = 0, is_percent: bool = False,
            required: Tuple[str, ...] = (), applicable_to: Tuple[str, ...] = ALL_MODELS) -> MetricDefinition:
    return MetricDefinition(
        id=id, label=label, expr=expr, precision=precision, is_percent=is_percent,
        required_facts=required, applicable_to=applicable_to,
    )


_DEFINITIONS = [
    # Income statement
    _metric("TOTAL_INCOME", "Total Income", "GROSS_RENTAL_INCOME + OTHER_INCOME - VACANCY_CONCESSIONS",
            required=("GROSS_RENTAL_INCOME",), applicable_to=RE_MODELS),
    _metric("TOTAL_OPEX", "Total Operating Expenses",
            "REPAIRS_MAINTENANCE + UTILITIES + PROPERTY_MANAGEMENT + REAL_ESTATE_TAXES + INSURANCE"
            " + PAYROLL + MARKETING + PROFESSIONAL_FEES + OTHER_OPEX",
            applicable_to=RE_MODELS),
    _metric("NOI", "Net Operating Income", "TOTAL_INCOME - TOTAL_OPEX",
            required=("TOTAL_INCOME", "TOTAL_OPEX"), applicable_to=RE_MODELS),
    _metric("NOI_MARGIN", "NOI Margin", "NOI / TOTAL_INCOME", precision=4, is_percent=True,
            required=("NOI", "TOTAL_INCOME"), applicable_to=RE_MODELS),
    _metric("OPEX_RATIO", "Operating Expense Ratio", "TOTAL_OPEX / TOTAL_INCOME", precision=4, is_percent=True,
            required=("TOTAL_OPEX", "TOTAL_INCOME"), applicable_to=RE_MODELS),
    _metric("REVENUE", "Revenue", "TOTAL_REVENUE", required=("TOTAL_REVENUE",)),
    _metric("COGS", "Cost of Goods Sold", "COST_OF_GOODS_SOLD",
            required=("COST_OF_GOODS_SOLD",), applicable_to=OP_MODELS),
    _metric("GROSS_PROFIT", "Gross Profit", "REVENUE - COGS",
            required=("REVENUE", "COGS"), applicable_to=OP_MODELS),
    _metric("GROSS_MARGIN", "Gross Margin", "GROSS_PROFIT / REVENUE", precision=4, is_percent=True,
            required=("GROSS_PROFIT", "REVENUE"), applicable_to=OP_MODELS),
    _metric("EBITDA", "EBITDA", "EBITDA", required=("EBITDA",)),
    _metric("EBITDA_MARGIN", "EBITDA Margin", "EBITDA / REVENUE", precision=4, is_percent=True,
            required=("EBITDA", "REVENUE"), applicable_to=OP_MODELS),
    _metric("NET_INCOME", "Net Income", "NET_INCOME", required=("NET_INCOME",)),
    _metric("NET_MARGIN", "Net Margin", "NET_INCOME / REVENUE", precision=4, is_percent=True,
            required=("NET_INCOME", "REVENUE"), applicable_to=OP_MODELS),
    # Balance sheet
    _metric("TOTAL_ASSETS", "Total Assets", "TOTAL_ASSETS", required=("TOTAL_ASSETS",)),
    _metric("TOTAL_LIABILITIES", "Total Liabilities", "TOTAL_LIABILITIES", required=("TOTAL_LIABILITIES",)),
    _metric("NET_WORTH", "Net Worth", "TOTAL_ASSETS - TOTAL_LIABILITIES",
            required=("TOTAL_ASSETS", "TOTAL_LIABILITIES")),
    _metric("WORKING_CAPITAL", "Working Capital", "TOTAL_CURRENT_ASSETS - TOTAL_CURRENT_LIABILITIES",
            required=("TOTAL_CURRENT_ASSETS", "TOTAL_CURRENT_LIABILITIES")),
    _metric("CURRENT_RATIO", "Current Ratio", "TOTAL_CURRENT_ASSETS / TOTAL_CURRENT_LIABILITIES", precision=2,
            required=("TOTAL_CURRENT_ASSETS", "TOTAL_CURRENT_LIABILITIES")),
    _metric("DEBT_TO_EQUITY", "Debt to Equity", "TOTAL_LIABILITIES / NET_WORTH", precision=2,
            required=("TOTAL_LIABILITIES", "NET_WORTH")),
    _metric("EQUITY_RATIO", "Equity Ratio", "NET_WORTH / TOTAL_ASSETS", precision=4, is_percent=True,
            required=("NET_WORTH", "TOTAL_ASSETS")),
    _metric("PFS_NET_WORTH", "Personal Net Worth", "PFS_TOTAL_ASSETS - PFS_TOTAL_LIABILITIES",
            required=("PFS_TOTAL_ASSETS", "PFS_TOTAL_LIABILITIES")),
    # Cash flow and coverage
    _metric("CASH_FLOW_AVAILABLE", "Cash Flow Available for Debt Service", "CASH_FLOW_AVAILABLE",
            required=("CASH_FLOW_AVAILABLE",)),
    _metric("ANNUAL_DEBT_SERVICE", "Annual Debt Service", "ANNUAL_DEBT_SERVICE",
            required=("ANNUAL_DEBT_SERVICE",)),
    _metric("EXCESS_CASH_FLOW", "Excess Cash Flow", "CASH_FLOW_AVAILABLE - ANNUAL_DEBT_SERVICE",
            required=("CASH_FLOW_AVAILABLE", "ANNUAL_DEBT_SERVICE")),
    _metric("DSCR", "Debt Service Coverage Ratio", "CASH_FLOW_AVAILABLE / ANNUAL_DEBT_SERVICE", precision=2,
            required=("CASH_FLOW_AVAILABLE", "ANNUAL_DEBT_SERVICE")),
    _metric("DSCR_STRESSED_300BPS", "DSCR (Stressed +300bps)",
            "CASH_FLOW_AVAILABLE / ANNUAL_DEBT_SERVICE_STRESSED_300BPS", precision=2,
            required=("CASH_FLOW_AVAILABLE", "ANNUAL_DEBT_SERVICE_STRESSED_300BPS")),
    _metric("DEBT_YIELD", "Debt Yield", "NOI / BANK_LOAN_TOTAL", precision=4, is_percent=True,
            required=("NOI", "BANK_LOAN_TOTAL"), applicable_to=RE_MODELS),
    _metric("CAP_RATE", "Cap Rate", "NOI / COLLATERAL_GROSS_VALUE", precision=4, is_percent=True,
            required=("NOI", "COLLATERAL_GROSS_VALUE"), applicable_to=RE_MODELS),
    # Collateral
    _metric("LTV_GROSS", "LTV (Gross)", "BANK_LOAN_TOTAL / COLLATERAL_GROSS_VALUE", precision=4, is_percent=True,
            required=("BANK_LOAN_TOTAL", "COLLATERAL_GROSS_VALUE")),
    _metric("LTV_NET", "LTV (Net)", "BANK_LOAN_TOTAL / COLLATERAL_NET_VALUE", precision=4, is_percent=True,
            required=("BANK_LOAN_TOTAL", "COLLATERAL_NET_VALUE")),
    _metric("COLLATERAL_COVERAGE", "Collateral Coverage", "COLLATERAL_DISCOUNTED_VALUE / BANK_LOAN_TOTAL",
            precision=2, required=("COLLATERAL_DISCOUNTED_VALUE", "BANK_LOAN_TOTAL")),
    # Global cash flow
    _metric("GCF_GLOBAL_CASH_FLOW", "Global Cash Flow", "GCF_GLOBAL_CASH_FLOW",
            required=("GCF_GLOBAL_CASH_FLOW",)),
    _metric("GCF_DSCR", "Global DSCR", "GCF_GLOBAL_CASH_FLOW / ANNUAL_DEBT_SERVICE", precision=2,
            required=("GCF_GLOBAL_CASH_FLOW", "ANNUAL_DEBT_SERVICE")),
]

METRIC_REGISTRY: Dict[str, MetricDefinition] = {definition.id: definition for definition in _DEFINITIONS}

# Fail at import time on a malformed expression.
for _definition in _DEFINITIONS:
    compile_expression(_definition.expr)
