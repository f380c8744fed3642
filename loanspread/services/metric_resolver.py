"""
Metric resolution with ordered fallbacks.

Each metric has a chain of sources tried in order: a value off a rendered spread,
then a directly extracted fact, then "pending". Whatever source wins is named in
the result so a caller can explain where a number came from.
"""
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import structlog
from sqlalchemy.orm import Session

from loanspread.exceptions import UnknownMetricError
from loanspread.models.fact import Fact
from loanspread.models.spread import SpreadStatus, StoredSpread
from loanspread.services.fact_store import FactStore
from loanspread.utils.clock import iso_date

logger = structlog.get_logger(__name__)

PENDING_SOURCE = "pending"

SOURCE_PRIORITY = {
    "MANUAL": 3,
    "SPREAD": 2,
    "DOC_EXTRACT": 1,
}


@dataclass
class ResolvedMetric:
    """A metric value plus where it came from."""

    value: Optional[float]
    source: str
    updated_at: Optional[datetime] = None
    as_of_date: Optional[str] = None

    @property
    def is_pending(self) -> bool:
        return self.value is None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "source": self.source,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "as_of_date": self.as_of_date,
        }


PENDING = ResolvedMetric(value=None, source=PENDING_SOURCE)


# Chain links

@dataclass(frozen=True)
class SpreadValue:
    """Latest populated column of a row on a stored spread."""
    spread_type: str
    row_key: str


@dataclass(frozen=True)
class FactRef:
    """Best fact for a (type, key)."""
    fact_type: str
    fact_key: str


@dataclass(frozen=True)
class Composite:
    """Binary computation over two other metrics."""
    left: str
    op: str  # "-" or "/"
    right: str


ChainLink = Union[SpreadValue, FactRef]


METRIC_CHAINS: Dict[str, Union[Sequence[ChainLink], Composite]] = {
    "TOTAL_ASSETS": [
        SpreadValue("BALANCE_SHEET", "TOTAL_ASSETS"),
        FactRef("BALANCE_SHEET", "TOTAL_ASSETS"),
    ],
    "TOTAL_LIABILITIES": [
        SpreadValue("BALANCE_SHEET", "TOTAL_LIABILITIES"),
        FactRef("BALANCE_SHEET", "TOTAL_LIABILITIES"),
    ],
    "NET_WORTH": [
        SpreadValue("BALANCE_SHEET", "NET_WORTH"),
        FactRef("PERSONAL_FINANCIAL_STATEMENT", "PFS_NET_WORTH"),
    ],
    "TOTAL_REVENUE": [
        SpreadValue("STANDARD", "REVENUE"),
        FactRef("INCOME_STATEMENT", "TOTAL_REVENUE"),
        FactRef("TAX_RETURN", "GROSS_RECEIPTS"),
    ],
    "NET_INCOME": [
        SpreadValue("STANDARD", "NET_INCOME"),
        FactRef("INCOME_STATEMENT", "NET_INCOME"),
        FactRef("TAX_RETURN", "NET_INCOME"),
    ],
    "NOI": [
        SpreadValue("STANDARD", "NOI"),
        FactRef("INCOME_STATEMENT", "NET_OPERATING_INCOME"),
    ],
    "EBITDA": [
        SpreadValue("STANDARD", "EBITDA"),
        FactRef("INCOME_STATEMENT", "EBITDA"),
    ],
    "CASH_FLOW_AVAILABLE": [
        SpreadValue("STANDARD", "CASH_FLOW_AVAILABLE"),
        FactRef("INCOME_STATEMENT", "NET_OPERATING_INCOME"),
        FactRef("INCOME_STATEMENT", "EBITDA"),
    ],
    "ANNUAL_DEBT_SERVICE": [
        SpreadValue("STANDARD", "ANNUAL_DEBT_SERVICE"),
        FactRef("INCOME_STATEMENT", "DEBT_SERVICE"),
        FactRef("PERSONAL_FINANCIAL_STATEMENT", "PFS_ANNUAL_DEBT_SERVICE"),
    ],
    "LOAN_AMOUNT": [FactRef("DEAL_TERMS", "LOAN_AMOUNT")],
    "COLLATERAL_VALUE": [FactRef("COLLATERAL", "APPRAISED_VALUE")],
    "OCCUPANCY_PCT": [FactRef("RENT_ROLL", "OCCUPANCY_PCT")],
    "EXCESS_CASH_FLOW": Composite("CASH_FLOW_AVAILABLE", "-", "ANNUAL_DEBT_SERVICE"),
    "DSCR": Composite("CASH_FLOW_AVAILABLE", "/", "ANNUAL_DEBT_SERVICE"),
    "LTV": Composite("LOAN_AMOUNT", "/", "COLLATERAL_VALUE"),
}

# Metrics reported in a financial snapshot, and the subset counted for completeness.
SNAPSHOT_METRICS = [
    "TOTAL_REVENUE", "NET_INCOME", "NOI", "EBITDA", "CASH_FLOW_AVAILABLE",
    "ANNUAL_DEBT_SERVICE", "EXCESS_CASH_FLOW", "DSCR",
    "TOTAL_ASSETS", "TOTAL_LIABILITIES", "NET_WORTH",
    "LOAN_AMOUNT", "COLLATERAL_VALUE", "LTV", "OCCUPANCY_PCT",
]
REQUIRED_SNAPSHOT_METRICS = [
    "CASH_FLOW_AVAILABLE", "ANNUAL_DEBT_SERVICE", "DSCR", "TOTAL_ASSETS", "TOTAL_LIABILITIES",
]


# Best-fact selection

def fact_as_of_date(fact: Fact) -> Optional[str]:
    """First ISO date among provenance as_of_date, period end, period start, created_at."""
    provenance = fact.provenance or {}
    for candidate in (
        provenance.get("as_of_date"),
        fact.fact_period_end,
        fact.fact_period_start,
        fact.created_at,
    ):
        found = iso_date(candidate)
        if found:
            return found
    return None


def _source_priority(fact: Fact) -> int:
    source_type = (fact.provenance or {}).get("source_type")
    return SOURCE_PRIORITY.get(str(source_type).upper(), 0) if source_type else 0


def _rank(fact: Fact) -> Tuple:
    return (
        _source_priority(fact),
        fact_as_of_date(fact) or "",
        fact.confidence if fact.confidence is not None else -1.0,
        fact.created_at or datetime.min,
        str(fact.id),
    )


@dataclass
class BestFact:
    """Winner among competing facts and the ones it beat."""

    fact: Optional[Fact]
    rejected: List[Fact] = field(default_factory=list)


def select_best_fact(facts: Sequence[Fact]) -> BestFact:
    """
    Pick one fact among candidates for the same metric.

    Ordered by source priority (MANUAL > SPREAD > DOC_EXTRACT > other), then newest
    as-of date, then highest confidence, then newest created_at, then id.
    """
    if not facts:
        return BestFact(fact=None)
    ranked = sorted(facts, key=_rank, reverse=True)
    return BestFact(fact=ranked[0], rejected=ranked[1:])


# Resolver

class MetricResolver:
    """
    Resolves named metrics for one case.

    Example:
        resolver = MetricResolver(db, tenant_id="bank-1", case_id="deal-9")
        dscr = resolver.resolve("DSCR")
        dscr.value, dscr.source
    """

    def __init__(
        self,
        db: Session,
        tenant_id: str,
        case_id: str,
        chains: Optional[Dict[str, Union[Sequence[ChainLink], Composite]]] = None,
    ):
        self.db = db
        self.tenant_id = tenant_id
        self.case_id = case_id
        self.store = FactStore(db)
        self.chains = chains if chains is not None else METRIC_CHAINS
        self._spreads: Dict[str, Optional[StoredSpread]] = {}

    def resolve(self, name: str, period_end: Optional[str] = None) -> ResolvedMetric:
        """
        Resolve a metric through its chain.

        Args:
            name: Metric name from the chain registry.
            period_end: Restrict fact lookups to this exact period end.

        Raises:
            UnknownMetricError: If the metric has no chain.
        """
        chain = self.chains.get(name)
        if chain is None:
            raise UnknownMetricError(name)
        if isinstance(chain, Composite):
            return self._resolve_composite(name, chain, period_end)

        for link in chain:
            if isinstance(link, SpreadValue):
                if period_end is not None:
                    continue
                resolved = self._from_spread(link)
            else:
                resolved = self._from_fact(link, period_end)
            if resolved is not None:
                logger.debug("metric_resolved", metric=name, source=resolved.source)
                return resolved
        return PENDING

    def resolve_many(self, names: Sequence[str]) -> Dict[str, ResolvedMetric]:
        return {name: self.resolve(name) for name in names}

    def _from_fact(self, link: FactRef, period_end: Optional[str]) -> Optional[ResolvedMetric]:
        if period_end is not None:
            fact = self.store.latest(self.tenant_id, self.case_id, link.fact_type, link.fact_key, period_end)
        else:
            usable = [
                f for f in self.store.candidates(self.tenant_id, self.case_id, link.fact_type, link.fact_key)
                if f.fact_value_num is not None
            ]
            fact = select_best_fact(usable).fact
        if fact is None or fact.fact_value_num is None:
            return None
        return ResolvedMetric(
            value=fact.fact_value_num,
            source=f"fact:{link.fact_type}.{link.fact_key}",
            updated_at=fact.updated_at,
            as_of_date=fact_as_of_date(fact),
        )

    def _stored_spread(self, spread_type: str) -> Optional[StoredSpread]:
        if spread_type not in self._spreads:
            self._spreads[spread_type] = (
                self.db.query(StoredSpread)
                .filter(
                    StoredSpread.tenant_id == self.tenant_id,
                    StoredSpread.case_id == self.case_id,
                    StoredSpread.spread_type == spread_type,
                    StoredSpread.status == SpreadStatus.READY,
                )
                .first()
            )
        return self._spreads[spread_type]

    def _from_spread(self, link: SpreadValue) -> Optional[ResolvedMetric]:
        spread = self._stored_spread(link.spread_type)
        if spread is None or not spread.payload:
            return None
        row = next((r for r in spread.payload.get("rows", []) if r.get("key") == link.row_key), None)
        if row is None:
            return None
        columns = sorted(spread.payload.get("columns", []), key=lambda c: c.get("end_date") or "", reverse=True)
        for column in columns:
            cell = (row.get("values") or {}).get(column["key"]) or {}
            if cell.get("value") is not None:
                return ResolvedMetric(
                    value=cell["value"],
                    source=f"spread:{link.spread_type}.{link.row_key}",
                    updated_at=spread.generated_at,
                    as_of_date=column.get("end_date"),
                )
        return None

    def _resolve_composite(self, name: str, composite: Composite, period_end: Optional[str]) -> ResolvedMetric:
        left = self.resolve(composite.left, period_end)
        right = self.resolve(composite.right, period_end)
        source = f"computed:{name}={composite.left}{composite.op}{composite.right}"
        stamps = [t for t in (left.updated_at, right.updated_at) if t is not None]
        updated_at = max(stamps) if stamps else None

        if left.value is None or right.value is None:
            return ResolvedMetric(value=None, source=source, updated_at=updated_at)

        value = _apply(composite.op, left.value, right.value)
        as_of = left.as_of_date if left.as_of_date == right.as_of_date else None
        return ResolvedMetric(value=value, source=source, updated_at=updated_at, as_of_date=as_of)

    def financial_snapshot(
        self,
        metrics: Sequence[str] = tuple(SNAPSHOT_METRICS),
        required: Sequence[str] = tuple(REQUIRED_SNAPSHOT_METRICS),
    ) -> Dict[str, Any]:
        """
        Financial block for decision snapshots.

        completeness_pct covers the required metrics; as_of_date is set only when
        every present metric shares one date.
        """
        resolved = self.resolve_many(list(dict.fromkeys([*metrics, *required])))
        present = [m for m in resolved.values() if m.value is not None]
        complete = sum(1 for name in required if resolved.get(name) and resolved[name].value is not None)
        completeness = round(complete / len(required) * 1000) / 10 if required else 100.0

        dates = {m.as_of_date for m in present}
        as_of = dates.pop() if len(dates) == 1 else None

        return {
            "as_of_date": as_of,
            "completeness_pct": completeness,
            "missing_required": [name for name in required if resolved[name].value is None],
            "metrics": {name: metric.to_dict() for name, metric in resolved.items()},
        }


def _apply(op: str, left: float, right: float) -> Optional[float]:
    operations: Dict[str, Callable[[float, float], Optional[float]]] = {
        "+": lambda a, b: a + b,
        "-": lambda a, b: a - b,
        "*": lambda a, b: a * b,
        "/": lambda a, b: None if b == 0 else a / b,
    }
    result = operations[op](left, right)
    if result is None or not math.isfinite(result):
        return None
    return result
