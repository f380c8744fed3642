"""
Spread renderer.

Turns a case's facts into a RenderedSpread payload for one template. Columns
come from the facts' dates; every column is evaluated independently by the
formula engine. Rendering is total: missing inputs produce empty cells, and
validation problems are reported in meta without blocking the render. Rent roll
templates list unit rows instead of evaluating facts.
"""
import math
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import structlog

from loanspread.models.fact import HEARTBEAT_FACT_TYPE, Fact
from loanspread.services.metric_resolver import select_best_fact
from loanspread.services.spreads.formulas import FactSnapshot, FormulaEngine
from loanspread.services.spreads.metrics import METRIC_REGISTRY_VERSION
from loanspread.services.spreads.registry import (
    COLUMNS_BY_AS_OF,
    SIGN_PAREN,
    SOURCE_RENT_ROLL,
    STATEMENT_LABELS,
    SpreadTemplate,
    get_template,
)
from loanspread.services.spreads.validation import check_accounting_equation, missing_metric_warnings
from loanspread.utils.clock import iso_date, iso_timestamp

logger = structlog.get_logger(__name__)

# Placeholder period ends meaning "period unknown".
SENTINEL_DATES = frozenset(["1900-01-01", "0001-01-01"])

EMPTY_DISPLAY = "\u2014"

MONTHS = ["Jan", "Feb", "Mar", "Apr", "May", "Jun", "Jul", "Aug", "Sep", "Oct", "Nov", "Dec"]


@dataclass
class SpreadColumn:
    key: str
    label: str
    end_date: Optional[str] = None
    start_date: Optional[str] = None
    kind: str = "other"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "key": self.key,
            "label": self.label,
            "kind": self.kind,
            "start_date": self.start_date,
            "end_date": self.end_date,
        }


# Display formatting

def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _magnitude(value: float, precision: int) -> str:
    if precision > 0:
        return f"{value:,.{precision}f}"
    return f"{_round_half_up(value):,}"


def format_display(
    value: Optional[float],
    precision: int = 0,
    is_percent: bool = False,
    sign: Optional[str] = None,
) -> str:
    """
    Display string for a cell.

    Percentages are ratios shown times 100 with precision - 2 decimals. Other
    values with precision show fixed, comma-grouped decimals; the rest are
    rounded half up and comma-grouped. PAREN_NEGATIVE shows negatives as (1,234).
    """
    if value is None:
        return EMPTY_DISPLAY
    if sign == SIGN_PAREN and value < 0 and not is_percent:
        return f"({_magnitude(abs(value), precision)})"
    if is_percent:
        return f"{value * 100:.{max(0, precision - 2)}f}%"
    return _magnitude(value, precision)


def period_label(period_end: str) -> str:
    """'2024-12-31' -> 'Dec 2024'."""
    if len(period_end) >= 7 and period_end[4] == "-" and period_end[:4].isdigit() and period_end[5:7].isdigit():
        month = int(period_end[5:7])
        if 1 <= month <= 12:
            return f"{MONTHS[month - 1]} {period_end[:4]}"
    return period_end


# Columns

def _as_of_of(fact: Fact) -> Optional[str]:
    as_of = iso_date((fact.provenance or {}).get("as_of_date")) or iso_date(fact.fact_period_end)
    return None if as_of in SENTINEL_DATES else as_of


def _period_end_of(fact: Fact) -> Optional[str]:
    end = fact.fact_period_end
    return None if not end or end in SENTINEL_DATES else end


def columns_by_as_of(facts: Sequence[Fact]) -> List[Tuple[SpreadColumn, List[Fact]]]:
    """One column per as-of date, newest first; a single VALUE column when no fact is dated."""
    by_date: Dict[str, List[Fact]] = defaultdict(list)
    for fact in facts:
        as_of = _as_of_of(fact)
        if as_of:
            by_date[as_of].append(fact)
    if not by_date:
        return [(SpreadColumn(key="VALUE", label="Value"), list(facts))]
    return [
        (SpreadColumn(key=as_of, label=as_of, end_date=as_of), by_date[as_of])
        for as_of in sorted(by_date, reverse=True)
    ]


def columns_by_period(facts: Sequence[Fact]) -> List[Tuple[SpreadColumn, List[Fact]]]:
    """
    One column per distinct period end, ascending.

    Zero or one period collapses to a single CURRENT column holding every fact.
    """
    ends = sorted({end for end in (_period_end_of(fact) for fact in facts) if end})
    if len(ends) <= 1:
        return [(SpreadColumn(key="CURRENT", label="Current", end_date=ends[0] if ends else None), list(facts))]
    by_end: Dict[str, List[Fact]] = defaultdict(list)
    for fact in facts:
        end = _period_end_of(fact)
        if end:
            by_end[end].append(fact)
    return [(SpreadColumn(key=end, label=period_label(end), end_date=end), by_end[end]) for end in ends]


def fact_provenance(fact: Fact) -> Dict[str, Any]:
    provenance = fact.provenance or {}
    return {
        "source": fact.fact_type,
        "input": fact.fact_key,
        "fact_id": str(fact.id) if fact.id is not None else None,
        "source_document_id": fact.source_document_id,
        "confidence": fact.confidence,
        "extractor": provenance.get("extractor"),
        "source_type": provenance.get("source_type"),
    }


def snapshot_for(
    facts: Iterable[Fact],
    template: Optional[SpreadTemplate] = None,
) -> Tuple[FactSnapshot, Dict[str, Dict[str, Any]]]:
    """
    Best fact per row key, as an immutable snapshot plus per-key provenance.

    With a template, facts are keyed by the row they feed, and only the
    template's highest-ranked fact type competes for each row.
    """
    by_key: Dict[str, List[Fact]] = defaultdict(list)
    for fact in facts:
        key = template.row_key_for(fact.fact_type, fact.fact_key) if template else fact.fact_key
        if key is not None:
            by_key[key].append(fact)
    values: Dict[str, float] = {}
    provenance: Dict[str, Dict[str, Any]] = {}
    for key, group in by_key.items():
        if template is not None:
            top = min(template.type_rank(fact.fact_type) for fact in group)
            group = [fact for fact in group if template.type_rank(fact.fact_type) == top]
        best = select_best_fact(group).fact
        values[key] = best.fact_value_num
        provenance[key] = fact_provenance(best)
    return FactSnapshot(values), provenance


def usable_facts(template: SpreadTemplate, facts: Iterable[Fact]) -> List[Fact]:
    return [
        fact for fact in facts
        if fact.fact_type != HEARTBEAT_FACT_TYPE
        and fact.fact_value_num is not None
        and (template.fact_types is None or fact.fact_type in template.fact_types)
    ]


# Rendering

def render_spread(
    spread_type: Union[str, SpreadTemplate],
    facts: Iterable[Fact],
    generated_at: Optional[datetime] = None,
    rent_roll_rows: Optional[Iterable[Any]] = None,
) -> Dict[str, Any]:
    """
    Render one spread from facts, or from rent roll rows for a rent roll template.

    Raises:
        UnknownSpreadTypeError: If the spread type has no template.
    """
    template = spread_type if isinstance(spread_type, SpreadTemplate) else get_template(spread_type)
    if template.source == SOURCE_RENT_ROLL:
        return render_rent_roll(template, rent_roll_rows or [], generated_at=generated_at)
    facts = usable_facts(template, facts)
    engine = FormulaEngine(template.formulas)

    if template.column_mode == COLUMNS_BY_AS_OF:
        buckets = columns_by_as_of(facts)
    else:
        buckets = columns_by_period(facts)
    columns = [column for column, _ in buckets]

    evaluations = {}
    for column, column_facts in buckets:
        snapshot, provenance = snapshot_for(column_facts, template)
        evaluations[column.key] = engine.evaluate_column(template.evaluation_order, snapshot, provenance)

    rows: List[Dict[str, Any]] = []
    last_statement = None
    for row in template.rows:
        if template.section_headers and row.statement != last_statement:
            rows.append({
                "key": f"_header_{row.statement}",
                "label": STATEMENT_LABELS.get(row.statement, row.statement),
                "section": row.statement,
                "values": {},
                "notes": "section_header",
            })
            last_statement = row.statement

        values = {}
        for column in columns:
            cell = evaluations[column.key].cells[row.key]
            values[column.key] = {
                "value": cell.value,
                "display": format_display(cell.value, row.precision, row.is_percent, row.sign),
                "provenance": cell.provenance,
            }
        rows.append({
            "key": row.key,
            "label": row.label,
            "section": row.section,
            "statement": row.statement,
            "formula": row.formula_id,
            "is_total": row.is_total,
            "values": values,
        })

    dated = [column for column in columns if column.end_date]
    latest = max(dated, key=lambda c: c.end_date) if dated else columns[0]
    totals = {
        row.key: evaluations[latest.key].cells[row.key].value
        for row in template.rows
        if row.is_total
    }

    logger.info(
        "spread_rendered",
        spread_type=template.spread_type,
        columns=len(columns),
        facts=len(facts),
    )
    return {
        "schema_version": template.schema_version,
        "title": template.title,
        "spread_type": template.spread_type,
        "status": "ready",
        "generated_at": iso_timestamp(generated_at),
        "as_of": latest.end_date,
        "columns": [column.to_dict() for column in columns],
        "rows": rows,
        "totals": totals,
        "meta": {
            "template": template.template_id,
            "version": template.version,
            "metric_registry_version": METRIC_REGISTRY_VERSION,
            "row_count": len(template.rows),
            "period_count": len(columns),
            "row_registry": template.row_keys,
            "column_registry": [column.key for column in columns],
            "as_of_dates": [column.end_date for column in dated],
        },
    }


# Rent roll

RENT_ROLL_COLUMNS = [
    ("UNIT", "Unit"),
    ("TENANT", "Tenant"),
    ("STATUS", "Status"),
    ("SQFT", "Sqft"),
    ("RENT_MO", "Rent / Mo"),
    ("RENT_YR", "Rent / Yr"),
    ("MARKET_RENT_MO", "Market Rent / Mo"),
    ("LEASE_START", "Lease Start"),
    ("LEASE_END", "Lease End"),
    ("WALT_YEARS", "WALT (yrs)"),
    ("NOTES", "Notes"),
]

RENT_ROLL_MONEY = frozenset(["RENT_MO", "RENT_YR", "MARKET_RENT_MO"])


def _currency(value: float) -> str:
    sign = "-" if value < 0 else ""
    return f"{sign}${_round_half_up(abs(value)):,}"


def _rent_roll_display(column: str, value: Any) -> str:
    if value is None:
        return EMPTY_DISPLAY
    if column in RENT_ROLL_MONEY:
        return _currency(value)
    if column == "SQFT":
        return f"{_round_half_up(value):,}"
    if column == "WALT_YEARS":
        return f"{value:,.2f}"
    return str(value)


def _sum(values: Iterable[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None and math.isfinite(v)]
    return sum(present) if present else None


def _walt_years(lease_end: Optional[str], as_of: str, occupied: bool) -> Optional[float]:
    if not occupied or not lease_end:
        return None
    try:
        days = (date.fromisoformat(lease_end) - date.fromisoformat(as_of)).days
    except ValueError:
        return None
    return max(0.0, days / 365.25)


def latest_rent_roll_as_of(rows: Iterable[Any]) -> Optional[str]:
    dates = [iso_date(row.as_of_date) for row in rows if iso_date(row.as_of_date)]
    return max(dates) if dates else None


def _unit_sort_key(row: Dict[str, Any]):
    tenant = (row["tenant_name"] or "").strip()
    return (row["unit_id"], tenant == "", tenant.lower(), row["id"])


def _normalize_unit(row: Any) -> Dict[str, Any]:
    monthly, annual = row.monthly_rent, row.annual_rent
    return {
        "id": str(row.id) if row.id is not None else f"{row.source_document_id}:{row.row_index}",
        "unit_id": str(row.unit_id or ""),
        "tenant_name": row.tenant_name or None,
        "occupied": row.occupancy_status == "OCCUPIED",
        "sqft": row.sqft,
        "monthly_rent": monthly if monthly is not None else (annual / 12.0 if annual is not None else None),
        "annual_rent": annual if annual is not None else (monthly * 12.0 if monthly is not None else None),
        "market_rent_monthly": row.market_rent_monthly,
        "lease_start": iso_date(row.lease_start),
        "lease_end": iso_date(row.lease_end),
        "notes": row.notes,
        "source_document_id": row.source_document_id,
    }


def _rent_roll_row(key: str, label: str, values: Dict[str, Any], provenance: Dict[str, Any],
                   is_total: bool = False) -> Dict[str, Any]:
    return {
        "key": key,
        "label": label,
        "section": "TOTALS" if is_total else "UNITS",
        "statement": None,
        "formula": None,
        "is_total": is_total,
        "values": {
            column: {
                "value": values.get(column),
                "display": _rent_roll_display(column, values.get(column)),
                "provenance": provenance.get(column),
            }
            for column, _ in RENT_ROLL_COLUMNS
        },
    }


def _totals_row(key: str, label: str, status: str, units: List[Dict[str, Any]]) -> Dict[str, Any]:
    rent_mo = _sum(unit["monthly_rent"] for unit in units)
    values = {
        "UNIT": label,
        "STATUS": status,
        "SQFT": _sum(unit["sqft"] for unit in units),
        "RENT_MO": rent_mo,
        "RENT_YR": rent_mo * 12 if rent_mo is not None else None,
    }
    computed = {"source": "Computed"}
    return _rent_roll_row(key, label, values, {column: computed for column in values}, is_total=True)


def render_rent_roll(
    template: SpreadTemplate,
    rent_roll_rows: Iterable[Any],
    generated_at: Optional[datetime] = None,
) -> Dict[str, Any]:
    """
    Render the unit listing for the newest rent roll as-of date.

    Units sort by unit id, then tenant name with vacant names last. Occupancy
    is measured by square footage.
    """
    rent_roll_rows = list(rent_roll_rows)
    as_of = latest_rent_roll_as_of(rent_roll_rows)
    columns = [SpreadColumn(key=key, label=label) for key, label in RENT_ROLL_COLUMNS]
    meta: Dict[str, Any] = {
        "template": template.template_id,
        "version": template.version,
        "as_of_selected": as_of,
        "column_registry": [column.key for column in columns],
    }

    if as_of is None:
        rows = [_rent_roll_row("no_data", "No normalized rent roll rows", {}, {})]
        totals: Dict[str, Optional[float]] = {
            "TOTAL_OCCUPIED_RENT_MO": None,
            "TOTAL_OCCUPIED_SQFT": None,
            "TOTAL_SQFT": None,
            "OCCUPANCY_PCT": None,
            "VACANCY_PCT": None,
        }
    else:
        units = sorted(
            (_normalize_unit(row) for row in rent_roll_rows if iso_date(row.as_of_date) == as_of),
            key=_unit_sort_key,
        )
        rows = []
        for unit in units:
            walt = _walt_years(unit["lease_end"], as_of, unit["occupied"])
            values = {
                "UNIT": unit["unit_id"],
                "TENANT": unit["tenant_name"],
                "STATUS": "OCCUPIED" if unit["occupied"] else "VACANT",
                "SQFT": unit["sqft"],
                "RENT_MO": unit["monthly_rent"],
                "RENT_YR": unit["annual_rent"],
                "MARKET_RENT_MO": unit["market_rent_monthly"],
                "LEASE_START": unit["lease_start"],
                "LEASE_END": unit["lease_end"],
                "WALT_YEARS": walt,
                "NOTES": unit["notes"],
            }
            source = {"source": "RentRollRow", "row_id": unit["id"], "source_document_id": unit["source_document_id"]}
            provenance = {column: source for column, _ in RENT_ROLL_COLUMNS}
            provenance["WALT_YEARS"] = {"source": "Computed", "as_of_date": as_of}
            rows.append(_rent_roll_row(
                f"ROW:{unit['unit_id']}:{unit['tenant_name'] or ''}:{unit['id']}", unit["unit_id"], values, provenance
            ))

        occupied = [unit for unit in units if unit["occupied"]]
        vacant = [unit for unit in units if not unit["occupied"]]
        rows.append(_totals_row("TOTAL_OCCUPIED", "TOTAL OCCUPIED", "OCCUPIED", occupied))
        rows.append(_totals_row("TOTAL_VACANT", "TOTAL VACANT", "VACANT", vacant))
        rows.append(_totals_row("TOTALS", "TOTALS", "ALL", units))

        occupied_sqft = _sum(unit["sqft"] for unit in occupied)
        total_sqft = _sum(unit["sqft"] for unit in units)
        occupancy = occupied_sqft / total_sqft if occupied_sqft is not None and total_sqft else None
        totals = {
            "TOTAL_OCCUPIED_RENT_MO": _sum(unit["monthly_rent"] for unit in occupied),
            "TOTAL_OCCUPIED_SQFT": occupied_sqft,
            "TOTAL_SQFT": total_sqft,
            "OCCUPANCY_PCT": occupancy,
            "VACANCY_PCT": 1 - occupancy if occupancy is not None else None,
        }
        meta["row_sort"] = "unit_id asc, tenant_name asc (nulls last), id"
        meta["totals_rows"] = ["TOTAL_OCCUPIED", "TOTAL_VACANT", "TOTALS"]

    meta["row_count"] = len(rows)
    logger.info("spread_rendered", spread_type=template.spread_type, columns=len(columns), rows=len(rows))
    return {
        "schema_version": template.schema_version,
        "title": template.title,
        "spread_type": template.spread_type,
        "status": "ready",
        "generated_at": iso_timestamp(generated_at),
        "as_of": as_of,
        "columns": [column.to_dict() for column in columns],
        "rows": rows,
        "totals": totals,
        "meta": meta,
    }


def attach_validation(spread: Dict[str, Any], financial_snapshot: Mapping[str, Any]) -> Dict[str, Any]:
    """
    Return a copy of a rendered spread with validation warnings in its meta.

    The snapshot should describe the case after this spread was stored, so a
    metric the spread itself supplies is not reported as missing.
    """
    validated = dict(spread)
    validated["meta"] = dict(spread.get("meta") or {})
    warnings = missing_metric_warnings(financial_snapshot) + check_accounting_equation(spread)
    validated["meta"]["validated"] = True
    validated["meta"].pop("validation_warnings", None)
    if warnings:
        validated["meta"]["validation_warnings"] = warnings
        logger.warning(
            "spread_validation_warnings",
            spread_type=spread["spread_type"],
            count=len(warnings),
            codes=sorted({w["code"] for w in warnings}),
        )
    return validated


def render_with_validation(
    spread_type: Union[str, SpreadTemplate],
    facts: Iterable[Fact],
    financial_snapshot: Optional[Mapping[str, Any]] = None,
    generated_at: Optional[datetime] = None,
    rent_roll_rows: Optional[Iterable[Any]] = None,
) -> Dict[str, Any]:
    """
    Render, then attach validation warnings when a financial snapshot is supplied.

    The spread is always rendered in full; warnings never block it.
    """
    spread = render_spread(spread_type, facts, generated_at=generated_at, rent_roll_rows=rent_roll_rows)
    if financial_snapshot is None:
        return spread
    return attach_validation(spread, financial_snapshot)
