"""
Rent roll extractor.

Produces per-unit rows rather than line items, plus a handful of summary
facts computed from those rows (unit count, occupancy, in-place and market rent).
"""
import re
from typing import Any, Dict, List, Optional

from loanspread.services.extraction.extractors.base import (
    MODE_DETERMINISTIC,
    MODE_LEGACY,
    PATH_LEGACY,
    PATH_TABLE,
    PATH_TEXT,
    DocumentExtractor,
    ExtractionContext,
    ExtractedLineItem,
    ExtractorOutput,
)
from loanspread.services.extraction.periods import PeriodRange
from loanspread.services.extraction.structured_fields import StructuredTable, extract_tables
from loanspread.services.extraction.text_patterns import (
    find_date_on_document,
    map_header_columns,
    parse_money,
    parse_table,
)
from loanspread.utils.clock import iso_date, utcnow

HEADER_PATTERN = re.compile(
    r"\b(unit|suite|apt|space)\b.*\b(tenant|name|lessee|occupant|rent|rate|status)\b",
    re.IGNORECASE,
)

HEADER_MAP = {
    "unit": "unit_id",
    "unit #": "unit_id",
    "unit id": "unit_id",
    "unit no": "unit_id",
    "suite": "unit_id",
    "apt": "unit_id",
    "space": "unit_id",
    "tenant": "tenant_name",
    "tenant name": "tenant_name",
    "lessee": "tenant_name",
    "name": "tenant_name",
    "occupant": "tenant_name",
    "type": "unit_type",
    "unit type": "unit_type",
    "config": "unit_type",
    "sqft": "sqft",
    "sq ft": "sqft",
    "square feet": "sqft",
    "sf": "sqft",
    "monthly rent": "monthly_rent",
    "rent/mo": "monthly_rent",
    "mo rent": "monthly_rent",
    "rent": "monthly_rent",
    "annual rent": "annual_rent",
    "rent/yr": "annual_rent",
    "yr rent": "annual_rent",
    "annual": "annual_rent",
    "market rent": "market_rent_monthly",
    "market": "market_rent_monthly",
    "lease start": "lease_start",
    "start date": "lease_start",
    "move in": "lease_start",
    "lease end": "lease_end",
    "end date": "lease_end",
    "move out": "lease_end",
    "expiration": "lease_end",
    "status": "occupancy_status",
    "notes": "notes",
    "concessions": "concessions_monthly",
}

MIN_TABLE_SCORE = 2

RENT_ROLL_KEYS = frozenset([
    "UNIT_COUNT", "OCCUPIED_UNITS", "OCCUPANCY_PCT", "VACANCY_PCT",
    "IN_PLACE_RENT_MO", "MARKET_RENT_MO",
])

SUMMARY_CONFIDENCE = {PATH_TABLE: 0.7, PATH_TEXT: 0.6, PATH_LEGACY: 0.6}

ROW_FIELDS = (
    "unit_id", "unit_type", "sqft", "tenant_name", "lease_start", "lease_end",
    "monthly_rent", "annual_rent", "market_rent_monthly", "occupancy_status",
    "concessions_monthly", "notes",
)


def score_headers(headers: List[str]) -> int:
    """How much a header row looks like a rent roll."""
    joined = " ".join(headers).lower()
    score = 0
    if re.search(r"unit|suite|apt|space", joined):
        score += 2
    if re.search(r"tenant|name|occupant", joined):
        score += 1
    if re.search(r"rent|rate|amount", joined):
        score += 1
    if re.search(r"status|occup", joined):
        score += 1
    return score


def normalize_row_date(raw: Optional[str]) -> Optional[str]:
    """ISO, m/d/yyyy or m/d/yy into YYYY-MM-DD. Two-digit years above 50 are 19xx."""
    if not raw:
        return None
    raw = raw.strip()
    if re.match(r"^\d{4}-\d{2}-\d{2}$", raw):
        return raw

    match = re.match(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{4})$", raw)
    if match:
        return f"{match.group(3)}-{int(match.group(1)):02d}-{int(match.group(2)):02d}"

    match = re.match(r"^(\d{1,2})[/\-](\d{1,2})[/\-](\d{2})$", raw)
    if match:
        short_year = int(match.group(3))
        year = short_year + (1900 if short_year > 50 else 2000)
        return f"{year}-{int(match.group(1)):02d}-{int(match.group(2)):02d}"
    return None


def _plain_number(raw: Optional[str]) -> Optional[float]:
    if not raw:
        return None
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


def occupancy_for(status: Optional[str], tenant_name: Optional[str]) -> str:
    status = (status or "").strip().upper()
    if status in ("VACANT", "V") or (not tenant_name and status != "OCCUPIED"):
        return "VACANT"
    return "OCCUPIED"


def parse_row(cells: List[str], columns: Dict[str, int]) -> Optional[Dict[str, Any]]:
    """One unit row from table cells; None when the row has no unit id."""

    def get(field_name: str) -> Optional[str]:
        index = columns.get(field_name)
        if index is None or index >= len(cells):
            return None
        return cells[index].strip() or None

    unit_id = get("unit_id")
    if not unit_id:
        return None

    tenant_name = get("tenant_name")
    return {
        "unit_id": unit_id,
        "tenant_name": tenant_name,
        "occupancy_status": occupancy_for(get("occupancy_status"), tenant_name),
        "unit_type": get("unit_type"),
        "sqft": _plain_number(get("sqft")),
        "monthly_rent": parse_money(get("monthly_rent")),
        "annual_rent": parse_money(get("annual_rent")),
        "market_rent_monthly": parse_money(get("market_rent_monthly")),
        "lease_start": normalize_row_date(get("lease_start")),
        "lease_end": normalize_row_date(get("lease_end")),
        "concessions_monthly": parse_money(get("concessions_monthly")),
        "notes": get("notes"),
    }


def monthly_rent_of(row: Dict[str, Any]) -> Optional[float]:
    if row.get("monthly_rent") is not None:
        return row["monthly_rent"]
    if row.get("annual_rent") is not None:
        return row["annual_rent"] / 12.0
    return None


def summarize_rows(rows: List[Dict[str, Any]]) -> Dict[str, float]:
    """Summary metrics for a set of unit rows. Percentages are 0-100."""
    unit_count = len(rows)
    occupied = [row for row in rows if row["occupancy_status"] == "OCCUPIED"]
    summary = {
        "UNIT_COUNT": float(unit_count),
        "OCCUPIED_UNITS": float(len(occupied)),
    }
    if unit_count:
        occupancy = round(len(occupied) * 100.0 / unit_count, 2)
        summary["OCCUPANCY_PCT"] = occupancy
        summary["VACANCY_PCT"] = round(100.0 - occupancy, 2)

    in_place = [monthly_rent_of(row) for row in occupied]
    in_place = [value for value in in_place if value is not None]
    if in_place:
        summary["IN_PLACE_RENT_MO"] = round(sum(in_place), 2)

    market = [row["market_rent_monthly"] for row in rows if row.get("market_rent_monthly") is not None]
    if market:
        summary["MARKET_RENT_MO"] = round(sum(market), 2)
    return summary


class RentRollExtractor(DocumentExtractor):
    fact_type = "RENT_ROLL"
    name = "rentRollExtractor"
    valid_keys = RENT_ROLL_KEYS
    replaces_document_facts = True
    legacy_prompt = (
        "You are a commercial real estate analyst. Extract every unit line from the rent roll.\n"
        'Return JSON: {"line_items": [], "rows": [{"unit_id": "101", "tenant_name": "Acme LLC", '
        '"unit_type": "Retail", "sqft": 1200, "monthly_rent": 2500.0, "annual_rent": null, '
        '"market_rent_monthly": 2600.0, "lease_start": "2022-01-01", "lease_end": "2026-12-31", '
        '"occupancy_status": "OCCUPIED", "concessions_monthly": null, "notes": null}]}.'
    )

    def extract(self, ctx: ExtractionContext) -> ExtractorOutput:
        if ctx.is_empty:
            return ExtractorOutput(items=[], path=PATH_TEXT)

        if ctx.structured_fields:
            rows = self.rows_from_tables(extract_tables(ctx.structured_fields))
            if rows:
                return self.build_output(ctx, rows, PATH_TABLE)

        rows = self.rows_from_text(ctx.ocr_text)
        if not rows:
            return ExtractorOutput(items=[], path=PATH_TEXT)
        return self.build_output(ctx, rows, PATH_TEXT)

    def rows_from_tables(self, tables: List[StructuredTable]) -> List[Dict[str, Any]]:
        """Rows of the best-scoring table, which must score at least MIN_TABLE_SCORE."""
        best, best_score = None, 0
        for table in tables:
            headers = table.header_rows[0] if table.header_rows else []
            score = score_headers(headers)
            if score > best_score:
                best, best_score = table, score
        if best is None or best_score < MIN_TABLE_SCORE:
            return []

        columns = map_header_columns(best.header_rows[0], HEADER_MAP)
        return [row for row in (parse_row(cells, columns) for cells in best.body_rows) if row]

    def rows_from_text(self, text: str) -> List[Dict[str, Any]]:
        table = parse_table(text, HEADER_PATTERN)
        if table is None or len(table.header) < 2:
            return []
        columns = map_header_columns(table.header, HEADER_MAP)
        if "unit_id" not in columns:
            return []
        return [row for row in (parse_row(cells, columns) for cells in table.rows) if row]

    def build_output(
        self,
        ctx: ExtractionContext,
        rows: List[Dict[str, Any]],
        path: str,
        mode: str = MODE_DETERMINISTIC,
    ) -> ExtractorOutput:
        as_of = find_date_on_document(ctx.ocr_text) or iso_date(utcnow())
        period = PeriodRange(start=as_of, end=as_of)
        confidence = SUMMARY_CONFIDENCE[path]

        items: List[ExtractedLineItem] = []
        for fact_key, value in summarize_rows(rows).items():
            snippet = f"{fact_key} computed from {len(rows)} rent roll rows"
            items.append(self.make_item(ctx, fact_key, value, confidence, period, snippet, path, mode=mode))

        stamped = [dict(row, as_of_date=as_of) for row in rows]
        return ExtractorOutput(items=items, path=path, rent_roll_rows=stamped)

    def from_legacy(self, payload: Any, ctx: ExtractionContext) -> ExtractorOutput:
        rows = []
        for raw in payload.rows:
            unit_id = raw.get("unit_id")
            if not unit_id:
                continue
            tenant_name = raw.get("tenant_name") or None
            row = {name: raw.get(name) for name in ROW_FIELDS}
            row["unit_id"] = str(unit_id)
            row["occupancy_status"] = occupancy_for(raw.get("occupancy_status"), tenant_name)
            row["lease_start"] = normalize_row_date(raw.get("lease_start"))
            row["lease_end"] = normalize_row_date(raw.get("lease_end"))
            for money_field in ("sqft", "monthly_rent", "annual_rent", "market_rent_monthly", "concessions_monthly"):
                row[money_field] = parse_money(row[money_field])
            rows.append(row)
        if not rows:
            return ExtractorOutput(items=[], path=PATH_LEGACY)
        return self.build_output(ctx, rows, PATH_LEGACY, mode=MODE_LEGACY)
