"""
Pattern helpers for pulling amounts, dates and tables out of OCR text.

Handles amounts in the shapes loan documents use:
- Currency: $1,234.56
- Negative: (1,234), 1,234-
- IRS form and line references, which look like numbers but are not amounts
"""
import math
import re
from dataclasses import dataclass
from datetime import date
from typing import Dict, List, Optional, Pattern, Tuple, Union

import structlog

logger = structlog.get_logger(__name__)

# Form, schedule and publication numbers that show up next to labels on tax returns.
IRS_REFERENCE_NUMBERS = {
    1040, 1065, 1120, 1125, 1099, 1098, 4562, 4797, 8825, 8949, 8829, 8995,
    2106, 2441, 3800, 3903, 4684, 5884, 6198, 6251, 6252, 6765, 7203, 8283,
    8332, 8396, 8582, 8606, 8801, 8839, 8863, 8880, 8889, 8910, 8936, 8959,
    8960, 8962, 990,
}

IRS_CONTEXT_PATTERN = re.compile(r"\b(form|schedule|line|omb|irs|attach|see|ref|page)\b", re.IGNORECASE)
IRS_CONTEXT_WINDOW = 40

AMOUNT_TOKEN = r"(\$?\(?-?[0-9][0-9,]*(?:\.[0-9]{1,2})?\)?)"

SEPARATOR_LINE = re.compile(r"^[-=]{3,}$")
CELL_SPLIT = re.compile(r"\t|\s{2,}")
TOTAL_ROW = re.compile(r"^(total|subtotal|grand\s+total)", re.IGNORECASE)

MONTHS = {
    "jan": 1, "january": 1,
    "feb": 2, "february": 2,
    "mar": 3, "march": 3,
    "apr": 4, "april": 4,
    "may": 5,
    "jun": 6, "june": 6,
    "jul": 7, "july": 7,
    "aug": 8, "august": 8,
    "sep": 9, "sept": 9, "september": 9,
    "oct": 10, "october": 10,
    "nov": 11, "november": 11,
    "dec": 12, "december": 12,
}

MONTH_NAME = (
    r"(January|February|March|April|May|June|July|August|September|October|November|December|"
    r"Jan|Feb|Mar|Apr|Jun|Jul|Aug|Sept|Sep|Oct|Nov|Dec)"
)

MIN_TAX_YEAR = 1990
MAX_TAX_YEAR = 2100


def parse_money(raw: Union[str, int, float, None]) -> Optional[float]:
    """
    Parse an amount token into a float.

    Strips $, commas and whitespace; "(123)" and "123-" are negative.

    Returns:
        The value, or None if the token is not a finite number.
    """
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return float(raw) if math.isfinite(raw) else None

    text = re.sub(r"[\s$,]", "", str(raw))
    if not text:
        return None

    negative = False
    if text.startswith("(") and text.endswith(")"):
        negative = True
        text = text[1:-1]
    if text.endswith("-"):
        negative = True
        text = text[:-1]
    if text.startswith("-"):
        negative = not negative
        text = text[1:]

    try:
        value = float(text)
    except ValueError:
        return None
    if not math.isfinite(value):
        return None
    return -value if negative else value


def looks_like_money_token(token: str) -> bool:
    """True when a raw token carries amount formatting ($, comma, parens, cents) or 5+ digits."""
    if "$" in token or "," in token:
        return True
    if re.search(r"\([\d,.]+\)", token) or re.search(r"\.\d{1,2}$", token):
        return True
    return len(re.sub(r"\D", "", token)) >= 5


def is_irs_reference(token: str, text: str, start: int, end: int) -> bool:
    """
    Decide whether a matched number is an IRS form/line reference rather than an amount.

    All three must hold: the number is a known form number, the surrounding text
    mentions form/schedule/line/etc., and the token has no amount formatting.
    """
    digits = re.sub(r"\D", "", token)
    if not digits or int(digits) not in IRS_REFERENCE_NUMBERS:
        return False
    if looks_like_money_token(token):
        return False
    window = text[max(0, start - IRS_CONTEXT_WINDOW):min(len(text), end + IRS_CONTEXT_WINDOW)]
    return IRS_CONTEXT_PATTERN.search(window) is not None


def _labeled_amount_pattern(label: str, max_lookahead: int, cross_line: bool) -> Pattern:
    gap = r"[\s\S]" if cross_line else r"[^\n\r]"
    return re.compile(rf"({label}){gap}{{0,{max_lookahead}}}?{AMOUNT_TOKEN}", re.IGNORECASE)


def _collapse(snippet: str) -> str:
    return re.sub(r"\s+", " ", snippet).strip()


def find_all_labeled_amounts(
    text: str,
    label: str,
    max_lookahead: int = 120,
    cross_line: bool = False,
) -> List[Tuple[float, str]]:
    """Every (value, snippet) where an amount follows the label within the lookahead."""
    if not text:
        return []
    found = []
    for match in _labeled_amount_pattern(label, max_lookahead, cross_line).finditer(text):
        token = match.group(match.lastindex)
        token_start = match.start(match.lastindex)
        if is_irs_reference(token, text, token_start, match.end()):
            continue
        value = parse_money(token)
        if value is None:
            continue
        found.append((value, _collapse(match.group(0))))
    return found


def find_labeled_amount(
    text: str,
    label: str,
    max_lookahead: int = 120,
    cross_line: bool = False,
) -> Optional[Tuple[float, str]]:
    """
    First amount following a label.

    Args:
        text: OCR text.
        label: Regex alternation for the label, e.g. r"total\\s+assets".
        max_lookahead: Max characters between label and amount.
        cross_line: Allow the amount on a following line.

    Returns:
        (value, whitespace-collapsed snippet) or None.
    """
    matches = find_all_labeled_amounts(text, label, max_lookahead, cross_line)
    return matches[0] if matches else None


@dataclass
class ParsedTable:
    """Header plus body rows of a whitespace-aligned text table."""

    header: List[str]
    rows: List[List[str]]


def split_cells(line: str) -> List[str]:
    return [cell.strip() for cell in CELL_SPLIT.split(line.strip()) if cell.strip()]


def parse_table(text: str, header_pattern: Union[str, Pattern]) -> Optional[ParsedTable]:
    """
    Parse the first table whose header line matches header_pattern.

    Cells split on a tab or two or more spaces. Separator lines are skipped,
    total rows are kept, and the table ends at the first line with fewer than two cells.
    """
    if not text:
        return None
    if isinstance(header_pattern, str):
        header_pattern = re.compile(header_pattern, re.IGNORECASE)

    lines = text.splitlines()
    header_index = next((i for i, line in enumerate(lines) if header_pattern.search(line)), None)
    if header_index is None:
        return None

    header = split_cells(lines[header_index])
    if len(header) < 2:
        return None

    rows = []
    for line in lines[header_index + 1:]:
        stripped = line.strip()
        if not stripped or SEPARATOR_LINE.match(stripped):
            continue
        cells = split_cells(stripped)
        if TOTAL_ROW.match(stripped):
            rows.append(cells)
            continue
        if len(cells) < 2:
            break
        rows.append(cells)
    return ParsedTable(header=header, rows=rows)


# Dates

def _safe_date(year: int, month: int, day: int) -> Optional[str]:
    try:
        return date(year, month, day).isoformat()
    except ValueError:
        return None


DATE_PREFIX = r"(?:as\s+of|date|effective|period\s+end(?:ing)?)[:\s]*"


def find_date_on_document(text: str) -> Optional[str]:
    """
    Best as-of date for a document, as YYYY-MM-DD.

    Tries, in order: an ISO date after "as of"/"date"/"effective"/"period ending",
    a US m/d/yyyy date after the same, a month-name date after "as of"/"date"/"effective",
    and finally the first ISO date in the first 500 characters.
    """
    if not text:
        return None

    match = re.search(rf"{DATE_PREFIX}(\d{{4}})-(\d{{2}})-(\d{{2}})", text, re.IGNORECASE)
    if match:
        found = _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
        if found:
            return found

    match = re.search(rf"{DATE_PREFIX}(\d{{1,2}})/(\d{{1,2}})/(\d{{4}})", text, re.IGNORECASE)
    if match:
        found = _safe_date(int(match.group(3)), int(match.group(1)), int(match.group(2)))
        if found:
            return found

    match = re.search(
        rf"(?:as\s+of|date|effective)[:\s]*{MONTH_NAME}\.?\s+(\d{{1,2}}),?\s+(\d{{4}})",
        text,
        re.IGNORECASE,
    )
    if match:
        month = MONTHS.get(match.group(1).lower())
        if month:
            found = _safe_date(int(match.group(3)), month, int(match.group(2)))
            if found:
                return found

    match = re.search(r"\b(\d{4})-(\d{2})-(\d{2})\b", text[:500])
    if match:
        return _safe_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))
    return None


TAX_YEAR_PATTERNS = [
    re.compile(r"tax\s+(?:year|period)[:\s]+(?:beginning\s+)?(?:\w+\s+\d{1,2},?\s+)?(\d{4})", re.IGNORECASE),
    re.compile(r"fiscal\s+year[:\s]+(?:ending\s+)?(\d{4})", re.IGNORECASE),
    re.compile(r"for\s+the\s+(?:tax\s+)?year\s+(?:ended|ending)\s+\w+\s+\d{1,2},?\s+(\d{4})", re.IGNORECASE),
    re.compile(r"form\s+\d{4}[A-Z]?\b[^\n]{0,60}?\b((?:19|20)\d{2})\b", re.IGNORECASE),
    re.compile(r"calendar\s+year\s+(\d{4})", re.IGNORECASE),
    re.compile(r"\bFY\s*(\d{4})\b", re.IGNORECASE),
]


def extract_tax_year(text: str) -> Optional[int]:
    """Tax year stated on a return, if one between 1990 and 2100 is found."""
    if not text:
        return None
    for pattern in TAX_YEAR_PATTERNS:
        for match in pattern.finditer(text):
            year = int(match.group(1))
            if MIN_TAX_YEAR <= year <= MAX_TAX_YEAR:
                return year
    return None


FORM_MARKERS = [
    (re.compile(r"FORM\s+1120[\s-]?S"), "1120S"),
    (re.compile(r"FORM\s+1120\b"), "1120"),
    (re.compile(r"FORM\s+1065\b"), "1065"),
    (re.compile(r"SCHEDULE\s+K[\s-]?1\b"), "K1"),
    (re.compile(r"SCHEDULE\s+C\b"), "SCHEDULE_C"),
    (re.compile(r"SCHEDULE\s+E\b"), "SCHEDULE_E"),
    (re.compile(r"FORM\s+1040\b"), "1040"),
]
BARE_FORM_NUMBERS = [
    (re.compile(r"\b1120[\s-]?S\b"), "1120S"),
    (re.compile(r"\b1120\b"), "1120"),
    (re.compile(r"\b1065\b"), "1065"),
    (re.compile(r"\b1040\b"), "1040"),
]


def detect_irs_form_type(text: str) -> str:
    """
    Which IRS form a return is.

    Returns one of 1040, 1120, 1120S, 1065, K1, SCHEDULE_C, SCHEDULE_E, UNKNOWN.
    """
    if not text:
        return "UNKNOWN"
    head = text[:2000].upper()
    for pattern, form in FORM_MARKERS:
        if pattern.search(head):
            return form

    opening = head[:500]
    for pattern, form in BARE_FORM_NUMBERS:
        if pattern.search(opening):
            return form
    return "UNKNOWN"


def _plausible_year(year: Optional[int]) -> bool:
    return year is not None and MIN_TAX_YEAR <= year <= MAX_TAX_YEAR


def resolve_tax_year(text: str, document_tax_year: Optional[int] = None) -> Optional[int]:
    """Tax year from the text, falling back to the document's recorded year."""
    from_text = extract_tax_year(text)
    if from_text:
        return from_text
    return document_tax_year if _plausible_year(document_tax_year) else None


def resolve_document_date(text: str, document_year: Optional[int] = None) -> Optional[str]:
    """
    Date label for a document: a date found in the text, else the document year as "YYYY".

    The result is meant for normalize_period(), which turns a bare year into a fiscal year.
    """
    found = find_date_on_document(text)
    if found:
        return found
    return str(document_year) if _plausible_year(document_year) else None


def map_header_columns(header: List[str], aliases: Dict[str, str]) -> Dict[str, int]:
    """
    Map canonical field names to header column indexes.

    An exact alias match claims the column; otherwise every alias contained in
    the cell claims it for its field, unless that field is already mapped.
    """
    mapping: Dict[str, int] = {}
    for index, cell in enumerate(header):
        normalized = cell.strip().lower()
        if normalized in aliases:
            mapping[aliases[normalized]] = index
            continue
        for alias, field_name in aliases.items():
            if alias in normalized and field_name not in mapping:
                mapping[field_name] = index
    return mapping
