"""
Period normalization for extracted line items.

Turns the period labels seen in statements and column headers into a concrete
(start, end) ISO date range. Aggregate labels (TTM, YTD) have no concrete range.
"""
import calendar
import re
from dataclasses import dataclass
from typing import Iterable, List, Optional

import structlog

from loanspread.services.extraction.text_patterns import MONTHS

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PeriodRange:
    """Normalized period. Both ends are None when the label has no concrete range."""

    start: Optional[str] = None
    end: Optional[str] = None

    @property
    def is_known(self) -> bool:
        return self.end is not None


UNKNOWN_PERIOD = PeriodRange()

RANGE_PATTERN = re.compile(r"^(\d{4}-\d{2}-\d{2})\s*(?:to|-)\s*(\d{4}-\d{2}-\d{2})$", re.IGNORECASE)
ISO_DATE_PATTERN = re.compile(r"^\d{4}-\d{2}-\d{2}$")
YEAR_MONTH_PATTERN = re.compile(r"^(\d{4})-(\d{2})$")
MONTH_YEAR_PATTERN = re.compile(r"^(jan|feb|mar|apr|may|jun|jul|aug|sep|oct|nov|dec)\w*\s+(\d{4})$", re.IGNORECASE)
QUARTER_PATTERN = re.compile(r"^Q(\d)\s+(\d{4})$", re.IGNORECASE)
FISCAL_YEAR_PATTERN = re.compile(r"^(?:FY\s*)?(\d{4})$", re.IGNORECASE)


def _month_span(year: int, first_month: int, last_month: int) -> PeriodRange:
    last_day = calendar.monthrange(year, last_month)[1]
    return PeriodRange(
        start=f"{year:04d}-{first_month:02d}-01",
        end=f"{year:04d}-{last_month:02d}-{last_day:02d}",
    )


def normalize_period(raw: Optional[str]) -> PeriodRange:
    """
    Normalize a period label.

    Examples:
        "2023-01-01 to 2023-12-31" -> 2023-01-01 .. 2023-12-31
        "2024-03"                  -> 2024-03-01 .. 2024-03-31
        "Q3 2024"                  -> 2024-07-01 .. 2024-09-30
        "FY2023"                   -> 2023-01-01 .. 2023-12-31
        "TTM"                      -> unknown
    """
    if not raw:
        return UNKNOWN_PERIOD
    text = str(raw).strip()

    match = RANGE_PATTERN.match(text)
    if match:
        return PeriodRange(start=match.group(1), end=match.group(2))

    if ISO_DATE_PATTERN.match(text):
        return PeriodRange(start=text, end=text)

    match = YEAR_MONTH_PATTERN.match(text)
    if match:
        year, month = int(match.group(1)), int(match.group(2))
        if 1 <= month <= 12:
            return _month_span(year, month, month)
        return UNKNOWN_PERIOD

    match = MONTH_YEAR_PATTERN.match(text)
    if match:
        month = MONTHS.get(match.group(1).lower())
        if month:
            return _month_span(int(match.group(2)), month, month)

    match = QUARTER_PATTERN.match(text)
    if match:
        quarter, year = int(match.group(1)), int(match.group(2))
        if 1 <= quarter <= 4:
            return _month_span(year, (quarter - 1) * 3 + 1, quarter * 3)

    match = FISCAL_YEAR_PATTERN.match(text)
    if match:
        year = int(match.group(1))
        return PeriodRange(start=f"{year}-01-01", end=f"{year}-12-31")

    # TTM, YTD, PY_YTD and anything unrecognized
    return UNKNOWN_PERIOD


def fiscal_year_period(year: Optional[int]) -> PeriodRange:
    """Calendar fiscal year range for a tax year."""
    if year is None:
        return UNKNOWN_PERIOD
    return PeriodRange(start=f"{year}-01-01", end=f"{year}-12-31")


def periods_from_headers(headers: Iterable[str]) -> List[PeriodRange]:
    """Normalize every column header; non-period headers map to the unknown period."""
    return [normalize_period(header) for header in headers]
