"""Utilities package."""
from loanspread.utils.clock import Clock, utcnow, iso_date, iso_timestamp

__all__ = [
    "Clock",
    "utcnow",
    "iso_date",
    "iso_timestamp",
]
