"""
Non-blocking checks attached to a rendered spread.

Nothing here stops a render; problems come back as warning dicts that the
renderer adds to meta.validation_warnings.
"""
from typing import Any, Dict, List, Mapping, Optional

ACCOUNTING_TOLERANCE = 0.01
# Imbalances above this share of total assets are errors rather than warnings.
ERROR_RATIO = 0.01

SEVERITY_WARNING = "warning"
SEVERITY_ERROR = "error"


def _row(spread: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    return next((row for row in spread.get("rows", []) if row.get("key") == key), None)


def _cell_value(row: Optional[Mapping[str, Any]], column_key: str) -> Optional[float]:
    if row is None:
        return None
    return ((row.get("values") or {}).get(column_key) or {}).get("value")


def check_accounting_equation(
    spread: Mapping[str, Any],
    tolerance: float = ACCOUNTING_TOLERANCE,
) -> List[Dict[str, Any]]:
    """
    Compare TOTAL_ASSETS with TOTAL_LIABILITIES_AND_EQUITY in every column.

    Columns missing either side are skipped.
    """
    assets_row = _row(spread, "TOTAL_ASSETS")
    funding_row = _row(spread, "TOTAL_LIABILITIES_AND_EQUITY")
    warnings = []
    for column in spread.get("columns", []):
        assets = _cell_value(assets_row, column["key"])
        funding = _cell_value(funding_row, column["key"])
        if assets is None or funding is None:
            continue
        difference = abs(assets - funding)
        if difference <= tolerance:
            continue
        relative = difference / abs(assets) if assets else float("inf")
        warnings.append({
            "code": "ACCOUNTING_EQUATION_IMBALANCE",
            "severity": SEVERITY_ERROR if relative > ERROR_RATIO else SEVERITY_WARNING,
            "column": column["key"],
            "total_assets": assets,
            "total_liabilities_and_equity": funding,
            "difference": round(difference, 2),
            "message": (
                f"Total assets {assets:,.2f} differ from total liabilities and equity "
                f"{funding:,.2f} by {difference:,.2f} in {column['label']}"
            ),
        })
    return warnings


def missing_metric_warnings(financial_snapshot: Mapping[str, Any]) -> List[Dict[str, Any]]:
    """One warning per required metric the snapshot could not resolve."""
    return [
        {
            "code": "MISSING_REQUIRED_METRIC",
            "severity": SEVERITY_WARNING,
            "metric": name,
            "message": f"{name} is not available yet",
        }
        for name in financial_snapshot.get("missing_required", [])
    ]
