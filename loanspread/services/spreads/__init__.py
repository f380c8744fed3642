"""Spread templates, formula evaluation and rendering."""
from loanspread.services.spreads.formulas import FactSnapshot, Formula, FormulaEngine, evaluate_structural
from loanspread.services.spreads.metrics import METRIC_REGISTRY, evaluate_metric
from loanspread.services.spreads.registry import (
    SPREAD_TYPES,
    TEMPLATES,
    SpreadRow,
    SpreadTemplate,
    build_template,
    get_template,
    validate_registry,
)
from loanspread.services.spreads.renderer import (
    attach_validation,
    format_display,
    render_spread,
    render_with_validation,
)

__all__ = [
    "FactSnapshot",
    "Formula",
    "FormulaEngine",
    "evaluate_structural",
    "METRIC_REGISTRY",
    "evaluate_metric",
    "SPREAD_TYPES",
    "TEMPLATES",
    "SpreadRow",
    "SpreadTemplate",
    "build_template",
    "get_template",
    "validate_registry",
    "attach_validation",
    "format_display",
    "render_spread",
    "render_with_validation",
]
