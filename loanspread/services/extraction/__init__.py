"""Document extraction: routing, extractors and strategies."""
from loanspread.services.extraction.router import (
    EXTRACTORS,
    ExtractionOutcome,
    ExtractionRouter,
    normalize_document_type,
)
from loanspread.services.extraction.strategies import (
    DeterministicStrategy,
    ExtractionStrategy,
    LegacyStrategy,
    strategy_from_settings,
)

__all__ = [
    "EXTRACTORS",
    "ExtractionOutcome",
    "ExtractionRouter",
    "normalize_document_type",
    "DeterministicStrategy",
    "ExtractionStrategy",
    "LegacyStrategy",
    "strategy_from_settings",
]
