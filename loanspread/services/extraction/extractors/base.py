"""
Base class for per-document-type extractors.

An extractor owns a closed vocabulary of fact keys for one fact type and knows
how to read them from structured entities or raw OCR text. Writing is left to
the router.
"""
import re
from abc import ABC
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import structlog

from loanspread.services.extraction.periods import PeriodRange, normalize_period
from loanspread.services.extraction.structured_fields import entity_to_money, extract_entities
from loanspread.services.extraction.text_patterns import find_date_on_document, find_labeled_amount

logger = structlog.get_logger(__name__)

PATH_STRUCTURED = "docai_structured"
PATH_TABLE = "docai_table"
PATH_TEXT = "ocr_regex"
PATH_GENERIC_SCAN = "ocr_generic_scan"
PATH_LEGACY = "legacy_llm"

MODE_DETERMINISTIC = "deterministic"
MODE_LEGACY = "legacy"

DEFAULT_LEGACY_CONFIDENCE = 0.6


@dataclass
class ExtractedLineItem:
    """One parsed value, before it is written as a fact."""

    fact_key: str
    value: Optional[float]
    confidence: float
    period: PeriodRange
    provenance: Dict[str, Any] = field(default_factory=dict)
    value_text: Optional[str] = None


@dataclass
class ExtractionContext:
    """Everything an extractor may read for one document."""

    tenant_id: str
    case_id: str
    document_id: str
    ocr_text: str = ""
    structured_fields: Any = None
    tax_year: Optional[int] = None
    document_type: Optional[str] = None

    @property
    def has_text(self) -> bool:
        return bool(self.ocr_text and self.ocr_text.strip())

    @property
    def is_empty(self) -> bool:
        return not self.has_text and not self.structured_fields


@dataclass
class ExtractorOutput:
    items: List[ExtractedLineItem]
    path: str
    rent_roll_rows: Optional[List[Dict[str, Any]]] = None


def clamp_confidence(raw: Optional[float], default: float) -> float:
    """Entity confidence clamped to [0, 1]; a missing or zero score takes the default."""
    return min(1.0, max(0.0, raw or default))


def normalize_field_name(name: str) -> str:
    """'Gross Receipts:' -> 'gross_receipts'."""
    return re.sub(r"[^a-z0-9_]", "", re.sub(r"[\s-]+", "_", name.lower()))


class DocumentExtractor(ABC):
    """
    Deterministic extraction for one fact type.

    Subclasses set the class attributes; most need no method overrides.
    Structured entities are tried first, then label patterns over the text,
    same line before cross line.
    """

    fact_type: str = ""
    name: str = ""
    valid_keys: frozenset = frozenset()
    # entity type (lower snake case) -> fact key
    entity_map: Dict[str, str] = {}
    # fact key -> label regexes, tried in order
    label_patterns: Dict[str, List[str]] = {}
    entity_default_confidence = 0.7
    same_line_confidence = 0.55
    cross_line_confidence = 0.50
    legacy_prompt: str = ""
    replaces_document_facts = False

    def extract(self, ctx: ExtractionContext) -> ExtractorOutput:
        """Run the deterministic paths and return whatever the first productive one found."""
        if ctx.is_empty:
            return ExtractorOutput(items=[], path=PATH_TEXT)

        if ctx.structured_fields:
            items = self.from_structured(ctx)
            if items:
                return ExtractorOutput(items=items, path=PATH_STRUCTURED)

        if ctx.has_text:
            items = self.from_text(ctx)
            if items:
                return ExtractorOutput(items=items, path=PATH_TEXT)
            return self.text_fallback(ctx)

        return ExtractorOutput(items=[], path=PATH_TEXT)

    def document_period(self, ctx: ExtractionContext) -> PeriodRange:
        return normalize_period(find_date_on_document(ctx.ocr_text))

    def from_structured(self, ctx: ExtractionContext) -> List[ExtractedLineItem]:
        entities = extract_entities(ctx.structured_fields)
        if not entities:
            return []

        period = self.document_period(ctx)
        items = []
        for entity in entities:
            fact_key = self.entity_map.get(entity.type)
            if fact_key is None or fact_key not in self.valid_keys:
                continue
            value = entity_to_money(entity)
            if value is None:
                continue
            confidence = clamp_confidence(entity.confidence, self.entity_default_confidence)
            items.append(
                self.make_item(ctx, fact_key, value, confidence, period, entity.mention_text, PATH_STRUCTURED)
            )
        return items

    def text_confidences(self, fact_key: str):
        """(same line, cross line) confidence for a text match of this key."""
        return self.same_line_confidence, self.cross_line_confidence

    def from_text(self, ctx: ExtractionContext) -> List[ExtractedLineItem]:
        period = self.document_period(ctx)
        items = []
        for fact_key, patterns in self.label_patterns.items():
            same_line, cross_line = self.text_confidences(fact_key)
            for pattern in patterns:
                found = find_labeled_amount(ctx.ocr_text, pattern)
                confidence = same_line
                if found is None:
                    found = find_labeled_amount(ctx.ocr_text, pattern, cross_line=True)
                    confidence = cross_line
                if found is None:
                    continue
                value, snippet = found
                items.append(self.make_item(ctx, fact_key, value, confidence, period, snippet, PATH_TEXT))
                break
        return items

    def text_fallback(self, ctx: ExtractionContext) -> ExtractorOutput:
        """Last resort when neither structured nor label extraction found anything."""
        return ExtractorOutput(items=[], path=PATH_TEXT)

    # Legacy responses

    def from_legacy(self, payload: Any, ctx: ExtractionContext) -> ExtractorOutput:
        """Convert a validated legacy response into line items."""
        items = []
        for line in payload.line_items:
            confidence = clamp_confidence(line.confidence, DEFAULT_LEGACY_CONFIDENCE)
            period = normalize_period(line.period) if line.period else self.document_period(ctx)
            items.append(
                self.make_item(
                    ctx,
                    line.key,
                    line.value,
                    confidence,
                    period,
                    None,
                    PATH_LEGACY,
                    mode=MODE_LEGACY,
                )
            )
        return ExtractorOutput(items=items, path=PATH_LEGACY)

    # Shared helpers

    def filter_vocabulary(self, items: List[ExtractedLineItem]) -> List[ExtractedLineItem]:
        """Drop every item whose key is outside this extractor's vocabulary."""
        kept = [item for item in items if item.fact_key in self.valid_keys]
        dropped = len(items) - len(kept)
        if dropped:
            logger.debug("extraction_keys_dropped", extractor=self.name, dropped=dropped)
        return kept

    def extractor_id(self, mode: str = MODE_DETERMINISTIC) -> str:
        if mode == MODE_LEGACY:
            return f"{self.name}:v1:legacy"
        return f"{self.name}:v2:deterministic"

    def make_provenance(
        self,
        document_id: str,
        period_end: Optional[str],
        confidence: float,
        snippet: Optional[str],
        path: str,
        mode: str = MODE_DETERMINISTIC,
    ) -> Dict[str, Any]:
        return {
            "source_type": "DOC_EXTRACT",
            "source_ref": f"deal_documents:{document_id}",
            "as_of_date": period_end,
            "extractor": self.extractor_id(mode),
            "confidence": confidence,
            "extraction_path": path,
            "citations": [{"page": None, "snippet": snippet}] if snippet else [],
            "raw_snippets": [snippet] if snippet else [],
        }

    def make_item(
        self,
        ctx: ExtractionContext,
        fact_key: str,
        value: Optional[float],
        confidence: float,
        period: PeriodRange,
        snippet: Optional[str],
        path: str,
        mode: str = MODE_DETERMINISTIC,
    ) -> ExtractedLineItem:
        return ExtractedLineItem(
            fact_key=fact_key,
            value=value,
            confidence=confidence,
            period=period,
            provenance=self.make_provenance(ctx.document_id, period.end, confidence, snippet, path, mode),
        )
