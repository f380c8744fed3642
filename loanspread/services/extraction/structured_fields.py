"""
Structured-field blob parsing.

Reads the JSON a document-understanding service returns alongside OCR text:
entities (with nested properties), per-page form fields and per-page tables.
The blob may be the full response ({"document": ...}), a one-element list of
responses, or the bare document.
"""
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from loanspread.services.extraction.text_patterns import parse_money


@dataclass
class StructuredEntity:
    """A typed entity, type normalized to lower snake case."""

    type: str
    mention_text: str = ""
    normalized_value: Dict[str, Any] = field(default_factory=dict)
    confidence: float = 0.0
    properties: List["StructuredEntity"] = field(default_factory=list)


@dataclass
class FormField:
    name: str
    value: str
    confidence: float
    page_index: int


@dataclass
class StructuredTable:
    header_rows: List[List[str]]
    body_rows: List[List[str]]
    page_index: int


def normalize_entity_type(raw: Any) -> str:
    """'Total Assets' and 'total-assets' both become 'total_assets'."""
    return re.sub(r"[\s-]+", "_", str(raw or "").strip().lower())


def _document(blob: Any) -> Optional[Dict[str, Any]]:
    if isinstance(blob, list):
        first = blob[0] if blob else None
        if isinstance(first, dict) and isinstance(first.get("document"), dict):
            return first["document"]
        return None
    if not isinstance(blob, dict):
        return None
    if isinstance(blob.get("document"), dict):
        return blob["document"]
    if any(key in blob for key in ("text", "pages", "entities")):
        return blob
    return None


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return default
    return number if number == number else default  # NaN check


def _entity(raw: Dict[str, Any]) -> StructuredEntity:
    properties = raw.get("properties")
    return StructuredEntity(
        type=normalize_entity_type(raw.get("type")),
        mention_text=str(raw.get("mentionText") or ""),
        normalized_value=raw.get("normalizedValue") or {},
        confidence=_to_float(raw.get("confidence")),
        properties=[_entity(p) for p in properties if isinstance(p, dict)] if isinstance(properties, list) else [],
    )


def extract_entities(blob: Any) -> List[StructuredEntity]:
    """Top-level entities, with nested properties flattened after their parent."""
    doc = _document(blob)
    if not doc or not isinstance(doc.get("entities"), list):
        return []

    flat: List[StructuredEntity] = []

    def walk(entities: List[StructuredEntity]) -> None:
        for entity in entities:
            flat.append(entity)
            walk(entity.properties)

    walk([_entity(e) for e in doc["entities"] if isinstance(e, dict)])
    return flat


def _layout_text(layout: Any, doc: Dict[str, Any]) -> Optional[str]:
    if layout is None:
        return None
    if isinstance(layout, str):
        return layout
    if not isinstance(layout, dict):
        return None
    if layout.get("content"):
        return str(layout["content"])
    if layout.get("text"):
        return str(layout["text"])

    segments = (layout.get("textAnchor") or {}).get("textSegments")
    full_text = doc.get("text")
    if isinstance(segments, list) and isinstance(full_text, str):
        parts = []
        for segment in segments:
            start = int(segment.get("startIndex") or 0)
            end = int(segment.get("endIndex") or start)
            parts.append(full_text[start:end])
        return "".join(parts)
    return None


def extract_form_fields(blob: Any) -> List[FormField]:
    doc = _document(blob)
    pages = doc.get("pages") if doc else None
    if not isinstance(pages, list):
        return []

    fields = []
    for page_index, page in enumerate(pages):
        for raw in (page or {}).get("formFields") or []:
            name = _layout_text(raw.get("fieldName"), doc)
            if not name:
                continue
            value = _layout_text(raw.get("fieldValue"), doc) or ""
            confidence = (raw.get("fieldName") or {}).get("confidence")
            if confidence is None:
                confidence = (raw.get("fieldValue") or {}).get("confidence")
            fields.append(
                FormField(
                    name=name.strip(),
                    value=value.strip(),
                    confidence=_to_float(confidence),
                    page_index=page_index,
                )
            )
    return fields


def _table_rows(rows: Any, doc: Dict[str, Any]) -> List[List[str]]:
    if not isinstance(rows, list):
        return []
    result = []
    for row in rows:
        cells = row.get("cells") or row.get("tableCells") or []
        result.append([(_layout_text(cell.get("layout", cell), doc) or "").strip() for cell in cells])
    return result


def extract_tables(blob: Any) -> List[StructuredTable]:
    doc = _document(blob)
    pages = doc.get("pages") if doc else None
    if not isinstance(pages, list):
        return []

    tables = []
    for page_index, page in enumerate(pages):
        for raw in (page or {}).get("tables") or []:
            header_rows = _table_rows(raw.get("headerRows"), doc)
            body_rows = _table_rows(raw.get("bodyRows"), doc)
            if header_rows or body_rows:
                tables.append(StructuredTable(header_rows, body_rows, page_index))
    return tables


def entity_to_money(entity: StructuredEntity) -> Optional[float]:
    """Money value of an entity: structured moneyValue, then normalized text, then mention text."""
    money = entity.normalized_value.get("moneyValue")
    if isinstance(money, dict) and isinstance(money.get("units"), (int, float, str)):
        try:
            return float(money["units"]) + _to_float(money.get("nanos")) / 1_000_000_000
        except (TypeError, ValueError):
            pass
    text = entity.normalized_value.get("text")
    if text:
        value = parse_money(text)
        if value is not None:
            return value
    return parse_money(entity.mention_text)


def entity_to_date(entity: StructuredEntity) -> Optional[str]:
    value = entity.normalized_value.get("dateValue")
    if isinstance(value, dict) and value.get("year"):
        return f"{int(value['year']):04d}-{int(value.get('month') or 1):02d}-{int(value.get('day') or 1):02d}"
    return None
