"""
Extraction strategies.

The router is handed exactly one strategy per call. The deterministic strategy
runs the extractor's own parsers; the legacy strategy sends the text to a
language model and validates what comes back.
"""
import json
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

import structlog
from pydantic import BaseModel, Field
from pydantic import ValidationError as PydanticValidationError

from loanspread.config import Settings
from loanspread.exceptions import ExternalServiceError, LegacyResponseError
from loanspread.services.extraction.extractors.base import (
    MODE_DETERMINISTIC,
    MODE_LEGACY,
    DocumentExtractor,
    ExtractionContext,
    ExtractorOutput,
)

logger = structlog.get_logger(__name__)

TRUNCATION_MARKER = "\n\n[... truncated ...]"
JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


class LegacyLineItem(BaseModel):
    key: str
    value: float = Field(allow_inf_nan=False)
    period: Optional[str] = None
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)


class LegacyResponse(BaseModel):
    """Schema a legacy model response must satisfy."""

    line_items: List[LegacyLineItem] = Field(default_factory=list)
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class ExtractionStrategy(ABC):
    """Abstract base class: turn one document into extractor output."""

    mode = MODE_DETERMINISTIC

    @abstractmethod
    def run(self, extractor: DocumentExtractor, ctx: ExtractionContext) -> ExtractorOutput:
        """Run the extractor against one document."""
        pass


class DeterministicStrategy(ExtractionStrategy):
    mode = MODE_DETERMINISTIC

    def run(self, extractor: DocumentExtractor, ctx: ExtractionContext) -> ExtractorOutput:
        return extractor.extract(ctx)


def truncate_text(text: str, max_chars: int) -> str:
    if len(text) <= max_chars:
        return text
    return text[:max_chars] + TRUNCATION_MARKER


def parse_legacy_response(content: Optional[str]) -> LegacyResponse:
    """
    Locate the JSON object in a model response and validate it.

    Raises:
        LegacyResponseError: No JSON object, invalid JSON, or a schema violation.
    """
    match = JSON_OBJECT.search(content or "")
    if not match:
        raise LegacyResponseError("No JSON object found in model response")
    try:
        raw = json.loads(match.group(0))
    except json.JSONDecodeError as e:
        raise LegacyResponseError("Model response is not valid JSON", details={"error": str(e)})
    try:
        return LegacyResponse.model_validate(raw)
    except PydanticValidationError as e:
        raise LegacyResponseError(
            "Model response does not match the extraction schema",
            details={"errors": e.errors(include_url=False)},
        )


class LegacyStrategy(ExtractionStrategy):
    """
    Language-model extraction through the OpenAI chat completions API.

    The response is untrusted: it must contain one JSON object matching
    LegacyResponse, and its keys still pass through the extractor's vocabulary.
    """

    mode = MODE_LEGACY
    MAX_TOKENS = 4096
    TEMPERATURE = 0.0

    def __init__(self, client: Any = None, model: str = "gpt-4o-mini", max_chars: int = 25_000):
        self._client = client
        self.model = model
        self.max_chars = max_chars

    @classmethod
    def from_settings(cls, settings: Settings) -> "LegacyStrategy":
        from openai import OpenAI

        if not settings.openai_api_key:
            raise ExternalServiceError("openai", "OPENAI_API_KEY is not configured")
        return cls(
            client=OpenAI(api_key=settings.openai_api_key),
            model=settings.legacy_model,
            max_chars=settings.legacy_max_chars,
        )

    def complete(self, system_prompt: str, text: str) -> str:
        """One model call; returns the raw response content."""
        user_prompt = (
            "Document content:\n---\n"
            f"{truncate_text(text, self.max_chars)}"
            "\n---\n\nRespond with JSON only."
        )
        try:
            response = self._client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                max_tokens=self.MAX_TOKENS,
                temperature=self.TEMPERATURE,
                response_format={"type": "json_object"},
            )
        except Exception as e:
            raise ExternalServiceError("openai", str(e))

        if response.usage:
            logger.info("legacy_extraction_call", model=self.model, tokens=response.usage.total_tokens)
        return response.choices[0].message.content

    def run(self, extractor: DocumentExtractor, ctx: ExtractionContext) -> ExtractorOutput:
        if not ctx.has_text:
            return ExtractorOutput(items=[], path="legacy_llm")
        payload = parse_legacy_response(self.complete(extractor.legacy_prompt, ctx.ocr_text))
        return extractor.from_legacy(payload, ctx)


def strategy_from_settings(settings: Settings) -> ExtractionStrategy:
    """Pick the strategy once, at the composition root."""
    if settings.extraction_strategy == MODE_LEGACY:
        return LegacyStrategy.from_settings(settings)
    return DeterministicStrategy()
