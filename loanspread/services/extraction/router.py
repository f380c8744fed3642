"""
Extraction router.

Picks the extractor for a document from its normalized type, runs the injected
strategy, writes the resulting facts, and records a heartbeat whatever happened.
Parser failures never escape: they degrade to zero facts and a ledger event.
"""
import re
from dataclasses import dataclass
from typing import Any, Dict, Optional

import structlog
from sqlalchemy.orm import Session

from loanspread.exceptions import ExternalServiceError
from loanspread.models.audit import LedgerEvent, LedgerSeverity
from loanspread.services.detached import run_detached
from loanspread.services.extraction.extractors import (
    BalanceSheetExtractor,
    DocumentExtractor,
    ExtractionContext,
    IncomeStatementExtractor,
    PersonalFinancialStatementExtractor,
    RentRollExtractor,
    TaxReturnExtractor,
)
from loanspread.services.extraction.strategies import DeterministicStrategy, ExtractionStrategy
from loanspread.services.fact_store import FactInput, FactStore

logger = structlog.get_logger(__name__)

DOC_TYPE_ALIASES = {
    "BALANCE_SHEET": "BALANCE_SHEET",
    "INCOME_STATEMENT": "INCOME_STATEMENT",
    "T12": "INCOME_STATEMENT",
    "OPERATING_STATEMENT": "INCOME_STATEMENT",
    "PROFIT_AND_LOSS": "INCOME_STATEMENT",
    "P_AND_L": "INCOME_STATEMENT",
    "BUSINESS_TAX_RETURN": "TAX_RETURN",
    "PERSONAL_TAX_RETURN": "TAX_RETURN",
    "TAX_RETURN": "TAX_RETURN",
    "PFS": "PERSONAL_FINANCIAL_STATEMENT",
    "PERSONAL_FINANCIAL_STATEMENT": "PERSONAL_FINANCIAL_STATEMENT",
    "SBA_413": "PERSONAL_FINANCIAL_STATEMENT",
    "RENT_ROLL": "RENT_ROLL",
}

EXTRACTORS: Dict[str, DocumentExtractor] = {
    "BALANCE_SHEET": BalanceSheetExtractor(),
    "INCOME_STATEMENT": IncomeStatementExtractor(),
    "TAX_RETURN": TaxReturnExtractor(),
    "PERSONAL_FINANCIAL_STATEMENT": PersonalFinancialStatementExtractor(),
    "RENT_ROLL": RentRollExtractor(),
}

DEFAULT_ZERO_FACT_WARNING_CHARS = 500


def normalize_document_type(raw: Optional[str]) -> Optional[str]:
    """
    Canonical extractor type for a document label, or None when unmapped.

    "Profit & Loss", "profit-and-loss" and "PROFIT_AND_LOSS" all normalize the same way;
    any IRS_* label (IRS_1120S, IRS_1040, ...) is a tax return.
    """
    if not raw or not str(raw).strip():
        return None
    label = re.sub(r"&", "_AND_", str(raw).strip().upper())
    label = re.sub(r"[^A-Z0-9]+", "_", label).strip("_")
    if label.startswith("IRS_"):
        return "TAX_RETURN"
    return DOC_TYPE_ALIASES.get(label)


@dataclass
class ExtractionOutcome:
    """What one extraction call did."""

    facts_written: int = 0
    document_type: Optional[str] = None
    extractor: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None
    heartbeat_written: bool = False
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "facts_written": self.facts_written,
            "document_type": self.document_type,
            "extractor": self.extractor,
            "path": self.path,
            "error": self.error,
            "heartbeat_written": self.heartbeat_written,
            "skipped": self.skipped,
        }


class ExtractionRouter:
    """
    Routes documents to extractors and persists their output.

    The strategy is chosen by the caller and fixed for the router's lifetime,
    so one call never mixes deterministic and legacy paths.
    """

    def __init__(
        self,
        db: Session,
        strategy: Optional[ExtractionStrategy] = None,
        zero_fact_warning_chars: int = DEFAULT_ZERO_FACT_WARNING_CHARS,
        extractors: Optional[Dict[str, DocumentExtractor]] = None,
    ):
        self.db = db
        self.strategy = strategy or DeterministicStrategy()
        self.zero_fact_warning_chars = zero_fact_warning_chars
        self.extractors = extractors if extractors is not None else EXTRACTORS
        self.store = FactStore(db)

    def extract(
        self,
        tenant_id: str,
        case_id: str,
        document_id: str,
        ocr_text: str,
        structured_fields: Any = None,
        document_type: Optional[str] = None,
        doc_type_hint: Optional[str] = None,
        tax_year: Optional[int] = None,
    ) -> ExtractionOutcome:
        """
        Extract and persist facts for one document.

        The explicit classification wins; the hint is used only when there is none.
        """
        canonical_type = normalize_document_type(document_type or doc_type_hint)
        extractor = self.extractors.get(canonical_type) if canonical_type else None
        if extractor is None:
            logger.info(
                "extraction_skipped_unmapped_type",
                document_id=document_id,
                document_type=document_type,
                doc_type_hint=doc_type_hint,
            )
            return ExtractionOutcome(document_type=canonical_type, skipped=True)

        ocr_text = ocr_text or ""
        ctx = ExtractionContext(
            tenant_id=tenant_id,
            case_id=case_id,
            document_id=str(document_id),
            ocr_text=ocr_text,
            structured_fields=structured_fields,
            tax_year=tax_year,
            document_type=canonical_type,
        )
        outcome = ExtractionOutcome(
            document_type=canonical_type,
            extractor=extractor.extractor_id(self.strategy.mode),
        )

        try:
            output = self.strategy.run(extractor, ctx)
        except ExternalServiceError:
            # transient; the job scheduler retries with backoff
            raise
        except Exception as e:
            logger.warning(
                "extraction_failed",
                document_id=ctx.document_id,
                extractor=outcome.extractor,
                error=str(e),
                error_type=type(e).__name__,
            )
            outcome.error = str(e)
            run_detached(
                "ledger_extract_failed",
                self._record_event,
                ctx,
                "extract.failed",
                f"Extraction failed for document {ctx.document_id}",
                LedgerSeverity.WARNING,
                {"document_id": ctx.document_id, "extractor": outcome.extractor, "error": str(e)},
                cleanup=self.db.rollback,
            )
        else:
            outcome.path = output.path
            outcome.facts_written = self._persist(extractor, ctx, output)
            logger.info(
                "extraction_routed",
                document_id=ctx.document_id,
                document_type=canonical_type,
                extractor=outcome.extractor,
                path=output.path,
                facts_written=outcome.facts_written,
            )

        outcome.heartbeat_written = run_detached(
            "extraction_heartbeat",
            self.store.write_heartbeat,
            tenant_id,
            case_id,
            ctx.document_id,
            len(ocr_text),
            {
                "source_type": "SYSTEM",
                "source_ref": f"deal_documents:{ctx.document_id}",
                "document_id": ctx.document_id,
                "document_type": canonical_type,
                "extractor": outcome.extractor,
                "extraction_path": outcome.path,
                "facts_written": outcome.facts_written,
            },
            cleanup=self.db.rollback,
        )

        if outcome.facts_written == 0 and len(ocr_text) >= self.zero_fact_warning_chars:
            logger.warning(
                "extraction_zero_facts",
                document_id=ctx.document_id,
                document_type=canonical_type,
                ocr_chars=len(ocr_text),
            )
            run_detached(
                "ledger_zero_facts",
                self._record_event,
                ctx,
                "extract.zero_facts",
                f"No facts extracted from {len(ocr_text)} characters of OCR text",
                LedgerSeverity.WARNING,
                {"document_id": ctx.document_id, "ocr_chars": len(ocr_text), "extractor": outcome.extractor},
                cleanup=self.db.rollback,
            )
        return outcome

    def _persist(self, extractor: DocumentExtractor, ctx: ExtractionContext, output) -> int:
        items = extractor.filter_vocabulary(output.items)

        if extractor.replaces_document_facts:
            self.store.delete_for_document(ctx.tenant_id, ctx.case_id, ctx.document_id, extractor.fact_type)
            self.db.commit()
            if output.rent_roll_rows is not None:
                self.store.replace_rent_roll_rows(ctx.tenant_id, ctx.case_id, ctx.document_id, output.rent_roll_rows)

        results = self.store.upsert_facts(
            FactInput(
                tenant_id=ctx.tenant_id,
                case_id=ctx.case_id,
                source_document_id=ctx.document_id,
                fact_type=extractor.fact_type,
                fact_key=item.fact_key,
                value_num=item.value,
                value_text=item.value_text,
                confidence=item.confidence,
                period_start=item.period.start,
                period_end=item.period.end,
                provenance=item.provenance,
            )
            for item in items
        )
        written = sum(1 for r in results if r.ok)

        LedgerEvent.record(
            self.db,
            ctx.tenant_id,
            ctx.case_id,
            "extract.routed",
            f"{extractor.fact_type} extraction wrote {written} facts",
            meta={
                "document_id": ctx.document_id,
                "extractor": extractor.extractor_id(self.strategy.mode),
                "path": output.path,
                "facts_written": written,
                "rows_written": len(output.rent_roll_rows or []),
            },
        )
        self.db.commit()
        return written

    def _record_event(
        self,
        ctx: ExtractionContext,
        event_key: str,
        message: str,
        severity: LedgerSeverity,
        meta: Dict[str, Any],
    ) -> None:
        LedgerEvent.record(self.db, ctx.tenant_id, ctx.case_id, event_key, message, severity=severity, meta=meta)
        self.db.commit()
