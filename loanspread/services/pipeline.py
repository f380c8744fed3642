"""
Pipeline wiring: enqueueing jobs and the handlers the scheduler dispatches to.

Handlers re-run from scratch on every attempt. Everything they write is an
upsert or a wholesale replace, so a retried job converges on the same rows.
"""
import uuid
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import structlog
from sqlalchemy.orm import Session

from loanspread.config import Settings
from loanspread.exceptions import DocumentNotFoundError, ValidationError
from loanspread.models.audit import LedgerEvent, LedgerSeverity
from loanspread.models.document import DocumentStatus, SourceDocument
from loanspread.models.job import ACTIVE_STATUSES, JobKind, JobStatus, PipelineJob
from loanspread.models.spread import SpreadStatus, StoredSpread
from loanspread.services.detached import run_detached
from loanspread.services.extraction import ExtractionRouter
from loanspread.services.extraction.strategies import strategy_from_settings
from loanspread.services.fact_store import FactStore
from loanspread.services.metric_resolver import MetricResolver
from loanspread.services.spreads import SPREAD_TYPES, TEMPLATES, attach_validation, render_spread
from loanspread.utils.clock import Clock, utcnow

logger = structlog.get_logger(__name__)


@dataclass
class EnqueueResult:
    """Outcome of a spread recompute request."""

    ok: bool
    job_id: Optional[str] = None
    spread_types: List[str] = field(default_factory=list)
    skipped_types: List[str] = field(default_factory=list)
    waiting_on_facts: bool = False
    merged: bool = False
    # spread type -> unmet prerequisites
    waiting_types: Dict[str, List[str]] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "job_id": self.job_id,
            "spread_types": self.spread_types,
            "skipped_types": self.skipped_types,
            "waiting_on_facts": self.waiting_on_facts,
            "merged": self.merged,
            "waiting_types": self.waiting_types,
        }


def enqueue_document_extraction(
    db: Session,
    document: SourceDocument,
    max_attempts: int = 3,
    clock: Clock = utcnow,
) -> PipelineJob:
    """Queue extraction for a document, reusing an active job for the same document."""
    document_id = str(document.id)
    for job in (
        db.query(PipelineJob)
        .filter(
            PipelineJob.case_id == document.case_id,
            PipelineJob.kind == JobKind.EXTRACT_DOCUMENT,
            PipelineJob.status.in_(ACTIVE_STATUSES),
        )
        .all()
    ):
        if (job.kind_metadata or {}).get("document_id") == document_id:
            logger.info("extraction_already_queued", document_id=document_id, job_id=str(job.id))
            return job

    now = clock()
    job = PipelineJob(
        tenant_id=document.tenant_id,
        case_id=document.case_id,
        kind=JobKind.EXTRACT_DOCUMENT,
        max_attempts=max_attempts,
        next_run_at=now,
        created_at=now,
        updated_at=now,
        kind_metadata={"document_id": document_id},
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("extraction_enqueued", document_id=document_id, job_id=str(job.id))
    return job


def _upsert_placeholders(db: Session, tenant_id: str, case_id: str, spread_types: Iterable[str]) -> None:
    for spread_type in spread_types:
        spread = (
            db.query(StoredSpread)
            .filter(
                StoredSpread.tenant_id == tenant_id,
                StoredSpread.case_id == case_id,
                StoredSpread.spread_type == spread_type,
            )
            .first()
        )
        if spread is None:
            db.add(StoredSpread(
                tenant_id=tenant_id,
                case_id=case_id,
                spread_type=spread_type,
                status=SpreadStatus.QUEUED,
            ))
        elif spread.status != SpreadStatus.READY:
            spread.status = SpreadStatus.QUEUED
    db.commit()


def enqueue_spread_recompute(
    db: Session,
    tenant_id: str,
    case_id: str,
    spread_types: Optional[Iterable[str]] = None,
    max_attempts: int = 3,
    clock: Clock = utcnow,
) -> EnqueueResult:
    """
    Request a re-render of spreads for a case.

    Unknown spread types are skipped, and nothing is queued until the case has
    at least one substantive fact. Each template's own prerequisites are then
    checked; types still waiting on facts are reported, not queued. Requests
    merge into a QUEUED render job for the case. A RUNNING job may already
    have read its spread types, so a request arriving mid-run gets a new job.
    """
    requested = [str(t).strip().upper() for t in (spread_types or SPREAD_TYPES) if str(t).strip()]
    valid = list(dict.fromkeys(t for t in requested if t in TEMPLATES))
    skipped = sorted({t for t in requested if t not in TEMPLATES})

    if skipped:
        LedgerEvent.record(
            db, tenant_id, case_id, "spread.type_skipped",
            f"Unknown spread types skipped: {', '.join(skipped)}",
            severity=LedgerSeverity.WARNING,
            meta={"skipped_types": skipped},
        )
        db.commit()
        logger.warning("spread_types_skipped", case_id=case_id, skipped=skipped)
    if not valid:
        return EnqueueResult(ok=False, skipped_types=skipped)

    store = FactStore(db)
    if not store.has_substantive_facts(tenant_id, case_id):
        LedgerEvent.record(
            db, tenant_id, case_id, "spread.waiting_on_facts",
            "Spread recompute deferred until the case has extracted facts",
            meta={"spread_types": valid},
        )
        db.commit()
        logger.info("spread_waiting_on_facts", case_id=case_id, spread_types=valid)
        return EnqueueResult(ok=False, spread_types=valid, skipped_types=skipped, waiting_on_facts=True)

    present_types = store.fact_types_for_case(tenant_id, case_id)
    rent_roll_row_count = store.rent_roll_row_count(tenant_id, case_id)
    ready, waiting = [], {}
    for spread_type in valid:
        prerequisites = TEMPLATES[spread_type].prerequisites
        missing = prerequisites.missing(present_types, rent_roll_row_count)
        if not missing:
            ready.append(spread_type)
            continue
        waiting[spread_type] = missing
        LedgerEvent.record(
            db, tenant_id, case_id, "spread.waiting_on_facts",
            f"{spread_type} prerequisites not met: {', '.join(missing)}",
            meta={"spread_type": spread_type, "missing": missing, "note": prerequisites.note},
        )
    if waiting:
        db.commit()
        logger.info("spread_prerequisites_unmet", case_id=case_id, waiting=waiting)
    if not ready:
        return EnqueueResult(
            ok=False, spread_types=[], skipped_types=skipped, waiting_on_facts=True, waiting_types=waiting
        )

    run_detached("spread_placeholders", _upsert_placeholders, db, tenant_id, case_id, ready, cleanup=db.rollback)

    now = clock()
    queued = (
        db.query(PipelineJob)
        .filter(
            PipelineJob.tenant_id == tenant_id,
            PipelineJob.case_id == case_id,
            PipelineJob.kind == JobKind.RENDER_SPREADS,
            PipelineJob.status == JobStatus.QUEUED,
        )
        .order_by(PipelineJob.created_at)
        .first()
    )
    if queued is not None:
        metadata = dict(queued.kind_metadata or {})
        merged_types = sorted(set(metadata.get("spread_types", [])) | set(ready))
        metadata["spread_types"] = merged_types
        queued.kind_metadata = metadata
        queued.updated_at = now
        db.commit()
        logger.info("spread_recompute_merged", case_id=case_id, job_id=str(queued.id), spread_types=merged_types)
        return EnqueueResult(
            ok=True, job_id=str(queued.id), spread_types=merged_types, skipped_types=skipped,
            merged=True, waiting_types=waiting,
        )

    job = PipelineJob(
        tenant_id=tenant_id,
        case_id=case_id,
        kind=JobKind.RENDER_SPREADS,
        max_attempts=max_attempts,
        next_run_at=now,
        created_at=now,
        updated_at=now,
        kind_metadata={"spread_types": sorted(ready)},
    )
    db.add(job)
    db.commit()
    db.refresh(job)
    logger.info("spread_recompute_enqueued", case_id=case_id, job_id=str(job.id), spread_types=sorted(ready))
    return EnqueueResult(
        ok=True, job_id=str(job.id), spread_types=sorted(ready), skipped_types=skipped, waiting_types=waiting
    )


# Handlers

def extract_document(db: Session, settings: Settings, job: PipelineJob, clock: Clock = utcnow) -> Dict[str, Any]:
    """
    EXTRACT_DOCUMENT handler.

    Raises:
        DocumentNotFoundError: The job references a missing document.
        ExternalServiceError: The legacy service failed; the job is retried.
    """
    document_id = (job.kind_metadata or {}).get("document_id")
    if not document_id:
        raise ValidationError("Extraction job has no document_id", errors=[{"field": "document_id"}])
    document = db.get(SourceDocument, uuid.UUID(str(document_id)))
    if document is None:
        raise DocumentNotFoundError(str(document_id))

    router = ExtractionRouter(
        db,
        strategy=strategy_from_settings(settings),
        zero_fact_warning_chars=settings.zero_fact_warning_chars,
    )
    outcome = router.extract(
        tenant_id=document.tenant_id,
        case_id=document.case_id,
        document_id=str(document.id),
        ocr_text=document.ocr_text,
        structured_fields=document.structured_fields,
        document_type=document.document_type,
        doc_type_hint=document.doc_type_hint,
        tax_year=document.tax_year,
    )

    document.status = DocumentStatus.FAILED if outcome.error else DocumentStatus.EXTRACTED
    document.error_message = outcome.error
    document.updated_at = clock()
    db.commit()

    if outcome.facts_written:
        enqueue_spread_recompute(
            db, document.tenant_id, document.case_id, SPREAD_TYPES,
            max_attempts=settings.job_max_attempts, clock=clock,
        )
    return outcome.to_dict()


def _stored_spread(db: Session, job: PipelineJob, spread_type: str) -> StoredSpread:
    spread = (
        db.query(StoredSpread)
        .filter(
            StoredSpread.tenant_id == job.tenant_id,
            StoredSpread.case_id == job.case_id,
            StoredSpread.spread_type == spread_type,
        )
        .first()
    )
    if spread is None:
        spread = StoredSpread(tenant_id=job.tenant_id, case_id=job.case_id, spread_type=spread_type)
        db.add(spread)
    return spread


def render_spreads(db: Session, job: PipelineJob, clock: Clock = utcnow) -> Dict[str, Any]:
    """
    RENDER_SPREADS handler: rebuild each requested spread and replace the stored copy.

    Spreads are stored before they are validated, so the financial snapshot
    behind the warnings already sees the values this job rendered.
    """
    spread_types = (job.kind_metadata or {}).get("spread_types") or list(SPREAD_TYPES)
    store = FactStore(db)
    facts = store.facts_for_case(job.tenant_id, job.case_id)
    rent_roll_rows = store.rent_roll_rows(job.tenant_id, job.case_id)

    stored: Dict[str, StoredSpread] = {}
    for spread_type in spread_types:
        now = clock()
        spread = _stored_spread(db, job, spread_type)
        spread.status = SpreadStatus.READY
        spread.payload = render_spread(spread_type, facts, generated_at=now, rent_roll_rows=rent_roll_rows)
        spread.error_message = None
        spread.generated_at = now
        stored[spread_type] = spread
    db.flush()

    financial_snapshot = MetricResolver(db, job.tenant_id, job.case_id).financial_snapshot()
    for spread in stored.values():
        spread.payload = attach_validation(spread.payload, financial_snapshot)
    db.commit()

    rendered = {spread_type: len(spread.payload["columns"]) for spread_type, spread in stored.items()}
    logger.info(
        "spreads_rendered",
        case_id=job.case_id,
        spread_types=list(rendered),
        missing_required=financial_snapshot["missing_required"],
    )
    return {"rendered": rendered, "fact_count": len(facts)}


def build_handlers(
    db: Session,
    settings: Settings,
    clock: Clock = utcnow,
) -> Dict[JobKind, Callable[[PipelineJob], Dict[str, Any]]]:
    """Handlers keyed by job kind, bound to one session."""
    return {
        JobKind.EXTRACT_DOCUMENT: lambda job: extract_document(db, settings, job, clock=clock),
        JobKind.RENDER_SPREADS: lambda job: render_spreads(db, job, clock=clock),
    }
