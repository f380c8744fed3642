"""
Audit API routes.

Decision snapshot export and examiner drop generation. Snapshot hashes travel
in response headers, never in the body they hash.
"""
from typing import Any, Dict, Optional

import structlog
from fastapi import APIRouter, Body, Depends, Query
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel
from sqlalchemy.orm import Session

from loanspread.api.deps import AccessContext, get_access_context, require_capability
from loanspread.config import Settings, get_settings
from loanspread.database import get_db
from loanspread.exceptions import GrantScopeError
from loanspread.models.decision import DecisionSnapshotRecord
from loanspread.services.access import AccessMode, can_examiner_download
from loanspread.services.audit import AuditSnapshotBuilder, ExaminerDropBuilder

logger = structlog.get_logger(__name__)

router = APIRouter()

DECISION_AREA = "decision"


class ExaminerDropRequest(BaseModel):
    """Optional inputs for an examiner drop."""
    borrower_audit: Optional[Dict[str, Any]] = None


def _latest_snapshot(db: Session, tenant_id: str, case_id: str) -> Optional[DecisionSnapshotRecord]:
    return (
        db.query(DecisionSnapshotRecord)
        .filter(DecisionSnapshotRecord.tenant_id == tenant_id, DecisionSnapshotRecord.case_id == case_id)
        .order_by(DecisionSnapshotRecord.sequence.desc())
        .first()
    )


@router.get(
    "/cases/{case_id}/decision-snapshot",
    summary="Get decision snapshot",
    description=(
        "Latest persisted decision snapshot for the case, or a freshly assembled "
        "unpersisted one when none exists. The canonical hash is in X-Snapshot-Hash."
    ),
)
async def get_decision_snapshot(
    case_id: str,
    download: bool = Query(False, description="Return as a file attachment"),
    context: AccessContext = Depends(get_access_context),
    db: Session = Depends(get_db),
) -> JSONResponse:
    context.check_case_scope(case_id, DECISION_AREA)
    if download and context.mode == AccessMode.EXAMINER_PORTAL and not can_examiner_download(context.grant):
        raise GrantScopeError("Grant does not allow downloads.")

    record = _latest_snapshot(db, context.tenant_id, case_id)
    if record is not None:
        body, snapshot_hash, snapshot_id = record.body, record.snapshot_hash, str(record.id)
    else:
        result = AuditSnapshotBuilder(db, context.tenant_id).collect(case_id)
        body, snapshot_hash, snapshot_id = result.snapshot, result.snapshot_hash, result.snapshot_id

    headers = {"X-Snapshot-Hash": snapshot_hash, "X-Snapshot-Id": snapshot_id}
    if download:
        headers["Content-Disposition"] = f'attachment; filename="decision-snapshot-{case_id}.json"'
    logger.info(
        "decision_snapshot_served",
        case_id=case_id,
        mode=context.mode.value,
        persisted=record is not None,
        snapshot_hash=snapshot_hash,
    )
    return JSONResponse(content=body, headers=headers)


@router.post(
    "/cases/{case_id}/decision-snapshot",
    summary="Build decision snapshot",
    description="Assemble and append a new decision snapshot for the case.",
    status_code=201,
)
async def build_decision_snapshot(
    case_id: str,
    context: AccessContext = Depends(require_capability("can_validate_case")),
    db: Session = Depends(get_db),
) -> JSONResponse:
    result = AuditSnapshotBuilder(db, context.tenant_id).build(case_id)
    return JSONResponse(
        status_code=201,
        content=result.snapshot,
        headers={"X-Snapshot-Hash": result.snapshot_hash, "X-Snapshot-Id": result.snapshot_id},
    )


@router.post(
    "/cases/{case_id}/examiner-drop",
    summary="Generate examiner drop",
    description="Build a fresh snapshot and return the examiner drop as a zip archive.",
)
async def generate_examiner_drop(
    case_id: str,
    request: Optional[ExaminerDropRequest] = Body(default=None),
    context: AccessContext = Depends(require_capability("can_download_examiner_drop")),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> Response:
    borrower_audit = request.borrower_audit if request is not None else None
    drop = ExaminerDropBuilder(db, context.tenant_id).build(case_id, borrower_audit=borrower_audit)
    drop.save(settings.drop_output_dir)
    return Response(
        content=drop.to_zip(),
        media_type="application/zip",
        headers={
            "Content-Disposition": f'attachment; filename="examiner-drop-{case_id}.zip"',
            "X-Drop-Hash": drop.drop_hash,
            "X-Snapshot-Hash": drop.snapshot.snapshot_hash,
            "X-Snapshot-Id": drop.snapshot.snapshot_id,
        },
    )
