"""
Spread API routes.
"""
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from loanspread.api.deps import AccessContext, get_access_context, require_capability
from loanspread.config import Settings, get_settings
from loanspread.database import get_db
from loanspread.exceptions import SpreadNotFoundError
from loanspread.models.spread import StoredSpread
from loanspread.services.pipeline import enqueue_spread_recompute

router = APIRouter()

SPREADS_AREA = "spreads"


class RecomputeRequest(BaseModel):
    """Spread types to re-render; all registered types when omitted."""
    spread_types: Optional[List[str]] = None


@router.post(
    "/cases/{case_id}/spreads/recompute",
    summary="Recompute spreads",
    description="Queue a re-render of the case's spreads. Requests merge into a queued render job.",
    status_code=202,
)
async def recompute_spreads(
    case_id: str,
    request: Optional[RecomputeRequest] = Body(default=None),
    context: AccessContext = Depends(require_capability("can_validate_case")),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> JSONResponse:
    result = enqueue_spread_recompute(
        db,
        context.tenant_id,
        case_id,
        request.spread_types if request is not None else None,
        max_attempts=settings.job_max_attempts,
    )
    return JSONResponse(status_code=202 if result.ok else 200, content=result.to_dict())


@router.get(
    "/cases/{case_id}/spreads/{spread_type}",
    summary="Get stored spread",
)
async def get_spread(
    case_id: str,
    spread_type: str,
    context: AccessContext = Depends(get_access_context),
    db: Session = Depends(get_db),
) -> Dict[str, Any]:
    context.check_case_scope(case_id, SPREADS_AREA)
    spread = (
        db.query(StoredSpread)
        .filter(
            StoredSpread.tenant_id == context.tenant_id,
            StoredSpread.case_id == case_id,
            StoredSpread.spread_type == spread_type.upper(),
        )
        .first()
    )
    if spread is None:
        raise SpreadNotFoundError(case_id, spread_type.upper())
    return {
        "case_id": case_id,
        "spread_type": spread.spread_type,
        "status": spread.status.value,
        "generated_at": spread.generated_at.isoformat() if spread.generated_at else None,
        "error": spread.error_message,
        "payload": spread.payload,
    }
