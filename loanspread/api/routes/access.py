"""
Access API routes.

Lets a client discover which surfaces to show for the caller's mode.
"""
from typing import Dict, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from loanspread.api.deps import AccessContext, get_access_context

router = APIRouter()


class CapabilitiesResponse(BaseModel):
    """Resolved mode and its capability map."""
    mode: str
    tenant_id: str
    role: Optional[str] = None
    grant_id: Optional[str] = None
    capabilities: Dict[str, bool]


@router.get(
    "/access/capabilities",
    response_model=CapabilitiesResponse,
    summary="Get capabilities",
    description="Resolve the caller's access mode and return all nine capability flags.",
)
async def get_capabilities(context: AccessContext = Depends(get_access_context)) -> CapabilitiesResponse:
    return CapabilitiesResponse(
        mode=context.mode.value,
        tenant_id=context.tenant_id,
        role=context.role,
        grant_id=str(context.grant.id) if context.grant is not None else None,
        capabilities=context.gates,
    )
