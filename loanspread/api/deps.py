"""
Request-scoped access dependencies.

The caller's mode is resolved on every request from the override setting, an
examiner grant (query parameter or Bearer token) and the role header set by
the upstream gateway.
"""
import uuid
from dataclasses import dataclass
from typing import Dict, Optional

import structlog
from fastapi import Depends, Header, Request
from sqlalchemy.orm import Session

from loanspread.config import Settings, get_settings
from loanspread.database import get_db
from loanspread.exceptions import GrantScopeError
from loanspread.models.access import ExaminerGrant
from loanspread.services.access import (
    AccessMode,
    extract_grant_id,
    gates_for,
    require_capability as check_capability,
    resolve_mode,
    validate_grant_scope,
)

logger = structlog.get_logger(__name__)

DEFAULT_TENANT = "default"


@dataclass
class AccessContext:
    """Who is calling, in which mode."""

    tenant_id: str
    mode: AccessMode
    role: Optional[str] = None
    grant: Optional[ExaminerGrant] = None

    @property
    def gates(self) -> Dict[str, bool]:
        return gates_for(self.mode)

    def check_case_scope(self, case_id: str, area: str) -> None:
        """Examiner requests must stay inside their grant; other modes pass."""
        if self.mode != AccessMode.EXAMINER_PORTAL:
            return
        if self.grant is None:
            raise GrantScopeError("Examiner access requires a grant.")
        validate_grant_scope(self.grant, case_id, area)


def get_tenant_id(x_tenant_id: Optional[str] = Header(default=None)) -> str:
    return (x_tenant_id or DEFAULT_TENANT).strip() or DEFAULT_TENANT


def _lookup_grant(db: Session, tenant_id: str, grant_id: Optional[str]) -> Optional[ExaminerGrant]:
    if not grant_id:
        return None
    try:
        grant_uuid = uuid.UUID(grant_id)
    except ValueError:
        # A Bearer token that is not a grant id belongs to some other scheme.
        return None
    return (
        db.query(ExaminerGrant)
        .filter(ExaminerGrant.id == grant_uuid, ExaminerGrant.tenant_id == tenant_id)
        .first()
    )


async def get_access_context(
    request: Request,
    tenant_id: str = Depends(get_tenant_id),
    x_user_role: Optional[str] = Header(default=None),
    authorization: Optional[str] = Header(default=None),
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> AccessContext:
    """
    Resolve the caller's access context.

    A known grant puts the caller in examiner mode even when it has lapsed, so
    an expired grant is denied by the scope check instead of falling back to a
    broader mode.
    """
    grant = _lookup_grant(db, tenant_id, extract_grant_id(request.query_params, authorization))
    mode = resolve_mode(
        override=settings.access_mode_override,
        has_examiner_grant=grant is not None,
        role=x_user_role,
        is_development=settings.is_development,
    )
    return AccessContext(tenant_id=tenant_id, mode=mode, role=x_user_role, grant=grant)


def require_capability(capability: str):
    """
    Dependency factory for capability-based access control.

    Args:
        capability: One of the gated capability keys

    Returns:
        Dependency function that checks the caller's mode
    """
    async def capability_checker(
        context: AccessContext = Depends(get_access_context),
    ) -> AccessContext:
        check_capability(context.mode, capability)
        return context

    return capability_checker
