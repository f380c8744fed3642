"""
Access modes and capability gates.

Every caller runs in exactly one mode. A mode maps to a fixed set of nine
capabilities; examiner mode can read and verify but never write or generate.
Examiner grants add a per-request scope check on top of the mode.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Mapping, Optional

import structlog

from loanspread.exceptions import CapabilityDeniedError, GrantScopeError
from loanspread.models.access import ExaminerGrant
from loanspread.utils.clock import utcnow

logger = structlog.get_logger(__name__)


class AccessMode(str, Enum):
    """Caller modes."""
    BUILDER_OBSERVER = "builder_observer"  # Internal diagnostics and replay
    BANKER_COPILOT = "banker_copilot"      # Operators running the pipeline
    EXAMINER_PORTAL = "examiner_portal"    # Regulators, read and verify only


DEFAULT_MODE = AccessMode.BANKER_COPILOT

COPILOT_ROLES = frozenset(["super_admin", "bank_admin", "underwriter"])
EXAMINER_ROLE = "examiner"

ALL_AREAS = "all"

# capability -> modes allowed to use it
CAPABILITIES: Dict[str, frozenset] = {
    "can_view_diagnostics": frozenset([AccessMode.BUILDER_OBSERVER]),
    "can_replay_case": frozenset([AccessMode.BUILDER_OBSERVER]),
    "can_validate_case": frozenset([AccessMode.BUILDER_OBSERVER, AccessMode.BANKER_COPILOT]),
    "can_generate_draft_emails": frozenset([AccessMode.BANKER_COPILOT]),
    "can_download_examiner_drop": frozenset([AccessMode.BANKER_COPILOT]),
    "can_view_copilot_card": frozenset([AccessMode.BANKER_COPILOT]),
    "can_verify_integrity": frozenset(AccessMode),
    "can_access_observer_panel": frozenset([AccessMode.BUILDER_OBSERVER]),
    "can_access_examiner_portal": frozenset([AccessMode.EXAMINER_PORTAL]),
}


def parse_mode(value: Optional[str]) -> Optional[AccessMode]:
    if not value:
        return None
    try:
        return AccessMode(value.strip().lower())
    except ValueError:
        logger.warning("access_mode_unrecognized", value=value)
        return None


def resolve_mode(
    override: Optional[str] = None,
    has_examiner_grant: bool = False,
    role: Optional[str] = None,
    is_development: bool = False,
) -> AccessMode:
    """
    Mode for a caller.

    Precedence: explicit override, active examiner grant, role, environment
    default (builder_observer in development), then banker_copilot.
    """
    mode = parse_mode(override)
    if mode is not None:
        return mode
    if has_examiner_grant:
        return AccessMode.EXAMINER_PORTAL
    role = (role or "").strip().lower()
    if role == EXAMINER_ROLE:
        return AccessMode.EXAMINER_PORTAL
    if role in COPILOT_ROLES:
        return AccessMode.BANKER_COPILOT
    if is_development:
        return AccessMode.BUILDER_OBSERVER
    return DEFAULT_MODE


def gates_for(mode: AccessMode) -> Dict[str, bool]:
    """All nine capabilities for a mode, always every key."""
    return {capability: mode in modes for capability, modes in CAPABILITIES.items()}


def is_allowed(mode: AccessMode, capability: str) -> bool:
    if capability not in CAPABILITIES:
        raise KeyError(f"Unknown capability: {capability}")
    return mode in CAPABILITIES[capability]


def require_capability(mode: AccessMode, capability: str) -> None:
    """
    Raises:
        CapabilityDeniedError: The mode lacks the capability.
    """
    if not is_allowed(mode, capability):
        logger.warning("capability_denied", capability=capability, mode=mode.value)
        raise CapabilityDeniedError(capability, mode.value)


# Examiner grants

def extract_grant_id(query_params: Mapping[str, Any], authorization: Optional[str]) -> Optional[str]:
    """grant_id query parameter, else a Bearer token."""
    grant_id = query_params.get("grant_id")
    if grant_id:
        return grant_id
    if authorization and authorization.startswith("Bearer "):
        return authorization[len("Bearer "):].strip() or None
    return None


def validate_grant_scope(
    grant: ExaminerGrant,
    case_id: str,
    area: str,
    now: Optional[datetime] = None,
) -> None:
    """
    Check one request against a grant's scope.

    Raises:
        GrantScopeError: Inactive grant, case outside the grant, or area not granted.
    """
    now = now or utcnow()
    if not grant.is_active(now):
        raise GrantScopeError("Grant is no longer active (expired or revoked).")
    case_ids = grant.case_ids or []
    if case_ids and case_id not in case_ids:
        raise GrantScopeError(f"Case {case_id} is not in grant scope.")
    read_areas = grant.read_areas or []
    if ALL_AREAS not in read_areas and area not in read_areas:
        raise GrantScopeError(f'Area "{area}" is not in grant scope.')


def can_examiner_download(grant: ExaminerGrant) -> bool:
    return grant.allow_downloads is True
