"""
Integrity API routes.

Verification is read-only and open to every mode, examiners included.
"""
import base64
import binascii
from typing import Any, Dict, Optional, Union

import structlog
from fastapi import APIRouter, Depends, File, UploadFile
from pydantic import BaseModel, Field

from loanspread.api.deps import AccessContext, require_capability
from loanspread.exceptions import ValidationError
from loanspread.services.audit import IntegrityVerifier

logger = structlog.get_logger(__name__)

router = APIRouter()


class VerifyRequest(BaseModel):
    """Manifest plus the content to check it against."""
    manifest: Dict[str, Any]
    contents: Dict[str, str] = Field(default_factory=dict, description="Path -> UTF-8 text content")
    contents_base64: Dict[str, str] = Field(default_factory=dict, description="Path -> base64 binary content")
    snapshots: Optional[Dict[str, Any]] = Field(default=None, description="Path -> structured snapshot")


def _decode_contents(request: VerifyRequest) -> Dict[str, Union[str, bytes]]:
    contents: Dict[str, Union[str, bytes]] = dict(request.contents)
    errors = []
    for path, encoded in request.contents_base64.items():
        try:
            contents[path] = base64.b64decode(encoded, validate=True)
        except (binascii.Error, ValueError):
            errors.append({"field": f"contents_base64.{path}", "message": "Not valid base64"})
    if errors:
        raise ValidationError("Invalid artifact content", errors=errors)
    return contents


@router.post(
    "/integrity/verify",
    summary="Verify artifact set",
    description="Re-derive every artifact hash and compare it with the manifest.",
)
async def verify_artifacts(
    request: VerifyRequest,
    context: AccessContext = Depends(require_capability("can_verify_integrity")),
) -> Dict[str, Any]:
    result = IntegrityVerifier().verify(request.manifest, _decode_contents(request), request.snapshots)
    logger.info("integrity_verify_requested", mode=context.mode.value, valid=result.valid)
    return result.to_dict()


@router.post(
    "/integrity/verify-zip",
    summary="Verify examiner drop archive",
    description="Verify an uploaded drop zip against the manifest it carries.",
)
async def verify_drop_zip(
    file: UploadFile = File(...),
    context: AccessContext = Depends(require_capability("can_verify_integrity")),
) -> Dict[str, Any]:
    data = await file.read()
    result = IntegrityVerifier().verify_zip(data)
    logger.info("integrity_verify_zip_requested", mode=context.mode.value, filename=file.filename, valid=result.valid)
    return result.to_dict()
