"""
Health check endpoints.
"""
import structlog
from fastapi import APIRouter, Depends
from pydantic import BaseModel
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from loanspread.database import get_db
from loanspread.utils.clock import iso_timestamp

logger = structlog.get_logger(__name__)

router = APIRouter()

VERSION = "1.0.0"


class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    timestamp: str
    version: str = VERSION


class ReadinessResponse(BaseModel):
    """Readiness check response with component status."""
    status: str
    database: str
    timestamp: str


@router.get("/health", response_model=HealthResponse)
async def health_check() -> HealthResponse:
    """Returns 200 if the server is running."""
    return HealthResponse(status="healthy", timestamp=iso_timestamp())


@router.get("/ready", response_model=ReadinessResponse)
async def readiness_check(db: Session = Depends(get_db)) -> ReadinessResponse:
    """Checks the database before reporting ready."""
    try:
        db.execute(text("SELECT 1"))
        database = "ok"
    except SQLAlchemyError as e:
        logger.error("readiness_database_failed", error=str(e))
        database = "unavailable"
    return ReadinessResponse(
        status="ready" if database == "ok" else "not_ready",
        database=database,
        timestamp=iso_timestamp(),
    )
