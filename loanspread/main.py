"""
FastAPI application entry point.

Configures the application with routes, middleware, and settings.
"""
import traceback

import sentry_sdk
import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration
from sentry_sdk.integrations.sqlalchemy import SqlalchemyIntegration

from loanspread.api.routes import access, audit, health, integrity, spreads
from loanspread.config import get_settings
from loanspread.database import init_db
from loanspread.exceptions import LoanSpreadError
from loanspread.middleware.logging import (
    CorrelationIdMiddleware,
    RequestLoggingMiddleware,
    configure_logging,
    redact_sensitive_data,
)

settings = get_settings()


def _filter_sensitive_data(event: dict) -> dict:
    """Filter sensitive data from Sentry events before sending."""
    if "request" in event and "data" in event["request"]:
        event["request"]["data"] = redact_sensitive_data(event["request"]["data"])
    if "request" in event and "headers" in event["request"]:
        event["request"]["headers"] = redact_sensitive_data(event["request"]["headers"])
    if "extra" in event:
        event["extra"] = redact_sensitive_data(event["extra"])
    return event


# Initialize Sentry for error tracking (must be done early)
if settings.sentry_dsn:
    sentry_sdk.init(
        dsn=settings.sentry_dsn,
        environment=settings.environment,
        release="loanspread@1.0.0",
        traces_sample_rate=0.1,
        integrations=[
            FastApiIntegration(transaction_style="endpoint"),
            SqlalchemyIntegration(),
            LoggingIntegration(level=None, event_level="ERROR"),
        ],
        # Don't send PII by default
        send_default_pii=False,
        before_send=lambda event, hint: _filter_sensitive_data(event),
    )

configure_logging(settings.log_level, json_output=not settings.debug)

logger = structlog.get_logger(__name__)

app = FastAPI(
    title="LoanSpread API",
    description="""
## Loan Document Spreading and Credit Audit API

LoanSpread turns extracted loan document data into financial spreads and
tamper-evident credit decision records.

### Surfaces

| Surface | Description |
|---------|-------------|
| Spreads | Queue spread re-renders and read stored spreads |
| Audit | Decision snapshots and examiner drops |
| Integrity | Verify a drop or artifact set against its manifest |
| Access | Resolve the caller's mode and capabilities |

Callers identify their tenant with `X-Tenant-ID` and their role with `X-User-Role`.
Examiners pass a grant id as `?grant_id=` or a Bearer token.
    """,
    version="1.0.0",
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_tags=[
        {"name": "Spreads", "description": "Spread recompute and retrieval"},
        {"name": "Audit", "description": "Decision snapshots and examiner drops"},
        {"name": "Integrity", "description": "Manifest verification"},
        {"name": "Access", "description": "Access modes and capabilities"},
        {"name": "Monitoring", "description": "Health checks"},
    ],
)

# Add logging middleware (order matters: correlation ID first)
app.add_middleware(RequestLoggingMiddleware)
app.add_middleware(CorrelationIdMiddleware)

# Add GZip compression for responses > 1KB
app.add_middleware(GZipMiddleware, minimum_size=1000)

# Include API routes
app.include_router(spreads.router, prefix="/api/v1", tags=["Spreads"])
app.include_router(audit.router, prefix="/api/v1", tags=["Audit"])
app.include_router(integrity.router, prefix="/api/v1", tags=["Integrity"])
app.include_router(access.router, prefix="/api/v1", tags=["Access"])
app.include_router(health.router, tags=["Monitoring"])


# Global Exception Handlers

@app.exception_handler(LoanSpreadError)
async def loanspread_exception_handler(request: Request, exc: LoanSpreadError):
    """Handle all LoanSpread custom exceptions."""
    logger.error(
        "loanspread_error",
        error_code=exc.error_code,
        message=exc.message,
        details=exc.details,
        path=str(request.url.path),
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions with consistent format."""
    sentry_sdk.capture_exception(exc)

    logger.error(
        "unhandled_error",
        error_type=type(exc).__name__,
        message=str(exc),
        path=str(request.url.path),
        traceback=traceback.format_exc(),
    )
    return JSONResponse(
        status_code=500,
        content={
            "error": True,
            "error_code": "LSP-999",
            "message": "An unexpected error occurred. Please try again.",
            "details": {"error_type": type(exc).__name__} if settings.debug else {},
        },
    )


@app.on_event("startup")
async def startup_event() -> None:
    """Initialize application on startup."""
    logger.info("loanspread_api_starting", debug=settings.debug, environment=settings.environment)

    if settings.sentry_dsn:
        logger.info("sentry_enabled", environment=settings.environment)
    else:
        logger.warning("sentry_not_configured")

    settings.drop_output_dir.mkdir(parents=True, exist_ok=True)
    init_db()

    logger.info("loanspread_api_started")


@app.on_event("shutdown")
async def shutdown_event() -> None:
    """Cleanup on application shutdown."""
    logger.info("loanspread_api_stopping")
