"""
Logging middleware and utilities.

Correlation ids tie together every log line of one HTTP request or one leased
job. Processors redact secrets and borrower identifiers before anything is
rendered.
"""
import asyncio
import functools
import re
import time
import uuid
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Callable, Iterator

import structlog
from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware

# Request id for HTTP calls, job id for workers
correlation_id: ContextVar[str] = ContextVar("correlation_id", default="")

logger = structlog.get_logger(__name__)

REDACTED = "[REDACTED]"

# Keys whose values are never logged
SENSITIVE_FIELDS = {
    "password", "token", "authorization", "api_key", "secret",
    "grant_id", "ssn", "social_security", "ein", "tax_id",
    "account_number", "routing_number", "date_of_birth",
}

# Free-text values are scrubbed of SSN and EIN shaped numbers
SSN_PATTERN = re.compile(r"\b\d{3}-\d{2}-\d{4}\b")
EIN_PATTERN = re.compile(r"\b\d{2}-\d{7}\b")

MAX_DEPTH = 5
SLOW_REQUEST_MS = 1000


def get_correlation_id() -> str:
    """Correlation id of the current request or job."""
    return correlation_id.get()


@contextmanager
def correlation_scope(value: str) -> Iterator[str]:
    """Set the correlation id for the duration of a block (used by workers)."""
    token = correlation_id.set(value)
    try:
        yield value
    finally:
        correlation_id.reset(token)


def _is_sensitive(key: str) -> bool:
    key_lower = key.lower()
    return any(sensitive in key_lower for sensitive in SENSITIVE_FIELDS)


def scrub_text(value: str) -> str:
    return EIN_PATTERN.sub(REDACTED, SSN_PATTERN.sub(REDACTED, value))


def redact_sensitive_data(data: Any, depth: int = 0) -> Any:
    """
    Recursively redact sensitive keys and identifier-shaped text.

    Args:
        data: Value to redact (dicts and lists are walked).
        depth: Current recursion depth; deeper values are returned as is.
    """
    if depth > MAX_DEPTH:
        return data
    if isinstance(data, dict):
        return {
            key: REDACTED if isinstance(key, str) and _is_sensitive(key)
            else redact_sensitive_data(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [redact_sensitive_data(item, depth + 1) for item in data]
    if isinstance(data, str):
        return scrub_text(data)
    return data


class CorrelationIdMiddleware(BaseHTTPMiddleware):
    """Middleware that adds correlation ID to each request."""

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
        correlation_id.set(request_id)

        response = await call_next(request)
        response.headers["X-Correlation-ID"] = request_id
        return response


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware that logs all requests with timing information."""

    SKIP_PATHS = {"/health", "/docs", "/redoc", "/openapi.json"}

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if request.url.path in self.SKIP_PATHS:
            return await call_next(request)

        start_time = time.perf_counter()
        request_info = {
            "method": request.method,
            "path": request.url.path,
            "client_ip": request.client.host if request.client else None,
            "role": request.headers.get("X-User-Role"),
        }
        logger.info("request_started", **request_info)

        try:
            response = await call_next(request)
        except Exception as e:
            logger.error(
                "request_failed",
                **request_info,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(start_time),
            )
            raise

        duration_ms = _elapsed_ms(start_time)
        logger.info("request_completed", **request_info, status_code=response.status_code, duration_ms=duration_ms)
        if duration_ms > SLOW_REQUEST_MS:
            logger.warning("slow_request", **request_info, duration_ms=duration_ms)
        return response


def _elapsed_ms(start_time: float) -> float:
    return round((time.perf_counter() - start_time) * 1000, 2)


def log_performance(operation_name: str):
    """
    Decorator to log duration of a sync or async callable.

    Usage:
        @log_performance("render_spreads")
        def render(...):
            ...
    """
    def decorator(func: Callable) -> Callable:
        def _done(start_time: float) -> None:
            logger.info("operation_completed", operation=operation_name, duration_ms=_elapsed_ms(start_time))

        def _failed(start_time: float, e: Exception) -> None:
            logger.error(
                "operation_failed",
                operation=operation_name,
                error=str(e),
                error_type=type(e).__name__,
                duration_ms=_elapsed_ms(start_time),
            )

        @functools.wraps(func)
        async def async_wrapper(*args, **kwargs) -> Any:
            start_time = time.perf_counter()
            try:
                result = await func(*args, **kwargs)
            except Exception as e:
                _failed(start_time, e)
                raise
            _done(start_time)
            return result

        @functools.wraps(func)
        def sync_wrapper(*args, **kwargs) -> Any:
            start_time = time.perf_counter()
            try:
                result = func(*args, **kwargs)
            except Exception as e:
                _failed(start_time, e)
                raise
            _done(start_time)
            return result

        if asyncio.iscoroutinefunction(func):
            return async_wrapper
        return sync_wrapper

    return decorator


def add_correlation_id_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that adds the correlation ID to every entry."""
    value = get_correlation_id()
    if value:
        event_dict.setdefault("correlation_id", value)
    return event_dict


def redact_sensitive_processor(logger: Any, method_name: str, event_dict: dict) -> dict:
    """Structlog processor that redacts sensitive data from log entries."""
    return redact_sensitive_data(event_dict)


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog once per process (API and workers)."""
    import logging

    level = getattr(logging, log_level.upper(), logging.INFO)
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            add_correlation_id_processor,
            redact_sensitive_processor,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if json_output else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    logging.basicConfig(format="%(message)s", level=level)
