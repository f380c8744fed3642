"""
Detached (best-effort) side effects.

A detached task is called inline but may never affect its caller: any exception
is logged and swallowed, and the caller only learns whether it ran cleanly.
Heartbeat facts, zero-fact signals and placeholder spreads go through here.
"""
from typing import Any, Callable, Optional

import structlog

logger = structlog.get_logger(__name__)


def run_detached(
    name: str,
    fn: Callable[..., Any],
    *args: Any,
    cleanup: Optional[Callable[[], Any]] = None,
    **kwargs: Any,
) -> bool:
    """
    Run fn(*args, **kwargs), logging and swallowing any failure.

    Args:
        name: Short task name for logs.
        fn: Callable to run.
        cleanup: Called after a failure (e.g. session.rollback). Its own errors are logged too.

    Returns:
        True if fn completed without raising.
    """
    try:
        fn(*args, **kwargs)
        return True
    except Exception as e:
        logger.warning("detached_task_failed", task=name, error=str(e), error_type=type(e).__name__)
        if cleanup is not None:
            try:
                cleanup()
            except Exception as cleanup_error:
                logger.warning("detached_cleanup_failed", task=name, error=str(cleanup_error))
        return False
