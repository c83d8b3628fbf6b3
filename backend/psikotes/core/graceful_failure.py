"""
Graceful failure utilities.

A context manager for operations whose failure must not block the main flow:
attempt the operation, log any exception with context, and continue.

Used by the statistics scheduler to isolate its jobs from each other, and by
the answer store for auto-save validation, where losing participant input
is worse than storing a malformed draft.

Usage:
    from psikotes.core.graceful_failure import graceful_failure

    with graceful_failure("expire sessions", logger, context={"run": 3}):
        await expire_sessions(db)
"""

import logging
from contextlib import contextmanager
from typing import Any, Callable, Generator, Optional


@contextmanager
def graceful_failure(
    operation_name: str,
    logger: logging.Logger,
    *,
    log_level: int = logging.WARNING,
    exc_info: bool = False,
    context: Optional[dict[str, Any]] = None,
    on_error: Optional[Callable[[Exception], None]] = None,
) -> Generator[None, None, None]:
    """Context manager for non-critical operations that should not block execution.

    Unlike the ``AssessmentError`` path, this does NOT propagate the error or
    produce an HTTP response.

    Args:
        operation_name: Human-readable name of the operation for logging
            (e.g., "recompute performance stats").
        logger: The logger instance to use for logging errors.
        log_level: Logging level for error messages. Defaults to WARNING.
        exc_info: Whether to include exception traceback in log.
        context: Optional dictionary of additional context to include in log message.
        on_error: Optional callback receiving the swallowed exception, e.g. to
            record it in a run summary or send it to error tracking.

    Yields:
        None - the context manager is used for its side effects only.
    """
    try:
        yield
    except Exception as e:
        if context:
            context_str = ", ".join(f"{k}={v}" for k, v in context.items())
            message = f"Failed to {operation_name} ({context_str}): {e}"
        else:
            message = f"Failed to {operation_name}: {e}"

        logger.log(log_level, message, exc_info=exc_info)

        if on_error is not None:
            try:
                on_error(e)
            except Exception:
                logger.debug(f"Error callback for {operation_name} failed")
