"""Sentry error tracking.

Initialised once from the application lifespan. ``capture_error`` is safe to
call whether or not Sentry is configured; it is a no-op until ``init`` has
succeeded.
"""

import logging
from datetime import date, datetime
from enum import Enum
from typing import Any, Optional

import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration
from sentry_sdk.integrations.logging import LoggingIntegration

from psikotes.core.config import settings

logger = logging.getLogger(__name__)

_initialized = False


def _serialize_value(value: Any) -> Any:
    """Convert context values to JSON-compatible types."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): _serialize_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_serialize_value(item) for item in value]
    return str(value)


def init_error_tracking() -> bool:
    """Initialize the Sentry SDK with logging and FastAPI integrations.

    Returns:
        True if Sentry was initialized, False if skipped (no DSN) or failed.
    """
    global _initialized

    if not settings.SENTRY_DSN:
        logger.debug("Sentry initialization skipped (DSN not configured)")
        return False

    try:
        sentry_sdk.init(
            dsn=settings.SENTRY_DSN,
            environment=settings.ENV,
            release=settings.APP_VERSION,
            traces_sample_rate=settings.SENTRY_TRACES_SAMPLE_RATE,
            integrations=[
                LoggingIntegration(level=None, event_level=None),
                FastApiIntegration(transaction_style="endpoint"),
            ],
            send_default_pii=False,
        )
    except Exception as e:
        logger.error(f"Failed to initialize Sentry: {e}", exc_info=True)
        return False

    _initialized = True
    logger.info(
        f"Sentry initialized for environment '{settings.ENV}' "
        f"with {settings.SENTRY_TRACES_SAMPLE_RATE * 100:.0f}% trace sampling"
    )
    return True


def capture_error(
    exception: BaseException,
    *,
    context: Optional[dict[str, Any]] = None,
    tags: Optional[dict[str, str]] = None,
    level: str = "error",
) -> Optional[str]:
    """Capture an exception and send it to Sentry.

    Args:
        exception: The exception to capture.
        context: Additional context; values are converted to JSON-safe types.
        tags: Tags for filtering in Sentry.
        level: Sentry severity level.

    Returns:
        Event ID if captured, None if Sentry is not initialized.
    """
    if not _initialized:
        return None

    with sentry_sdk.new_scope() as scope:
        if context:
            scope.set_context("additional", _serialize_value(context))
        for key, value in (tags or {}).items():
            scope.set_tag(key, value)
        scope.level = level
        return sentry_sdk.capture_exception(exception)


def flush(timeout: float = 2.0) -> None:
    """Flush pending events on shutdown."""
    if _initialized:
        sentry_sdk.flush(timeout=timeout)
