"""
Request/response logging middleware for tracking API interactions.
"""
import logging
import re
import time
import uuid
from typing import Callable, Optional

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from psikotes.core.logging_config import request_id_context

logger = logging.getLogger(__name__)

_ATTEMPT_PATH = re.compile(r"/attempts/(\d+)(?:/|$)")


def _attempt_id_from_path(path: str) -> Optional[int]:
    match = _ATTEMPT_PATH.search(path)
    return int(match.group(1)) if match else None


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Middleware to log incoming requests and outgoing responses.

    Logs:
    - Request method and path, and the attempt id when the path has one
    - Response status code and duration
    - User identifier (token prefix from the auth header, if present)

    Answer payloads are never logged.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        """
        Process request and log details.

        Args:
            request: Incoming request
            call_next: Next middleware/endpoint in chain

        Returns:
            Response from the endpoint
        """
        # Generate or extract request ID for correlation
        request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())
        request_id_context.set(request_id)

        start_time = time.time()

        user_identifier = "anonymous"
        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            user_identifier = f"token:{auth_header[7:17]}..."
        elif request.headers.get("X-Admin-Token"):
            user_identifier = "admin-token"

        method = request.method
        path = str(request.url.path)
        client_host = request.client.host if request.client else "unknown"

        base_fields = {
            "method": method,
            "path": path,
            "client_host": client_host,
            "user_identifier": user_identifier,
        }
        attempt_id = _attempt_id_from_path(path)
        if attempt_id is not None:
            base_fields["attempt_id"] = attempt_id

        logger.info("Incoming request", extra=base_fields)

        response = await call_next(request)

        duration_ms = round((time.time() - start_time) * 1000, 2)
        status_code = response.status_code

        # Add request_id header to response for client-side correlation
        response.headers["X-Request-ID"] = request_id

        extra_fields = {
            **base_fields,
            "status_code": status_code,
            "duration_ms": duration_ms,
        }

        if status_code >= 500:
            logger.error("Server error response", extra=extra_fields)
        elif status_code >= 400:
            logger.warning("Client error response", extra=extra_fields)
        else:
            logger.info("Request completed", extra=extra_fields)

        return response
