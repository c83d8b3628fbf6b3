"""
Main FastAPI application.
"""
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from psikotes.api.v1.api import api_router
from psikotes.core.config import settings
from psikotes.core.error_responses import AssessmentError, ErrorKind
from psikotes.core.error_tracking import capture_error, flush, init_error_tracking
from psikotes.core.logging_config import setup_logging
from psikotes.middleware import RequestLoggingMiddleware
from psikotes.services.session_scheduler import SessionStatisticsScheduler

# Initialize logging configuration at startup
setup_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Application lifespan event handler.

    - On startup: Initializes error tracking and starts the periodic scheduler
    - On shutdown: Stops the scheduler and flushes pending error events
    """
    init_error_tracking()

    scheduler: SessionStatisticsScheduler = app.state.scheduler
    if settings.SCHEDULER_ENABLED:
        scheduler.start()
    else:
        logger.info("Periodic scheduler disabled (SCHEDULER_ENABLED=false)")

    yield

    await scheduler.stop()
    flush()
    logger.info("Application shut down")


# OpenAPI tags metadata
tags_metadata = [
    {
        "name": "health",
        "description": "Health check endpoints for monitoring application status",
    },
    {
        "name": "attempts",
        "description": "Starting, tracking, updating and finishing test attempts",
    },
    {
        "name": "answers",
        "description": "Answer submission, auto-save, listing and statistics",
    },
    {
        "name": "results",
        "description": "Calculated results for completed attempts",
    },
]


def create_application() -> FastAPI:
    """
    Create and configure the FastAPI application.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        lifespan=lifespan,
        description=(
            "**Psikotes Assessment API** - attempt and scoring engine for "
            "psychometric testing.\n\n"
            "This API provides:\n"
            "* Timed test attempts with lazy expiry\n"
            "* Answer submission, drafts and auto-save\n"
            "* Cognitive scoring and personality trait profiles\n\n"
            "## Authentication\n\n"
            "Endpoints require a JWT Bearer token. Operational endpoints under "
            "`/v1/admin` require the `X-Admin-Token` header."
        ),
        docs_url=f"{settings.API_V1_PREFIX}/docs",
        redoc_url=f"{settings.API_V1_PREFIX}/redoc",
        openapi_url=f"{settings.API_V1_PREFIX}/openapi.json",
        openapi_tags=tags_metadata,
    )

    app.state.scheduler = SessionStatisticsScheduler()

    # Configure CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["Authorization", "Content-Type", "X-Admin-Token", "X-Request-ID"],
    )

    # Configure Request Logging
    app.add_middleware(RequestLoggingMiddleware)

    # Include API router
    app.include_router(api_router, prefix=settings.API_V1_PREFIX)

    @app.exception_handler(AssessmentError)
    async def assessment_error_handler(request: Request, exc: AssessmentError):
        """
        Map domain errors to their HTTP status.

        Integrity and internal errors are also reported to error tracking.
        """
        if exc.kind in (ErrorKind.DATA_INTEGRITY_ERROR, ErrorKind.INTERNAL_ERROR):
            logger.error(
                f"{exc.kind.value} on {request.method} {request.url.path}: {exc.message}"
            )
            capture_error(
                exc,
                context={"path": str(request.url.path), "method": request.method},
                tags={"error_type": exc.kind.value},
            )
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    @app.exception_handler(StarletteHTTPException)
    async def http_exception_handler(request: Request, exc: StarletteHTTPException):
        """
        Handle HTTP exceptions raised by FastAPI and the auth dependencies.
        """
        if exc.status_code >= 500:
            capture_error(
                exc,
                context={
                    "path": str(request.url.path),
                    "method": request.method,
                    "status_code": exc.status_code,
                },
                tags={"error_type": "HTTPException"},
            )

        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def validation_exception_handler(
        request: Request, exc: RequestValidationError
    ):
        """
        Handle request validation errors.
        """
        errors = [
            {
                "loc": list(error.get("loc", [])),
                "msg": str(error.get("msg", "")),
                "type": str(error.get("type", "")),
            }
            for error in exc.errors()
        ]
        logger.info(
            f"Validation failed on {request.method} {request.url.path}: "
            f"{len(errors)} error(s)"
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": errors},
        )

    @app.exception_handler(Exception)
    async def generic_exception_handler(request: Request, exc: Exception):
        """
        Handle unexpected exceptions.

        Generates a unique error_id for each exception so support can trace
        it in logs. The error_id is returned in the response body.
        """
        error_id = str(uuid.uuid4())

        logger.exception(
            f"Unhandled exception [error_id={error_id}]: {exc}",
            extra={"error_id": error_id},
        )

        capture_error(
            exc,
            context={
                "path": str(request.url.path),
                "method": request.method,
                "error_id": error_id,
            },
            tags={"error_type": exc.__class__.__name__},
        )

        # Don't leak internal details
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "detail": "Internal server error",
                "code": ErrorKind.INTERNAL_ERROR.value,
                "error_id": error_id,
            },
        )

    return app


app = create_application()


@app.get("/")
async def root():
    """
    Root endpoint.
    """
    return {
        "message": f"Welcome to {settings.APP_NAME}",
        "version": settings.APP_VERSION,
        "docs": f"{settings.API_V1_PREFIX}/docs",
    }
