"""
Admin API endpoints.

All endpoints require authentication via the X-Admin-Token header.

Submodules:
    - scheduler: On-demand runs and status of the session/statistics scheduler
"""
from fastapi import APIRouter

from . import scheduler

router = APIRouter()

router.include_router(
    scheduler.router,
    tags=["Admin - Scheduler"],
)
