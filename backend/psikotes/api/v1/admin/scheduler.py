"""
Scheduler admin endpoints.

Lets operators or an external cron trigger the session/statistics jobs on
demand and inspect the periodic loop. Runs triggered here share the
scheduler's in-process lock with the periodic loop, so at most one pass
runs at a time per process.
"""
import logging

from fastapi import APIRouter, Depends, Query

from psikotes.api.v1.deps import get_scheduler
from psikotes.core.auth import verify_admin_token
from psikotes.schemas.scheduler import SchedulerRunResponse, SchedulerStatusResponse
from psikotes.services.session_scheduler import SessionStatisticsScheduler

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/scheduler/run", response_model=SchedulerRunResponse)
async def run_scheduler(
    force: bool = Query(
        default=False, description="Ignore the minimum interval between runs"
    ),
    scheduler: SessionStatisticsScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_admin_token),
):
    r"""
    Run session expiry, session activation, statistics recomputation and
    auth-session cleanup once.

    A job that fails is reported in ``errors`` and does not stop the others.
    The run is refused (``skipped``) while another run is in progress or
    when the previous run started less than the minimum interval ago.

    Example:
        ```
        curl -X POST "https://api.example.com/v1/admin/scheduler/run?force=true" \
          -H "X-Admin-Token: your-admin-token"
        ```
    """
    summary = await scheduler.run_once(force=force)

    if summary.skipped:
        message = f"Scheduler run skipped: {summary.skip_reason}"
    elif summary.errors:
        message = f"Scheduler run finished with {len(summary.errors)} failed job(s)"
    else:
        message = "Scheduler run finished"

    return SchedulerRunResponse(message=message, **summary.to_dict())


@router.get("/scheduler/status", response_model=SchedulerStatusResponse)
async def get_scheduler_status(
    scheduler: SessionStatisticsScheduler = Depends(get_scheduler),
    _: bool = Depends(verify_admin_token),
):
    """Whether the periodic loop is active, and the last run's summary."""
    return SchedulerStatusResponse(**scheduler.status())
