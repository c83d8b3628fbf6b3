"""
Pydantic schemas for the scheduler admin endpoints.
"""
from datetime import datetime
from typing import Dict, Optional

from pydantic import BaseModel, Field


class SchedulerRunResponse(BaseModel):
    """Summary of one scheduler pass."""

    message: str = ""
    started_at: datetime
    finished_at: Optional[datetime] = None
    sessions_expired: int = Field(0, description="Active sessions moved to expired")
    sessions_activated: int = Field(0, description="Draft sessions moved to active")
    stats_rows_updated: int = Field(
        0, description="Rows written to the performance statistics snapshot"
    )
    auth_sessions_cleaned: int = Field(0, description="Auth sessions deleted")
    errors: Dict[str, str] = Field(
        default_factory=dict, description="Failed jobs mapped to their error message"
    )
    skipped: bool = False
    skip_reason: Optional[str] = None


class SchedulerStatusResponse(BaseModel):
    """Current state of the periodic scheduler."""

    running: bool = Field(..., description="Whether the periodic loop is active")
    run_in_progress: bool
    interval_seconds: int
    min_interval_seconds: int
    run_count: int
    last_run_started_at: Optional[datetime] = None
    last_run: Optional[SchedulerRunResponse] = None
