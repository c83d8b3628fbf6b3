"""
Pydantic schemas for test attempt endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field

from psikotes.models.models import AttemptStatus, ModuleType, TestCategory
from psikotes.schemas.results import TestResultResponse


class StartAttemptRequest(BaseModel):
    """Schema for starting (or resuming) a test attempt."""

    test_id: int = Field(..., gt=0, description="ID of the test to take")
    session_code: Optional[str] = Field(
        None,
        min_length=1,
        max_length=50,
        description="Code of the session the test is taken in, if any",
    )
    browser_info: Optional[Dict[str, Any]] = Field(
        None, description="Client environment details for auditing"
    )


class UpdateAttemptRequest(BaseModel):
    """Schema for updating an in-flight attempt."""

    status: Optional[AttemptStatus] = Field(None, description="Requested status")
    questions_answered: Optional[int] = Field(None, ge=0)
    time_spent: Optional[int] = Field(None, ge=0, description="Seconds spent so far")
    browser_info: Optional[Dict[str, Any]] = None


class FinishAttemptRequest(BaseModel):
    """Schema for finishing an attempt."""

    completion_type: Literal["completed", "abandoned"] = Field(
        "completed",
        description="How the participant ended the attempt; "
        "forced to 'expired' when the time limit has passed",
    )
    questions_answered: Optional[int] = Field(None, ge=0)
    time_spent: Optional[int] = Field(None, ge=0, description="Seconds spent")


class AttemptTestSummary(BaseModel):
    """Test fields embedded in attempt responses."""

    id: int
    name: str
    category: TestCategory
    module_type: ModuleType
    time_limit: int = Field(..., description="Time limit in minutes")
    total_questions: int

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class AttemptSessionSummary(BaseModel):
    """Session fields embedded in attempt responses."""

    id: int
    session_name: str
    session_code: str

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class TestAttemptResponse(BaseModel):
    """Schema for a test attempt."""

    id: int = Field(..., description="Attempt ID")
    user_id: int
    test_id: int
    session_test_id: Optional[int] = None
    attempt_number: int
    status: AttemptStatus
    start_time: datetime
    end_time: datetime = Field(..., description="Deadline; fixed at creation")
    actual_end_time: Optional[datetime] = None
    time_spent: Optional[int] = None
    questions_answered: int
    total_questions: Optional[int] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    browser_info: Optional[Dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class AttemptProgressResponse(BaseModel):
    """Schema for attempt progress metrics."""

    attempt_id: int
    status: AttemptStatus
    start_time: datetime
    time_spent: Optional[int] = None
    time_remaining: int = Field(..., description="Seconds until the deadline")
    time_limit: int = Field(..., description="Time limit in minutes")
    questions_answered: int
    total_questions: int
    progress_percentage: int
    completion_rate: int
    time_efficiency: int = Field(
        ..., description="Share of the time limit still unused (0-100)"
    )
    can_continue: bool
    is_expired: bool
    is_nearly_expired: bool
    estimated_completion_time: Optional[int] = Field(
        None, description="Minutes needed for the remaining questions at current pace"
    )
    test: AttemptTestSummary
    session: Optional[AttemptSessionSummary] = None


class StartAttemptResponse(BaseModel):
    """Schema returned by the start endpoint."""

    message: str
    resumed: bool = Field(..., description="True when an existing attempt was returned")
    attempt: TestAttemptResponse
    progress: AttemptProgressResponse


class AttemptDetailResponse(BaseModel):
    """Schema returned when reading or updating an attempt."""

    attempt: TestAttemptResponse
    progress: AttemptProgressResponse


class NextSessionTest(BaseModel):
    """The following module of the attempt's session."""

    test_id: int
    name: str
    sequence: int
    is_required: bool


class FinishAttemptResponse(BaseModel):
    """Schema returned by the finish endpoint."""

    message: str
    attempt: TestAttemptResponse
    completion_percentage: int
    result: Optional[TestResultResponse] = None
    next_test: Optional[NextSessionTest] = None


class AttemptListItem(BaseModel):
    """One attempt in a listing, with its test and result summary."""

    attempt: TestAttemptResponse
    test: AttemptTestSummary
    scaled_score: Optional[float] = None
    grade: Optional[str] = None
    is_passed: Optional[bool] = None


class UserAttemptsResponse(BaseModel):
    """Schema for a user's attempts."""

    user_id: int
    attempts: List[AttemptListItem]
    total: int
    page: int
    limit: int
    total_pages: int


class SessionResultSummary(BaseModel):
    """Read-only session aggregate written by reporting."""

    user_id: int
    weighted_score: Optional[float] = None
    overall_grade: Optional[str] = None
    completed_tests: int
    total_tests: int
    completion_percentage: Optional[float] = None
    calculated_at: datetime

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class SessionAttemptsResponse(BaseModel):
    """Schema for all attempts taken in one session."""

    session: AttemptSessionSummary
    attempts: List[AttemptListItem]
    status_counts: Dict[str, int]
    total: int
    page: int
    limit: int
    total_pages: int
    session_results: List[SessionResultSummary]


class StatusOption(BaseModel):
    """One attempt status with its allowed next statuses."""

    value: AttemptStatus
    label: str
    is_terminal: bool
    allowed_transitions: List[AttemptStatus]
