"""
Test attempt endpoints.

Handlers translate between HTTP and ``AttemptLifecycleManager``. Domain
errors are raised as ``AssessmentError`` by the service and mapped to status
codes by the handler in ``psikotes.main``.
"""
import logging
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Query, Request

from psikotes.api.v1.deps import get_attempt_manager
from psikotes.core.auth import get_current_user
from psikotes.models import TERMINAL_ATTEMPT_STATUSES, AttemptStatus, User
from psikotes.schemas.attempts import (
    AttemptDetailResponse,
    AttemptListItem,
    AttemptProgressResponse,
    AttemptSessionSummary,
    AttemptTestSummary,
    FinishAttemptRequest,
    FinishAttemptResponse,
    NextSessionTest,
    SessionAttemptsResponse,
    SessionResultSummary,
    StartAttemptRequest,
    StartAttemptResponse,
    StatusOption,
    TestAttemptResponse,
    UpdateAttemptRequest,
    UserAttemptsResponse,
)
from psikotes.schemas.results import TestResultResponse
from psikotes.services.attempt_lifecycle import (
    AttemptFilters,
    AttemptLifecycleManager,
    AttemptPage,
    AttemptView,
)
from psikotes.services.attempt_state import ALLOWED_TRANSITIONS, STATUS_LABELS

router = APIRouter()
logger = logging.getLogger(__name__)

AttemptSortField = Literal["start_time", "end_time", "status", "attempt_number", "created_at"]


def build_progress_response(view: AttemptView) -> AttemptProgressResponse:
    return AttemptProgressResponse(
        **view.progress,
        test=AttemptTestSummary.model_validate(view.test),
        session=(
            AttemptSessionSummary.model_validate(view.session)
            if view.session is not None
            else None
        ),
    )


def build_detail_response(view: AttemptView) -> AttemptDetailResponse:
    return AttemptDetailResponse(
        attempt=TestAttemptResponse.model_validate(view.attempt),
        progress=build_progress_response(view),
    )


def _list_items(attempt_page: AttemptPage) -> List[AttemptListItem]:
    return [
        AttemptListItem(
            attempt=TestAttemptResponse.model_validate(attempt),
            test=AttemptTestSummary.model_validate(test),
            scaled_score=result.scaled_score if result is not None else None,
            grade=result.grade if result is not None else None,
            is_passed=result.is_passed if result is not None else None,
        )
        for attempt, test, result in attempt_page.items
    ]


@router.post("/start", response_model=StartAttemptResponse)
async def start_attempt(
    payload: StartAttemptRequest,
    request: Request,
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """
    Start a test attempt, or resume the participant's unexpired one.

    When ``session_code`` is given the session must be active, within its
    time window and contain the test.
    """
    outcome = await manager.start(
        current_user,
        payload.test_id,
        session_code=payload.session_code,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        browser_info=payload.browser_info,
    )
    return StartAttemptResponse(
        message=(
            "Resumed existing test attempt"
            if outcome.resumed
            else "Test attempt started successfully"
        ),
        resumed=outcome.resumed,
        attempt=TestAttemptResponse.model_validate(outcome.view.attempt),
        progress=build_progress_response(outcome.view),
    )


@router.get("/utils/status-options", response_model=List[StatusOption])
async def get_status_options():
    """List attempt statuses with the transitions allowed from each."""
    return [
        StatusOption(
            value=status_value,
            label=STATUS_LABELS[status_value],
            is_terminal=status_value in TERMINAL_ATTEMPT_STATUSES,
            allowed_transitions=sorted(
                ALLOWED_TRANSITIONS[status_value], key=lambda s: s.value
            ),
        )
        for status_value in AttemptStatus
    ]


@router.get("/user/{user_id}", response_model=UserAttemptsResponse)
async def list_user_attempts(
    user_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: Optional[AttemptStatus] = Query(default=None),
    test_id: Optional[int] = Query(default=None, gt=0),
    session_id: Optional[int] = Query(default=None, gt=0),
    start_date_from: Optional[datetime] = Query(default=None),
    start_date_to: Optional[datetime] = Query(default=None),
    sort_by: AttemptSortField = Query(default="start_time"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """
    List a user's attempts. Participants may only list their own;
    administrators may list anyone's.
    """
    filters = AttemptFilters(
        status=status,
        test_id=test_id,
        session_id=session_id,
        start_date_from=start_date_from,
        start_date_to=start_date_to,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    attempt_page = await manager.list_for_user(
        current_user, user_id, filters, page=page, limit=limit
    )
    return UserAttemptsResponse(
        user_id=user_id,
        attempts=_list_items(attempt_page),
        total=attempt_page.total,
        page=attempt_page.page,
        limit=attempt_page.limit,
        total_pages=attempt_page.total_pages,
    )


@router.get("/session/{session_id}", response_model=SessionAttemptsResponse)
async def list_session_attempts(
    session_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=10, ge=1, le=100),
    status: Optional[AttemptStatus] = Query(default=None),
    test_id: Optional[int] = Query(default=None, gt=0),
    sort_by: AttemptSortField = Query(default="start_time"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """List every attempt taken in a session (administrators only)."""
    filters = AttemptFilters(
        status=status, test_id=test_id, sort_by=sort_by, sort_order=sort_order
    )
    session, attempt_page, session_results = await manager.list_for_session(
        current_user, session_id, filters, page=page, limit=limit
    )
    return SessionAttemptsResponse(
        session=AttemptSessionSummary.model_validate(session),
        attempts=_list_items(attempt_page),
        status_counts=attempt_page.status_counts,
        total=attempt_page.total,
        page=attempt_page.page,
        limit=attempt_page.limit,
        total_pages=attempt_page.total_pages,
        session_results=[
            SessionResultSummary.model_validate(r) for r in session_results
        ],
    )


@router.get("/{attempt_id}", response_model=AttemptDetailResponse)
async def get_attempt(
    attempt_id: int,
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """Get an attempt with its progress. Overdue attempts are expired first."""
    view = await manager.get(current_user, attempt_id)
    return build_detail_response(view)


@router.get("/{attempt_id}/progress", response_model=AttemptProgressResponse)
async def get_attempt_progress(
    attempt_id: int,
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """Time remaining, completion and pace metrics for an attempt."""
    view = await manager.get_progress(current_user, attempt_id)
    return build_progress_response(view)


@router.put("/{attempt_id}", response_model=AttemptDetailResponse)
async def update_attempt(
    attempt_id: int,
    payload: UpdateAttemptRequest,
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """
    Update status, progress counters or client info of an active attempt.

    Only the participant who owns the attempt may update it.
    """
    view = await manager.update(
        current_user,
        attempt_id,
        status=payload.status,
        questions_answered=payload.questions_answered,
        time_spent=payload.time_spent,
        browser_info=payload.browser_info,
    )
    return build_detail_response(view)


@router.post("/{attempt_id}/finish", response_model=FinishAttemptResponse)
async def finish_attempt(
    attempt_id: int,
    payload: FinishAttemptRequest,
    current_user: User = Depends(get_current_user),
    manager: AttemptLifecycleManager = Depends(get_attempt_manager),
):
    """
    Finish an attempt.

    Completed attempts are scored immediately. For attempts taken in a
    session the response names the session's next test.
    """
    outcome = await manager.finish(
        current_user,
        attempt_id,
        completion_type=payload.completion_type,
        questions_answered=payload.questions_answered,
        time_spent=payload.time_spent,
    )

    next_test = None
    if outcome.next_module is not None:
        module, test = outcome.next_module
        next_test = NextSessionTest(
            test_id=test.id,
            name=test.name,
            sequence=module.sequence,
            is_required=module.is_required,
        )

    final_status = outcome.attempt.status
    if final_status == AttemptStatus.EXPIRED:
        message = "Time limit exceeded; the attempt has expired"
    elif final_status == AttemptStatus.ABANDONED:
        message = "Test attempt abandoned"
    else:
        message = "Test attempt completed successfully"

    return FinishAttemptResponse(
        message=message,
        attempt=TestAttemptResponse.model_validate(outcome.attempt),
        completion_percentage=outcome.completion_percentage,
        result=(
            TestResultResponse.model_validate(outcome.result)
            if outcome.result is not None
            else None
        ),
        next_test=next_test,
    )
