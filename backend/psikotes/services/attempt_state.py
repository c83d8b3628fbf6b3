"""
Attempt state machine and the guarded writes shared by the attempt and
answer services.

Every status change goes through ``conditional_update``, which re-asserts
the expected prior status in the WHERE clause. A writer that matches zero
rows lost a race and must re-read before reporting.
"""
import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.config import settings
from psikotes.core.datetime_utils import ensure_timezone_aware, seconds_until
from psikotes.models import (
    ACTIVE_ATTEMPT_STATUSES,
    TERMINAL_ATTEMPT_STATUSES,
    AttemptStatus,
    Test,
    TestAttempt,
)
from psikotes.services.scoring import round_half_up

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[AttemptStatus, FrozenSet[AttemptStatus]] = {
    AttemptStatus.STARTED: frozenset(
        {
            AttemptStatus.IN_PROGRESS,
            AttemptStatus.COMPLETED,
            AttemptStatus.ABANDONED,
            AttemptStatus.EXPIRED,
        }
    ),
    AttemptStatus.IN_PROGRESS: frozenset(
        {AttemptStatus.COMPLETED, AttemptStatus.ABANDONED, AttemptStatus.EXPIRED}
    ),
    AttemptStatus.COMPLETED: frozenset(),
    AttemptStatus.ABANDONED: frozenset(),
    AttemptStatus.EXPIRED: frozenset(),
}

STATUS_LABELS: Dict[AttemptStatus, str] = {
    AttemptStatus.STARTED: "Started",
    AttemptStatus.IN_PROGRESS: "In Progress",
    AttemptStatus.COMPLETED: "Completed",
    AttemptStatus.ABANDONED: "Abandoned",
    AttemptStatus.EXPIRED: "Expired",
}


def can_transition(current: AttemptStatus, requested: AttemptStatus) -> bool:
    return requested in ALLOWED_TRANSITIONS[current]


def is_overdue(attempt: TestAttempt, now: datetime) -> bool:
    """True when a non-terminal attempt has passed its deadline."""
    return attempt.status in ACTIVE_ATTEMPT_STATUSES and now > ensure_timezone_aware(
        attempt.end_time
    )


async def conditional_update(
    db: AsyncSession,
    attempt_id: int,
    expected_status: AttemptStatus,
    **values: Any,
) -> bool:
    """
    Update an attempt only if its status is still ``expected_status``.

    Does not commit.

    Returns:
        True when the row was updated, False when another writer got there first
    """
    stmt = (
        update(TestAttempt)
        .where(TestAttempt.id == attempt_id, TestAttempt.status == expected_status)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    return result.rowcount == 1


async def expire_if_overdue(
    db: AsyncSession, attempt: TestAttempt, now: datetime
) -> TestAttempt:
    """
    Lazily expire an attempt whose deadline has passed.

    Commits the transition and refreshes ``attempt``. A no-op for attempts
    that are terminal or still within their time limit.
    """
    if not is_overdue(attempt, now):
        return attempt

    attempt_id = attempt.id
    expired = await conditional_update(
        db,
        attempt_id,
        attempt.status,
        status=AttemptStatus.EXPIRED,
        actual_end_time=now,
        updated_at=now,
    )
    await db.commit()
    await db.refresh(attempt)

    if expired:
        logger.info(f"Attempt {attempt_id} expired on access")
    return attempt


def compute_progress(
    attempt: TestAttempt, test: Test, now: datetime
) -> Dict[str, Any]:
    """
    Derived progress metrics for an attempt at ``now``.

    Elapsed time is the reported ``time_spent`` when the client sent one,
    otherwise the wall-clock time since start (up to the actual end for
    finished attempts).
    """
    start_time = ensure_timezone_aware(attempt.start_time)
    is_terminal = attempt.status in TERMINAL_ATTEMPT_STATUSES
    overdue = is_overdue(attempt, now)

    time_remaining = 0 if is_terminal else seconds_until(attempt.end_time, now)
    is_expired = attempt.status == AttemptStatus.EXPIRED or overdue
    can_continue = attempt.status in ACTIVE_ATTEMPT_STATUSES and not overdue
    is_nearly_expired = (
        can_continue and 0 < time_remaining <= settings.NEARLY_EXPIRED_SECONDS
    )

    total = (
        attempt.total_questions
        if attempt.total_questions is not None
        else test.total_questions
    )
    answered = attempt.questions_answered or 0
    progress = int(round_half_up(answered / total * 100)) if total > 0 else 0

    if attempt.time_spent is not None:
        elapsed_minutes = attempt.time_spent / 60
    else:
        until = now
        if is_terminal and attempt.actual_end_time is not None:
            until = ensure_timezone_aware(attempt.actual_end_time)
        elapsed_minutes = max(0.0, (until - start_time).total_seconds() / 60)

    time_limit = test.time_limit or 0
    if time_limit > 0:
        time_efficiency = int(
            round_half_up(max(0.0, 100 - elapsed_minutes / time_limit * 100))
        )
    else:
        time_efficiency = 0

    estimated = None
    if answered > 0:
        remaining_questions = max(0, total - answered)
        estimated = int(round_half_up(remaining_questions * elapsed_minutes / answered))

    return {
        "attempt_id": attempt.id,
        "status": attempt.status,
        "start_time": start_time,
        "time_spent": attempt.time_spent,
        "time_remaining": time_remaining,
        "time_limit": time_limit,
        "questions_answered": answered,
        "total_questions": total,
        "progress_percentage": progress,
        "completion_rate": progress,
        "time_efficiency": min(100, time_efficiency),
        "can_continue": can_continue,
        "is_expired": is_expired,
        "is_nearly_expired": is_nearly_expired,
        "estimated_completion_time": estimated,
    }
