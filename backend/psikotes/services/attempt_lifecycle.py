"""
Attempt lifecycle: start/resume, read, update, finish and listings.

Time limits are enforced lazily. There is no timer per attempt; any read or
write that sees an active attempt past its ``end_time`` expires it first
(see ``attempt_state.expire_if_overdue``).
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import and_, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.datetime_utils import Clock, ensure_timezone_aware, utc_now
from psikotes.core.error_responses import AssessmentError, ErrorKind, ErrorMessages
from psikotes.models import (
    ACTIVE_ATTEMPT_STATUSES,
    TERMINAL_ATTEMPT_STATUSES,
    AttemptStatus,
    SessionModule,
    SessionResult,
    SessionStatus,
    Test,
    TestAttempt,
    TestResult,
    TestSession,
    TestStatus,
    User,
)
from psikotes.services.attempt_state import (
    can_transition,
    compute_progress,
    conditional_update,
    expire_if_overdue,
)
from psikotes.services.result_aggregator import ResultAggregator
from psikotes.services.scoring import round_half_up

logger = logging.getLogger(__name__)

ATTEMPT_SORT_COLUMNS = {
    "start_time": TestAttempt.start_time,
    "end_time": TestAttempt.end_time,
    "status": TestAttempt.status,
    "attempt_number": TestAttempt.attempt_number,
    "created_at": TestAttempt.created_at,
}


@dataclass
class AttemptView:
    """An attempt with its test, optional session and derived progress."""

    attempt: TestAttempt
    test: Test
    session: Optional[TestSession]
    progress: Dict[str, Any]


@dataclass
class StartOutcome:
    view: AttemptView
    resumed: bool


@dataclass
class FinishOutcome:
    attempt: TestAttempt
    completion_percentage: int
    result: Optional[TestResult] = None
    next_module: Optional[Tuple[SessionModule, Test]] = None


@dataclass
class AttemptFilters:
    """Filters for attempt listings."""

    status: Optional[AttemptStatus] = None
    test_id: Optional[int] = None
    session_id: Optional[int] = None
    start_date_from: Optional[datetime] = None
    start_date_to: Optional[datetime] = None
    sort_by: str = "start_time"
    sort_order: str = "desc"


@dataclass
class AttemptPage:
    """One page of attempts, each with its test and result (if any)."""

    items: List[Tuple[TestAttempt, Test, Optional[TestResult]]]
    total: int
    page: int
    limit: int
    status_counts: Dict[str, int] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


def _session_clause(session_id: Optional[int]):
    if session_id is None:
        return TestAttempt.session_test_id.is_(None)
    return TestAttempt.session_test_id == session_id


class AttemptLifecycleManager:
    """Owns every status change of a TestAttempt."""

    def __init__(self, db: AsyncSession, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    # =========================================================================
    # Loading and access checks
    # =========================================================================

    async def _load(self, attempt_id: int) -> TestAttempt:
        attempt = await self.db.get(TestAttempt, attempt_id)
        if attempt is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.ATTEMPT_NOT_FOUND)
        return attempt

    @staticmethod
    def _ensure_can_view(user_id: int, is_admin: bool, attempt: TestAttempt) -> None:
        if attempt.user_id != user_id and not is_admin:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.ATTEMPT_ACCESS_DENIED
            )

    @staticmethod
    def _ensure_owner(user_id: int, attempt: TestAttempt) -> None:
        if attempt.user_id != user_id:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.ATTEMPT_MODIFY_DENIED
            )

    async def _test_for(self, attempt: TestAttempt) -> Test:
        test = await self.db.get(Test, attempt.test_id)
        if test is None:
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, ErrorMessages.TEST_DATA_MISSING
            )
        return test

    async def _view(self, attempt: TestAttempt, now: datetime) -> AttemptView:
        test = await self._test_for(attempt)
        session = None
        if attempt.session_test_id is not None:
            session = await self.db.get(TestSession, attempt.session_test_id)
        return AttemptView(
            attempt=attempt,
            test=test,
            session=session,
            progress=compute_progress(attempt, test, now),
        )

    # =========================================================================
    # Start
    # =========================================================================

    async def _resolve_session(
        self, session_code: str, test_id: int, now: datetime
    ) -> TestSession:
        result = await self.db.execute(
            select(TestSession).where(TestSession.session_code == session_code)
        )
        session = result.scalar_one_or_none()
        if session is None:
            raise AssessmentError(
                ErrorKind.INVALID_SESSION,
                ErrorMessages.SESSION_CODE_INVALID,
                field="session_code",
            )

        in_window = (
            ensure_timezone_aware(session.start_time)
            <= now
            <= ensure_timezone_aware(session.end_time)
        )
        if session.status != SessionStatus.ACTIVE or not in_window:
            raise AssessmentError(
                ErrorKind.SESSION_INACTIVE, ErrorMessages.SESSION_NOT_ACTIVE
            )

        module = await self.db.execute(
            select(SessionModule.id).where(
                SessionModule.session_id == session.id,
                SessionModule.test_id == test_id,
            )
        )
        if module.scalar_one_or_none() is None:
            raise AssessmentError(
                ErrorKind.INVALID_SESSION,
                ErrorMessages.TEST_NOT_IN_SESSION,
                field="test_id",
            )
        return session

    async def _active_attempts(
        self, user_id: int, test_id: int, session_id: Optional[int]
    ) -> List[TestAttempt]:
        result = await self.db.execute(
            select(TestAttempt)
            .where(
                TestAttempt.user_id == user_id,
                TestAttempt.test_id == test_id,
                _session_clause(session_id),
                TestAttempt.status.in_(list(ACTIVE_ATTEMPT_STATUSES)),
            )
            .order_by(TestAttempt.start_time.desc(), TestAttempt.id.desc())
        )
        return list(result.scalars().all())

    async def start(
        self,
        user: User,
        test_id: int,
        session_code: Optional[str] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        browser_info: Optional[Dict[str, Any]] = None,
    ) -> StartOutcome:
        """
        Start a new attempt, or resume the participant's unexpired one.

        Stale active attempts for the same (user, test, session) are expired
        before a new attempt is created, so at most one attempt is ever active.

        Raises:
            AssessmentError: NOT_FOUND, TEST_INACTIVE, INVALID_SESSION or
                SESSION_INACTIVE
        """
        now = self.clock()
        user_id = user.id

        test = await self.db.get(Test, test_id)
        if test is None:
            raise AssessmentError(
                ErrorKind.NOT_FOUND, ErrorMessages.TEST_NOT_FOUND, field="test_id"
            )
        if test.status != TestStatus.ACTIVE:
            raise AssessmentError(ErrorKind.TEST_INACTIVE, ErrorMessages.TEST_INACTIVE)

        session = None
        if session_code is not None:
            session = await self._resolve_session(session_code, test_id, now)
        session_id = session.id if session is not None else None

        for existing in await self._active_attempts(user_id, test_id, session_id):
            if now <= ensure_timezone_aware(existing.end_time):
                logger.info(
                    f"Resuming attempt {existing.id} for user {user_id} on test {test_id}"
                )
                return StartOutcome(view=await self._view(existing, now), resumed=True)
            await expire_if_overdue(self.db, existing, now)

        max_number = await self.db.execute(
            select(func.max(TestAttempt.attempt_number)).where(
                TestAttempt.user_id == user_id,
                TestAttempt.test_id == test_id,
                _session_clause(session_id),
            )
        )
        attempt_number = (max_number.scalar() or 0) + 1

        attempt = TestAttempt(
            user_id=user_id,
            test_id=test_id,
            session_test_id=session_id,
            start_time=now,
            end_time=now + timedelta(minutes=test.time_limit),
            status=AttemptStatus.STARTED,
            ip_address=ip_address,
            user_agent=user_agent,
            browser_info=browser_info,
            attempt_number=attempt_number,
            questions_answered=0,
            total_questions=test.total_questions,
            created_at=now,
            updated_at=now,
        )
        self.db.add(attempt)

        try:
            await self.db.commit()
        except IntegrityError:
            # A concurrent start took this attempt number; return its attempt
            await self.db.rollback()
            logger.warning(
                f"Race condition detected: user {user_id} started test {test_id} "
                "concurrently"
            )
            for winner in await self._active_attempts(user_id, test_id, session_id):
                if now <= ensure_timezone_aware(winner.end_time):
                    return StartOutcome(view=await self._view(winner, now), resumed=True)
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, ErrorMessages.ATTEMPT_START_CONFLICT
            )

        await self.db.refresh(attempt)
        logger.info(
            f"Started attempt {attempt.id} (#{attempt_number}) for user {user_id} "
            f"on test {test_id}, session={session_id}"
        )
        return StartOutcome(view=await self._view(attempt, now), resumed=False)

    # =========================================================================
    # Read / update
    # =========================================================================

    async def get(self, user: User, attempt_id: int) -> AttemptView:
        """Read an attempt (owner or admin), expiring it first if overdue."""
        now = self.clock()
        user_id, is_admin = user.id, user.is_admin

        attempt = await self._load(attempt_id)
        self._ensure_can_view(user_id, is_admin, attempt)
        attempt = await expire_if_overdue(self.db, attempt, now)
        return await self._view(attempt, now)

    async def get_progress(self, user: User, attempt_id: int) -> AttemptView:
        """Progress metrics are part of every view; kept as its own operation."""
        return await self.get(user, attempt_id)

    async def update(
        self,
        user: User,
        attempt_id: int,
        status: Optional[AttemptStatus] = None,
        questions_answered: Optional[int] = None,
        time_spent: Optional[int] = None,
        browser_info: Optional[Dict[str, Any]] = None,
    ) -> AttemptView:
        """
        Update an active attempt owned by ``user``.

        A status change to ``completed`` does not calculate the result; use
        ``finish`` for that.

        Raises:
            AssessmentError: ATTEMPT_NOT_ACTIVE, INVALID_STATUS_TRANSITION or
                INVALID_PROGRESS; the row is unchanged in every case
        """
        now = self.clock()
        user_id = user.id

        attempt = await self._load(attempt_id)
        self._ensure_owner(user_id, attempt)
        attempt = await expire_if_overdue(self.db, attempt, now)

        if attempt.status in TERMINAL_ATTEMPT_STATUSES:
            raise AssessmentError(
                ErrorKind.ATTEMPT_NOT_ACTIVE, ErrorMessages.ATTEMPT_NOT_ACTIVE
            )

        current = attempt.status
        values: Dict[str, Any] = {"updated_at": now}

        if status is not None and status != current:
            if not can_transition(current, status):
                raise AssessmentError(
                    ErrorKind.INVALID_STATUS_TRANSITION,
                    ErrorMessages.invalid_status_transition(current.value, status.value),
                    field="status",
                )
            values["status"] = status
            if status in TERMINAL_ATTEMPT_STATUSES:
                values["actual_end_time"] = now

        if questions_answered is not None:
            total = (
                attempt.total_questions if attempt.total_questions is not None else 0
            )
            if questions_answered > total:
                raise AssessmentError(
                    ErrorKind.INVALID_PROGRESS,
                    ErrorMessages.invalid_progress(questions_answered, total),
                    field="questions_answered",
                )
            values["questions_answered"] = questions_answered

        if time_spent is not None:
            values["time_spent"] = time_spent
        if browser_info is not None:
            values["browser_info"] = browser_info

        updated = await conditional_update(self.db, attempt.id, current, **values)
        await self.db.commit()
        await self.db.refresh(attempt)

        if not updated:
            logger.warning(
                f"Attempt {attempt.id} changed concurrently during update "
                f"(now {attempt.status.value})"
            )
            raise AssessmentError(
                ErrorKind.ATTEMPT_NOT_ACTIVE,
                ErrorMessages.status_changed_concurrently(attempt.status.value),
            )

        if "status" in values:
            logger.info(
                f"Attempt {attempt.id} status {current.value} -> {attempt.status.value}"
            )
        return await self._view(attempt, now)

    # =========================================================================
    # Finish
    # =========================================================================

    async def _next_module(
        self, session_id: int, test_id: int
    ) -> Optional[Tuple[SessionModule, Test]]:
        current = await self.db.execute(
            select(SessionModule.sequence).where(
                SessionModule.session_id == session_id,
                SessionModule.test_id == test_id,
            )
        )
        sequence = current.scalar_one_or_none()
        if sequence is None:
            return None

        result = await self.db.execute(
            select(SessionModule, Test)
            .join(Test, SessionModule.test_id == Test.id)
            .where(
                SessionModule.session_id == session_id,
                SessionModule.sequence > sequence,
            )
            .order_by(SessionModule.sequence)
            .limit(1)
        )
        row = result.first()
        return (row[0], row[1]) if row is not None else None

    async def finish(
        self,
        user: User,
        attempt_id: int,
        completion_type: str = "completed",
        questions_answered: Optional[int] = None,
        time_spent: Optional[int] = None,
    ) -> FinishOutcome:
        """
        Finish an attempt as completed or abandoned.

        The outcome is forced to ``expired`` once the deadline has passed. A
        completed attempt gets its result calculated before returning.

        Raises:
            AssessmentError: ATTEMPT_ALREADY_FINISHED, INVALID_PROGRESS
        """
        now = self.clock()
        user_id = user.id

        attempt = await self._load(attempt_id)
        self._ensure_owner(user_id, attempt)

        if attempt.status in TERMINAL_ATTEMPT_STATUSES:
            raise AssessmentError(
                ErrorKind.ATTEMPT_ALREADY_FINISHED,
                ErrorMessages.ATTEMPT_ALREADY_FINISHED,
            )

        current = attempt.status
        total = attempt.total_questions if attempt.total_questions is not None else 0
        answered = (
            questions_answered
            if questions_answered is not None
            else attempt.questions_answered or 0
        )
        overdue = now > ensure_timezone_aware(attempt.end_time)
        if answered > total:
            if not overdue:
                raise AssessmentError(
                    ErrorKind.INVALID_PROGRESS,
                    ErrorMessages.invalid_progress(answered, total),
                    field="questions_answered",
                )
            # An overdue attempt always expires; clamp instead of rejecting
            answered = total

        if overdue:
            final_status = AttemptStatus.EXPIRED
        else:
            final_status = AttemptStatus(completion_type)

        values: Dict[str, Any] = {
            "status": final_status,
            "actual_end_time": now,
            "questions_answered": answered,
            "updated_at": now,
        }
        if time_spent is not None:
            values["time_spent"] = time_spent

        finished = await conditional_update(self.db, attempt.id, current, **values)
        await self.db.commit()
        await self.db.refresh(attempt)

        if not finished:
            raise AssessmentError(
                ErrorKind.ATTEMPT_ALREADY_FINISHED,
                ErrorMessages.ATTEMPT_ALREADY_FINISHED,
            )

        completion = int(round_half_up(answered / total * 100)) if total > 0 else 100
        logger.info(
            f"Attempt {attempt.id} finished as {final_status.value} "
            f"({answered}/{total} answered)"
        )

        outcome = FinishOutcome(attempt=attempt, completion_percentage=completion)

        if final_status == AttemptStatus.COMPLETED:
            aggregator = ResultAggregator(self.db, self.clock)
            outcome.result, _ = await aggregator.calculate(attempt.id)

        if attempt.session_test_id is not None:
            outcome.next_module = await self._next_module(
                attempt.session_test_id, attempt.test_id
            )
        return outcome

    # =========================================================================
    # Listings
    # =========================================================================

    async def _expire_stale(self, *criteria) -> None:
        """Bulk lazy expiry for listings; guarded on the active statuses."""
        now = self.clock()
        stmt = (
            update(TestAttempt)
            .where(
                *criteria,
                TestAttempt.status.in_(list(ACTIVE_ATTEMPT_STATUSES)),
                TestAttempt.end_time < now,
            )
            .values(status=AttemptStatus.EXPIRED, actual_end_time=now, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await self.db.execute(stmt)
        await self.db.commit()
        if result.rowcount:
            logger.info(f"Expired {result.rowcount} overdue attempts while listing")

    async def _page(
        self, conditions: List[Any], filters: AttemptFilters, page: int, limit: int
    ) -> AttemptPage:
        where = and_(*conditions)

        total_result = await self.db.execute(
            select(func.count(TestAttempt.id)).where(where)
        )
        total = total_result.scalar() or 0

        counts_result = await self.db.execute(
            select(TestAttempt.status, func.count(TestAttempt.id))
            .where(where)
            .group_by(TestAttempt.status)
        )
        status_counts = {s.value: 0 for s in AttemptStatus}
        for status_value, count in counts_result.all():
            status_counts[status_value.value] = count

        column = ATTEMPT_SORT_COLUMNS.get(filters.sort_by, TestAttempt.start_time)
        order = column.asc() if filters.sort_order == "asc" else column.desc()

        rows = await self.db.execute(
            select(TestAttempt, Test, TestResult)
            .join(Test, TestAttempt.test_id == Test.id)
            .outerjoin(TestResult, TestResult.attempt_id == TestAttempt.id)
            .where(where)
            .order_by(order, TestAttempt.id.desc())
            .offset((page - 1) * limit)
            .limit(limit)
            # bulk expiry above bypassed the identity map
            .execution_options(populate_existing=True)
        )
        items = [(attempt, test, result) for attempt, test, result in rows.all()]
        return AttemptPage(
            items=items,
            total=total,
            page=page,
            limit=limit,
            status_counts=status_counts,
        )

    async def list_for_user(
        self,
        requester: User,
        user_id: int,
        filters: Optional[AttemptFilters] = None,
        page: int = 1,
        limit: int = 10,
    ) -> AttemptPage:
        """
        List a user's attempts. Participants may only list their own.

        Raises:
            AssessmentError: FORBIDDEN, NOT_FOUND (unknown user)
        """
        filters = filters or AttemptFilters()
        if requester.id != user_id and not requester.is_admin:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.USER_ATTEMPTS_ACCESS_DENIED
            )

        if await self.db.get(User, user_id) is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.USER_NOT_FOUND)

        await self._expire_stale(TestAttempt.user_id == user_id)

        conditions: List[Any] = [TestAttempt.user_id == user_id]
        if filters.status is not None:
            conditions.append(TestAttempt.status == filters.status)
        if filters.test_id is not None:
            conditions.append(TestAttempt.test_id == filters.test_id)
        if filters.session_id is not None:
            conditions.append(TestAttempt.session_test_id == filters.session_id)
        if filters.start_date_from is not None:
            conditions.append(TestAttempt.start_time >= filters.start_date_from)
        if filters.start_date_to is not None:
            conditions.append(TestAttempt.start_time <= filters.start_date_to)

        return await self._page(conditions, filters, page, limit)

    async def list_for_session(
        self,
        requester: User,
        session_id: int,
        filters: Optional[AttemptFilters] = None,
        page: int = 1,
        limit: int = 10,
    ) -> Tuple[TestSession, AttemptPage, List[SessionResult]]:
        """
        List every attempt taken in a session, with the session's results.

        Raises:
            AssessmentError: FORBIDDEN for non-admins, NOT_FOUND for an
                unknown session
        """
        filters = filters or AttemptFilters()
        if not requester.is_admin:
            raise AssessmentError(ErrorKind.FORBIDDEN, ErrorMessages.ADMIN_REQUIRED)

        session = await self.db.get(TestSession, session_id)
        if session is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.SESSION_NOT_FOUND)

        await self._expire_stale(TestAttempt.session_test_id == session_id)

        conditions: List[Any] = [TestAttempt.session_test_id == session_id]
        if filters.status is not None:
            conditions.append(TestAttempt.status == filters.status)
        if filters.test_id is not None:
            conditions.append(TestAttempt.test_id == filters.test_id)

        attempt_page = await self._page(conditions, filters, page, limit)

        results = await self.db.execute(
            select(SessionResult)
            .where(SessionResult.session_id == session_id)
            .order_by(SessionResult.user_id)
        )
        return session, attempt_page, list(results.scalars().all())
