"""
Answer persistence for in-flight attempts.

One UserAnswer row exists per (user, question, attempt). Every write is an
upsert where the last write wins; a resubmission replaces the whole answer
rather than merging fields. Drafts (explicit drafts and auto-saves) are
stored with a null score, so ``score IS NULL`` marks an unscored answer.

An answer write and the attempt's counter update share one transaction whose
attempt UPDATE re-asserts the status read before the write. If the attempt
was finished or expired in between, the answer is rolled back too.
"""
import logging
import math
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.datetime_utils import Clock, seconds_until, utc_now
from psikotes.core.error_responses import AssessmentError, ErrorKind, ErrorMessages
from psikotes.core.graceful_failure import graceful_failure
from psikotes.models import (
    TERMINAL_ATTEMPT_STATUSES,
    AttemptStatus,
    Question,
    QuestionType,
    Test,
    TestAttempt,
    User,
    UserAnswer,
)
from psikotes.schemas.answers import InvalidAnswerFormat, parse_answer_payload
from psikotes.services.attempt_state import conditional_update, expire_if_overdue
from psikotes.services.result_aggregator import is_personality_test
from psikotes.services.scoring import (
    normalize_scoring_key,
    round_half_up,
    score_answer,
)

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 100
ANSWER_SORT_FIELDS = ("answered_at", "time_taken", "confidence_level", "sequence")


def has_content(answer: Optional[str], answer_data: Optional[Dict[str, Any]]) -> bool:
    if answer is not None and answer.strip():
        return True
    return bool(answer_data)


def format_answer_for_display(question: Question, answer: Optional[UserAnswer]) -> str:
    """Human-readable rendering of a stored answer."""
    if answer is None or not has_content(answer.answer, answer.answer_data):
        return "No answer provided"

    value = answer.answer
    data = answer.answer_data or {}
    question_type = question.question_type

    if question_type == QuestionType.MULTIPLE_CHOICE:
        for option in question.options or []:
            if str(option.get("value")) == value:
                return str(option.get("label", value))
        return value or "No answer"
    if question_type == QuestionType.TRUE_FALSE:
        return {"true": "True", "false": "False"}.get(value or "", "No answer")
    if question_type == QuestionType.RATING_SCALE:
        return f"{value} out of 5" if value else "No rating"
    if question_type == QuestionType.DRAWING:
        return "Drawing submitted"
    if question_type == QuestionType.SEQUENCE:
        sequence = data.get("sequence")
        if isinstance(sequence, list):
            return "Sequence: " + ", ".join(str(item) for item in sequence)
        return "Sequence submitted"
    if question_type == QuestionType.MATRIX:
        selection = data.get("matrix_selection")
        if selection not in (None, "", [], {}):
            return f"Matrix selection: {selection}"
        return "Matrix selection submitted"
    return value or "No text provided"


@dataclass
class AnswerProgressSnapshot:
    answered_questions: int
    total_questions: int
    progress_percentage: int
    time_remaining: int


@dataclass
class AnswerWriteOutcome:
    """What a submit or auto-save stored, plus where the participant is now."""

    answer: UserAnswer
    question: Question
    progress: AnswerProgressSnapshot
    next_question: Optional[Question] = None
    validation_warning: Optional[str] = None
    created: bool = False


@dataclass
class AnswerFilters:
    question_id: Optional[int] = None
    is_answered: Optional[bool] = None
    confidence_level: Optional[int] = None
    sort_by: str = "sequence"
    sort_order: str = "asc"


@dataclass
class AnswerListPage:
    rows: List[Tuple[UserAnswer, Question]]
    total: int
    page: int
    limit: int
    summary: Dict[str, Any] = field(default_factory=dict)

    @property
    def total_pages(self) -> int:
        return math.ceil(self.total / self.limit) if self.limit else 0


@dataclass
class ScoreChangeRecord:
    answer_id: int
    question_id: int
    old_score: Optional[float]
    new_score: float
    old_is_correct: Optional[bool]
    new_is_correct: Optional[bool]


def _average(values: List[float]) -> Optional[float]:
    return sum(values) / len(values) if values else None


class AnswerStore:
    """Reads and writes UserAnswer rows on behalf of a participant."""

    def __init__(self, db: AsyncSession, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    # =========================================================================
    # Loading and access checks
    # =========================================================================

    async def _load_attempt(self, attempt_id: int) -> TestAttempt:
        attempt = await self.db.get(TestAttempt, attempt_id)
        if attempt is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.ATTEMPT_NOT_FOUND)
        return attempt

    async def _load_for_view(self, user: User, attempt_id: int) -> TestAttempt:
        user_id, is_admin = user.id, user.is_admin
        attempt = await self._load_attempt(attempt_id)
        if attempt.user_id != user_id and not is_admin:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.ATTEMPT_ACCESS_DENIED
            )
        return await expire_if_overdue(self.db, attempt, self.clock())

    async def _load_for_write(
        self, user_id: int, attempt_id: int, now: datetime
    ) -> TestAttempt:
        attempt = await self._load_attempt(attempt_id)
        if attempt.user_id != user_id:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.ATTEMPT_MODIFY_DENIED
            )
        attempt = await expire_if_overdue(self.db, attempt, now)
        if attempt.status in TERMINAL_ATTEMPT_STATUSES:
            raise AssessmentError(
                ErrorKind.ATTEMPT_NOT_ACTIVE, ErrorMessages.ATTEMPT_NOT_ACTIVE
            )
        return attempt

    async def _load_question(self, test_id: int, question_id: int) -> Question:
        question = await self.db.get(Question, question_id)
        if question is None or question.test_id != test_id:
            raise AssessmentError(
                ErrorKind.NOT_FOUND,
                ErrorMessages.QUESTION_NOT_FOUND,
                field="question_id",
            )
        return question

    async def _questions(self, test_id: int) -> List[Question]:
        result = await self.db.execute(
            select(Question)
            .where(Question.test_id == test_id)
            .order_by(Question.sequence)
        )
        return list(result.scalars().all())

    async def _answers(self, attempt_id: int) -> List[UserAnswer]:
        result = await self.db.execute(
            select(UserAnswer).where(UserAnswer.attempt_id == attempt_id)
        )
        return list(result.scalars().all())

    # =========================================================================
    # Writes
    # =========================================================================

    async def _write_answer(
        self,
        user_id: int,
        attempt_id: int,
        question_id: int,
        values: Dict[str, Any],
    ) -> Tuple[UserAnswer, bool]:
        """Insert or overwrite the answer row; flushes but does not commit."""
        result = await self.db.execute(
            select(UserAnswer).where(
                UserAnswer.user_id == user_id,
                UserAnswer.question_id == question_id,
                UserAnswer.attempt_id == attempt_id,
            )
        )
        answer = result.scalar_one_or_none()
        created = answer is None
        if created:
            answer = UserAnswer(
                user_id=user_id, question_id=question_id, attempt_id=attempt_id
            )
            self.db.add(answer)

        for name, value in values.items():
            setattr(answer, name, value)
        await self.db.flush()
        return answer, created

    async def _save(
        self,
        user: User,
        attempt_id: int,
        question_id: int,
        answer: Optional[str],
        answer_data: Optional[Dict[str, Any]],
        *,
        is_draft: bool,
        strict: bool,
        time_taken: Optional[int],
        confidence_level: Optional[int],
    ) -> AnswerWriteOutcome:
        now = self.clock()
        user_id = user.id

        attempt = await self._load_for_write(user_id, attempt_id, now)
        question = await self._load_question(attempt.test_id, question_id)
        test = await self.db.get(Test, attempt.test_id)
        if test is None:
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, ErrorMessages.TEST_DATA_MISSING
            )

        warning: Optional[str] = None
        if strict:
            try:
                parse_answer_payload(
                    question.question_type, answer, answer_data, question.options
                )
            except InvalidAnswerFormat as e:
                raise AssessmentError(
                    ErrorKind.INVALID_ANSWER_FORMAT, e.message, field=e.field
                ) from e
        else:

            def _record_warning(error: Exception) -> None:
                nonlocal warning
                warning = str(error)

            with graceful_failure(
                "validate auto-saved answer",
                logger,
                context={"attempt_id": attempt_id, "question_id": question_id},
                on_error=_record_warning,
            ):
                parse_answer_payload(
                    question.question_type, answer, answer_data, question.options
                )

        score: Optional[float] = None
        is_correct: Optional[bool] = None
        if not is_draft:
            scored = score_answer(
                question.question_type,
                answer,
                answer_data,
                correct_answer=question.correct_answer,
                options=question.options,
                scoring_key=normalize_scoring_key(
                    question.question_type, question.scoring_key
                ),
                personality=is_personality_test(test),
            )
            score, is_correct = scored.score, scored.is_correct

        values = {
            "answer": answer,
            "answer_data": answer_data,
            "score": score,
            "is_correct": is_correct,
            "time_taken": time_taken,
            "confidence_level": confidence_level,
            "answered_at": now,
        }

        expected_status = attempt.status
        test_id = attempt.test_id
        total = (
            attempt.total_questions
            if attempt.total_questions is not None
            else test.total_questions
        )

        for retry in range(2):
            try:
                stored, created = await self._write_answer(
                    user_id, attempt_id, question_id, values
                )
                attempt_values: Dict[str, Any] = {"updated_at": now}
                if expected_status == AttemptStatus.STARTED:
                    attempt_values["status"] = AttemptStatus.IN_PROGRESS
                if not is_draft:
                    answers = await self._answers(attempt_id)
                    attempt_values["questions_answered"] = sum(
                        1 for a in answers if has_content(a.answer, a.answer_data)
                    )
                updated = await conditional_update(
                    self.db, attempt_id, expected_status, **attempt_values
                )
                if not updated:
                    await self.db.rollback()
                    raise AssessmentError(
                        ErrorKind.ATTEMPT_NOT_ACTIVE, ErrorMessages.ATTEMPT_NOT_ACTIVE
                    )
                await self.db.commit()
                break
            except IntegrityError:
                # Concurrent first write of the same answer; overwrite the winner
                await self.db.rollback()
                if retry:
                    raise AssessmentError(
                        ErrorKind.DATA_INTEGRITY_ERROR,
                        ErrorMessages.ANSWER_SAVE_CONFLICT,
                    )
                logger.warning(
                    f"Answer insert race on attempt {attempt_id}, "
                    f"question {question_id}; retrying as update"
                )

        await self.db.refresh(stored)
        attempt = await self._load_attempt(attempt_id)
        await self.db.refresh(attempt)
        question = await self._load_question(test_id, question_id)

        answers = await self._answers(attempt_id)
        answered_ids = {
            a.question_id for a in answers if has_content(a.answer, a.answer_data)
        }
        next_question = next(
            (q for q in await self._questions(test_id) if q.id not in answered_ids),
            None,
        )
        answered = len(answered_ids)
        progress = AnswerProgressSnapshot(
            answered_questions=answered,
            total_questions=total,
            progress_percentage=(
                int(round_half_up(answered / total * 100)) if total > 0 else 0
            ),
            time_remaining=seconds_until(attempt.end_time, now),
        )

        logger.info(
            f"Saved {'draft ' if is_draft else ''}answer for attempt {attempt_id}, "
            f"question {question_id} (created={created})"
        )
        return AnswerWriteOutcome(
            answer=stored,
            question=question,
            progress=progress,
            next_question=next_question,
            validation_warning=warning,
            created=created,
        )

    async def submit(
        self,
        user: User,
        attempt_id: int,
        question_id: int,
        answer: Optional[str] = None,
        answer_data: Optional[Dict[str, Any]] = None,
        is_draft: bool = False,
        time_taken: Optional[int] = None,
        confidence_level: Optional[int] = None,
    ) -> AnswerWriteOutcome:
        """
        Validate, score and store an answer.

        Drafts are validated but not scored. A non-draft submit recounts the
        attempt's answered questions.

        Raises:
            AssessmentError: NOT_FOUND, FORBIDDEN, ATTEMPT_NOT_ACTIVE or
                INVALID_ANSWER_FORMAT (nothing is written)
        """
        return await self._save(
            user,
            attempt_id,
            question_id,
            answer,
            answer_data,
            is_draft=is_draft,
            strict=True,
            time_taken=time_taken,
            confidence_level=confidence_level,
        )

    async def auto_save(
        self,
        user: User,
        attempt_id: int,
        question_id: int,
        answer: Optional[str] = None,
        answer_data: Optional[Dict[str, Any]] = None,
        time_taken: Optional[int] = None,
        confidence_level: Optional[int] = None,
    ) -> AnswerWriteOutcome:
        """
        Store a partial answer as a draft.

        A payload that fails validation is still stored; the problem is
        logged and returned as ``validation_warning``.
        """
        return await self._save(
            user,
            attempt_id,
            question_id,
            answer,
            answer_data,
            is_draft=True,
            strict=False,
            time_taken=time_taken,
            confidence_level=confidence_level,
        )

    # =========================================================================
    # Reads
    # =========================================================================

    async def list_answers(
        self,
        user: User,
        attempt_id: int,
        filters: Optional[AnswerFilters] = None,
        page: int = 1,
        limit: int = 50,
    ) -> AnswerListPage:
        """Paginated answers of an attempt, with summary figures."""
        filters = filters or AnswerFilters()
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        attempt = await self._load_for_view(user, attempt_id)
        total_questions = attempt.total_questions or 0

        result = await self.db.execute(
            select(UserAnswer, Question)
            .join(Question, UserAnswer.question_id == Question.id)
            .where(UserAnswer.attempt_id == attempt_id)
        )
        rows = [(answer, question) for answer, question in result.all()]

        answered_rows = [r for r in rows if has_content(r[0].answer, r[0].answer_data)]
        times = [a.time_taken for a, _ in answered_rows if a.time_taken is not None]
        confidences = [
            a.confidence_level for a, _ in answered_rows if a.confidence_level is not None
        ]
        average_time = _average(times)
        average_confidence = _average(confidences)
        summary = {
            "total_questions": total_questions,
            "answered_questions": len(answered_rows),
            "unanswered_questions": max(0, total_questions - len(answered_rows)),
            "progress_percentage": (
                int(round_half_up(len(answered_rows) / total_questions * 100))
                if total_questions > 0
                else 0
            ),
            "average_time_per_question": (
                int(round_half_up(average_time)) if average_time is not None else None
            ),
            "total_time_spent": sum(times) if times else None,
            "average_confidence_level": (
                round_half_up(average_confidence, 1)
                if average_confidence is not None
                else None
            ),
        }

        if filters.question_id is not None:
            rows = [r for r in rows if r[0].question_id == filters.question_id]
        if filters.is_answered is not None:
            rows = [
                r
                for r in rows
                if has_content(r[0].answer, r[0].answer_data) == filters.is_answered
            ]
        if filters.confidence_level is not None:
            rows = [r for r in rows if r[0].confidence_level == filters.confidence_level]

        sort_by = filters.sort_by if filters.sort_by in ANSWER_SORT_FIELDS else "sequence"

        def _sort_value(row: Tuple[UserAnswer, Question]) -> Any:
            answer, question = row
            if sort_by == "sequence":
                return question.sequence
            return getattr(answer, sort_by)

        # Nulls last in either direction
        present = [r for r in rows if _sort_value(r) is not None]
        present.sort(key=_sort_value, reverse=filters.sort_order == "desc")
        rows = present + [r for r in rows if _sort_value(r) is None]

        total = len(rows)
        start = (page - 1) * limit
        return AnswerListPage(
            rows=rows[start : start + limit],
            total=total,
            page=page,
            limit=limit,
            summary=summary,
        )

    async def get_answer(
        self, user: User, attempt_id: int, question_id: int
    ) -> Tuple[UserAnswer, Question, Optional[int], Optional[int]]:
        """
        One answer with its question and the neighbouring question ids.

        Returns:
            (answer, question, previous_question_id, next_question_id)
        """
        attempt = await self._load_for_view(user, attempt_id)
        question = await self._load_question(attempt.test_id, question_id)

        result = await self.db.execute(
            select(UserAnswer).where(
                UserAnswer.attempt_id == attempt_id,
                UserAnswer.question_id == question_id,
            )
        )
        answer = result.scalar_one_or_none()
        if answer is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.ANSWER_NOT_FOUND)

        ordered = [q.id for q in await self._questions(attempt.test_id)]
        index = ordered.index(question.id)
        previous_id = ordered[index - 1] if index > 0 else None
        next_id = ordered[index + 1] if index + 1 < len(ordered) else None
        return answer, question, previous_id, next_id

    async def answer_stats(self, user: User, attempt_id: int) -> Dict[str, Any]:
        """Counts by question type plus time and confidence aggregates."""
        is_admin = user.is_admin
        attempt = await self._load_for_view(user, attempt_id)
        questions = await self._questions(attempt.test_id)
        answers = {a.question_id: a for a in await self._answers(attempt_id)}

        by_type: Dict[QuestionType, Dict[str, Any]] = {}
        times: List[int] = []
        confidences: List[int] = []
        answered = drafts = correct = incorrect = 0

        for question in questions:
            bucket = by_type.setdefault(
                question.question_type,
                {
                    "question_type": question.question_type,
                    "total": 0,
                    "answered": 0,
                    "correct": 0 if is_admin else None,
                },
            )
            bucket["total"] += 1

            answer = answers.get(question.id)
            if answer is None or not has_content(answer.answer, answer.answer_data):
                continue
            answered += 1
            bucket["answered"] += 1
            if answer.score is None:
                drafts += 1
            if answer.is_correct is True:
                correct += 1
                if is_admin:
                    bucket["correct"] += 1
            elif answer.is_correct is False:
                incorrect += 1
            if answer.time_taken is not None:
                times.append(answer.time_taken)
            if answer.confidence_level is not None:
                confidences.append(answer.confidence_level)

        average_time = _average(times)
        average_confidence = _average(confidences)
        return {
            "attempt_id": attempt_id,
            "total_questions": attempt.total_questions or len(questions),
            "answered_questions": answered,
            "draft_answers": drafts,
            "correct_answers": correct if is_admin else None,
            "incorrect_answers": incorrect if is_admin else None,
            "average_time_per_question": (
                round_half_up(average_time, 1) if average_time is not None else None
            ),
            "total_time_spent": sum(times) if times else None,
            "average_confidence_level": (
                round_half_up(average_confidence, 1)
                if average_confidence is not None
                else None
            ),
            "by_question_type": list(by_type.values()),
        }

    async def recalculate_scores(
        self, attempt_id: int
    ) -> Tuple[int, List[ScoreChangeRecord]]:
        """
        Re-score every non-draft answer of an attempt with the current rules.

        Returns:
            (answers_checked, changes) where changes lists the answers whose
            score or correctness changed, with old and new values
        """
        attempt = await self._load_attempt(attempt_id)
        test = await self.db.get(Test, attempt.test_id)
        if test is None:
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, ErrorMessages.TEST_DATA_MISSING
            )
        personality = is_personality_test(test)

        result = await self.db.execute(
            select(UserAnswer, Question)
            .join(Question, UserAnswer.question_id == Question.id)
            .where(UserAnswer.attempt_id == attempt_id, UserAnswer.score.is_not(None))
            .order_by(Question.sequence)
        )

        rows = result.all()
        changes: List[ScoreChangeRecord] = []
        for answer, question in rows:
            scored = score_answer(
                question.question_type,
                answer.answer,
                answer.answer_data,
                correct_answer=question.correct_answer,
                options=question.options,
                scoring_key=normalize_scoring_key(
                    question.question_type, question.scoring_key
                ),
                personality=personality,
            )
            if scored.score == answer.score and scored.is_correct == answer.is_correct:
                continue
            changes.append(
                ScoreChangeRecord(
                    answer_id=answer.id,
                    question_id=question.id,
                    old_score=answer.score,
                    new_score=scored.score,
                    old_is_correct=answer.is_correct,
                    new_is_correct=scored.is_correct,
                )
            )
            answer.score = scored.score
            answer.is_correct = scored.is_correct

        await self.db.commit()
        logger.info(
            f"Recalculated scores for attempt {attempt_id}: {len(changes)} changed"
        )
        return len(rows), changes

