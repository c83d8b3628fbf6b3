"""
Answer endpoints for in-flight attempts.

Mounted under ``/attempts``. Static paths (``auto-save``, ``stats``,
``recalculate-scores``) are declared before ``/{question_id}`` so they are
not captured by it.
"""
import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Query, status

from psikotes.api.v1.deps import get_answer_store
from psikotes.core.auth import get_current_user, require_admin
from psikotes.models import Question, User, UserAnswer
from psikotes.schemas.answers import (
    AnswerDetailResponse,
    AnswerListResponse,
    AnswerListSummary,
    AnswerProgress,
    AnswerQuestionSummary,
    AnswerStatsResponse,
    AutoSaveAnswerRequest,
    NextQuestion,
    QuestionTypeStats,
    RecalculateScoresResponse,
    ScoreChange,
    SubmitAnswerRequest,
    SubmitAnswerResponse,
    UserAnswerResponse,
)
from psikotes.services.answer_store import (
    AnswerFilters,
    AnswerStore,
    AnswerWriteOutcome,
    format_answer_for_display,
)

router = APIRouter()
logger = logging.getLogger(__name__)


def build_answer_response(
    answer: UserAnswer, question: Optional[Question], is_admin: bool
) -> UserAnswerResponse:
    """
    Serialize an answer. Scores, correctness and the correct answer are only
    shown to administrators.
    """
    question_summary = None
    if question is not None:
        question_summary = AnswerQuestionSummary(
            id=question.id,
            question=question.question,
            question_type=question.question_type,
            sequence=question.sequence,
            options=question.options,
            correct_answer=question.correct_answer if is_admin else None,
        )
    return UserAnswerResponse(
        id=answer.id,
        user_id=answer.user_id,
        question_id=answer.question_id,
        attempt_id=answer.attempt_id,
        answer=answer.answer,
        answer_data=answer.answer_data,
        score=answer.score if is_admin else None,
        is_correct=answer.is_correct if is_admin else None,
        time_taken=answer.time_taken,
        confidence_level=answer.confidence_level,
        answered_at=answer.answered_at,
        is_draft=answer.score is None,
        question=question_summary,
    )


def _write_response(
    outcome: AnswerWriteOutcome, message: str, is_admin: bool
) -> SubmitAnswerResponse:
    next_question = None
    if outcome.next_question is not None:
        next_question = NextQuestion(
            id=outcome.next_question.id,
            sequence=outcome.next_question.sequence,
            question_type=outcome.next_question.question_type,
        )
    return SubmitAnswerResponse(
        message=message,
        answer=build_answer_response(outcome.answer, outcome.question, is_admin),
        progress=AnswerProgress(
            answered_questions=outcome.progress.answered_questions,
            total_questions=outcome.progress.total_questions,
            progress_percentage=outcome.progress.progress_percentage,
            time_remaining=outcome.progress.time_remaining,
        ),
        next_question=next_question,
        validation_warning=outcome.validation_warning,
    )


@router.post(
    "/{attempt_id}/answers",
    response_model=SubmitAnswerResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_answer(
    attempt_id: int,
    payload: SubmitAnswerRequest,
    current_user: User = Depends(get_current_user),
    store: AnswerStore = Depends(get_answer_store),
):
    """
    Submit an answer for one question of an active attempt.

    Resubmitting replaces the earlier answer. Payloads that do not match the
    question type are rejected with 400 and nothing is stored.
    """
    is_admin = current_user.is_admin
    outcome = await store.submit(
        current_user,
        attempt_id,
        payload.question_id,
        answer=payload.answer,
        answer_data=payload.answer_data,
        is_draft=payload.is_draft,
        time_taken=payload.time_taken,
        confidence_level=payload.confidence_level,
    )
    if payload.is_draft:
        message = "Draft saved"
    elif outcome.created:
        message = "Answer submitted successfully"
    else:
        message = "Answer updated successfully"
    return _write_response(outcome, message, is_admin)


@router.post("/{attempt_id}/answers/auto-save", response_model=SubmitAnswerResponse)
async def auto_save_answer(
    attempt_id: int,
    payload: AutoSaveAnswerRequest,
    current_user: User = Depends(get_current_user),
    store: AnswerStore = Depends(get_answer_store),
):
    """
    Store a partial answer as an unscored draft.

    Malformed content is still saved; the problem is returned as
    ``validation_warning``.
    """
    is_admin = current_user.is_admin
    outcome = await store.auto_save(
        current_user,
        attempt_id,
        payload.question_id,
        answer=payload.answer,
        answer_data=payload.answer_data,
        time_taken=payload.time_taken,
        confidence_level=payload.confidence_level,
    )
    return _write_response(outcome, "Answer auto-saved", is_admin)


@router.get("/{attempt_id}/answers", response_model=AnswerListResponse)
async def list_answers(
    attempt_id: int,
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=50, ge=1, le=100),
    question_id: Optional[int] = Query(default=None, gt=0),
    is_answered: Optional[bool] = Query(default=None),
    confidence_level: Optional[int] = Query(default=None, ge=1, le=5),
    sort_by: Literal["sequence", "answered_at", "time_taken", "confidence_level"] = Query(
        default="sequence"
    ),
    sort_order: Literal["asc", "desc"] = Query(default="asc"),
    current_user: User = Depends(get_current_user),
    store: AnswerStore = Depends(get_answer_store),
):
    """List an attempt's answers with summary figures."""
    is_admin = current_user.is_admin
    filters = AnswerFilters(
        question_id=question_id,
        is_answered=is_answered,
        confidence_level=confidence_level,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    answer_page = await store.list_answers(
        current_user, attempt_id, filters, page=page, limit=limit
    )
    return AnswerListResponse(
        answers=[
            build_answer_response(answer, question, is_admin)
            for answer, question in answer_page.rows
        ],
        total=answer_page.total,
        page=answer_page.page,
        limit=answer_page.limit,
        total_pages=answer_page.total_pages,
        summary=AnswerListSummary(**answer_page.summary),
    )


@router.get("/{attempt_id}/answers/stats", response_model=AnswerStatsResponse)
async def get_answer_stats(
    attempt_id: int,
    current_user: User = Depends(get_current_user),
    store: AnswerStore = Depends(get_answer_store),
):
    """Answer counts by question type plus time and confidence aggregates."""
    stats = await store.answer_stats(current_user, attempt_id)
    by_type = [QuestionTypeStats(**bucket) for bucket in stats.pop("by_question_type")]
    return AnswerStatsResponse(**stats, by_question_type=by_type)


@router.post(
    "/{attempt_id}/answers/recalculate-scores",
    response_model=RecalculateScoresResponse,
)
async def recalculate_scores(
    attempt_id: int,
    current_user: User = Depends(require_admin),
    store: AnswerStore = Depends(get_answer_store),
):
    """Re-score every submitted answer of an attempt (administrators only)."""
    checked, changes = await store.recalculate_scores(attempt_id)
    return RecalculateScoresResponse(
        attempt_id=attempt_id,
        answers_checked=checked,
        answers_updated=len(changes),
        changes=[
            ScoreChange(
                answer_id=c.answer_id,
                question_id=c.question_id,
                old_score=c.old_score,
                new_score=c.new_score,
                old_is_correct=c.old_is_correct,
                new_is_correct=c.new_is_correct,
            )
            for c in changes
        ],
    )


@router.get("/{attempt_id}/answers/{question_id}", response_model=AnswerDetailResponse)
async def get_answer(
    attempt_id: int,
    question_id: int,
    current_user: User = Depends(get_current_user),
    store: AnswerStore = Depends(get_answer_store),
):
    """One answer with a display string and the neighbouring question ids."""
    is_admin = current_user.is_admin
    answer, question, previous_id, next_id = await store.get_answer(
        current_user, attempt_id, question_id
    )
    return AnswerDetailResponse(
        answer=build_answer_response(answer, question, is_admin),
        formatted_answer=format_answer_for_display(question, answer),
        previous_question_id=previous_id,
        next_question_id=next_id,
    )
