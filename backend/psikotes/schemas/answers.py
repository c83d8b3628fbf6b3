"""
Pydantic schemas for answer endpoints and the per-question-type payload union.

Each question type has exactly one payload model. ``parse_answer_payload``
validates a raw ``answer``/``answer_data`` pair against the model selected by
the ``question_type`` discriminator, so malformed shapes are rejected before
anything is written.
"""
from datetime import datetime
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    TypeAdapter,
    ValidationError,
    field_validator,
)

from psikotes.core.config import settings
from psikotes.models.models import QuestionType

RATING_MIN = 1
RATING_MAX = 5


class InvalidAnswerFormat(ValueError):
    """Raised when a payload does not match its question type's schema."""

    def __init__(self, message: str, field: str = "answer"):
        super().__init__(message)
        self.message = message
        self.field = field


# =============================================================================
# Structured answer_data shapes
# =============================================================================


class DrawingData(BaseModel):
    """Canvas export for drawing questions (Wartegg, DAP, HTP)."""

    model_config = ConfigDict(extra="forbid")

    drawing_data: str = Field(..., min_length=1, description="Encoded image data")
    format: Optional[str] = Field(None, description="Image format, e.g. 'png'")
    width: Optional[int] = Field(None, gt=0)
    height: Optional[int] = Field(None, gt=0)


class SequenceData(BaseModel):
    """Ordered list of items for sequence questions."""

    model_config = ConfigDict(extra="forbid")

    sequence: List[Union[int, float, str]]


class MatrixData(BaseModel):
    """Cell or pattern selection for matrix questions."""

    model_config = ConfigDict(extra="forbid")

    matrix_selection: Union[str, int, List[Any], Dict[str, Any]]

    @field_validator("matrix_selection")
    @classmethod
    def validate_not_empty(cls, v: Any) -> Any:
        if v in ("", [], {}):
            raise ValueError("Matrix selection is required")
        return v


# =============================================================================
# Tagged union of payloads
# =============================================================================


class _PayloadBase(BaseModel):
    model_config = ConfigDict(extra="forbid")


class MultipleChoicePayload(_PayloadBase):
    question_type: Literal[QuestionType.MULTIPLE_CHOICE]
    answer: str = Field(..., min_length=1)
    answer_data: None = None


class TrueFalsePayload(_PayloadBase):
    question_type: Literal[QuestionType.TRUE_FALSE]
    answer: Literal["true", "false"]
    answer_data: None = None


class TextPayload(_PayloadBase):
    question_type: Literal[QuestionType.TEXT]
    answer: str
    answer_data: None = None

    @field_validator("answer")
    @classmethod
    def validate_text(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("Text answer is required")
        if len(v) > settings.MAX_TEXT_ANSWER_LENGTH:
            raise ValueError(
                f"Text answer must be at most {settings.MAX_TEXT_ANSWER_LENGTH} characters"
            )
        return v


class RatingScalePayload(_PayloadBase):
    question_type: Literal[QuestionType.RATING_SCALE]
    answer: str
    answer_data: None = None

    @field_validator("answer")
    @classmethod
    def validate_rating(cls, v: str) -> str:
        try:
            rating = int(v.strip())
        except ValueError:
            raise ValueError(
                f"Rating must be a whole number between {RATING_MIN} and {RATING_MAX}"
            )
        if not RATING_MIN <= rating <= RATING_MAX:
            raise ValueError(f"Rating must be between {RATING_MIN} and {RATING_MAX}")
        return str(rating)

    @property
    def rating(self) -> int:
        return int(self.answer)


class DrawingPayload(_PayloadBase):
    question_type: Literal[QuestionType.DRAWING]
    answer: Optional[str] = None
    answer_data: DrawingData


class SequencePayload(_PayloadBase):
    question_type: Literal[QuestionType.SEQUENCE]
    answer: Optional[str] = None
    answer_data: SequenceData


class MatrixPayload(_PayloadBase):
    question_type: Literal[QuestionType.MATRIX]
    answer: Optional[str] = None
    answer_data: MatrixData


AnswerPayload = Annotated[
    Union[
        MultipleChoicePayload,
        TrueFalsePayload,
        TextPayload,
        RatingScalePayload,
        DrawingPayload,
        SequencePayload,
        MatrixPayload,
    ],
    Field(discriminator="question_type"),
]

_payload_adapter: TypeAdapter = TypeAdapter(AnswerPayload)


def _error_field(error: dict) -> str:
    # Union errors are prefixed with the discriminator tag; keep the path from
    # the first payload field onward.
    loc = [str(part) for part in error.get("loc", ())]
    for index, part in enumerate(loc):
        if part in ("answer", "answer_data"):
            return ".".join(loc[index:])
    return "answer"


def parse_answer_payload(
    question_type: QuestionType,
    answer: Optional[str],
    answer_data: Optional[Dict[str, Any]],
    options: Optional[List[Dict[str, Any]]] = None,
) -> AnswerPayload:
    """
    Validate a raw answer against the schema for ``question_type``.

    Args:
        question_type: Type of the question being answered
        answer: Scalar answer text, if any
        answer_data: Structured answer, if any
        options: The question's options; multiple-choice answers must match one

    Returns:
        The typed payload

    Raises:
        InvalidAnswerFormat: with a field-level message when validation fails
    """
    raw: Dict[str, Any] = {"question_type": question_type}
    if answer is not None:
        raw["answer"] = answer
    if answer_data is not None:
        raw["answer_data"] = answer_data

    try:
        payload = _payload_adapter.validate_python(raw)
    except ValidationError as e:
        first = e.errors()[0]
        message = str(first.get("msg", "Invalid answer")).removeprefix("Value error, ")
        raise InvalidAnswerFormat(message, field=_error_field(first)) from e

    if isinstance(payload, MultipleChoicePayload) and options:
        valid_values = {str(opt.get("value")) for opt in options}
        if payload.answer not in valid_values:
            raise InvalidAnswerFormat("Invalid option selected", field="answer")

    return payload


# =============================================================================
# Request schemas
# =============================================================================


class AutoSaveAnswerRequest(BaseModel):
    """Schema for auto-saving a partial answer. Content is not validated."""

    question_id: int = Field(..., gt=0, description="ID of the question")
    answer: Optional[str] = Field(None, description="Scalar answer text")
    answer_data: Optional[Dict[str, Any]] = Field(
        None, description="Structured answer for drawing/sequence/matrix questions"
    )
    time_taken: Optional[int] = Field(
        None, ge=0, description="Seconds spent on the question"
    )
    confidence_level: Optional[int] = Field(
        None, ge=1, le=5, description="Self-reported confidence (1-5)"
    )


class SubmitAnswerRequest(AutoSaveAnswerRequest):
    """Schema for submitting an answer."""

    is_draft: bool = Field(
        False, description="Drafts are stored without scoring"
    )


# =============================================================================
# Response schemas
# =============================================================================


class AnswerQuestionSummary(BaseModel):
    """Question fields returned alongside an answer."""

    id: int
    question: str
    question_type: QuestionType
    sequence: int
    options: Optional[List[Dict[str, Any]]] = None
    correct_answer: Optional[str] = Field(
        None, description="Only included for administrators"
    )

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class UserAnswerResponse(BaseModel):
    """Schema for a stored answer."""

    id: int = Field(..., description="Answer ID")
    user_id: int
    question_id: int
    attempt_id: int
    answer: Optional[str] = None
    answer_data: Optional[Dict[str, Any]] = None
    score: Optional[float] = Field(
        None, description="Score (null for drafts or when hidden)"
    )
    is_correct: Optional[bool] = Field(
        None, description="Correctness (null for drafts, ratings, or when hidden)"
    )
    time_taken: Optional[int] = None
    confidence_level: Optional[int] = None
    answered_at: datetime
    is_draft: bool = Field(False, description="True when the answer has not been scored")
    question: Optional[AnswerQuestionSummary] = None

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class AnswerProgress(BaseModel):
    """Progress snapshot returned after writing an answer."""

    answered_questions: int
    total_questions: int
    progress_percentage: int
    time_remaining: int = Field(..., description="Seconds until the attempt expires")


class NextQuestion(BaseModel):
    """The first unanswered question by sequence."""

    id: int
    sequence: int
    question_type: QuestionType


class SubmitAnswerResponse(BaseModel):
    """Schema returned by submit and auto-save."""

    message: str
    answer: UserAnswerResponse
    progress: AnswerProgress
    next_question: Optional[NextQuestion] = None
    validation_warning: Optional[str] = Field(
        None, description="Validation problem recorded for an auto-saved draft"
    )


class AnswerListSummary(BaseModel):
    """Aggregate figures over an attempt's answers."""

    total_questions: int
    answered_questions: int
    unanswered_questions: int
    progress_percentage: int
    average_time_per_question: Optional[int] = None
    total_time_spent: Optional[int] = None
    average_confidence_level: Optional[float] = None


class AnswerListResponse(BaseModel):
    """Schema for paginated answer listing."""

    answers: List[UserAnswerResponse]
    total: int
    page: int
    limit: int
    total_pages: int
    summary: AnswerListSummary


class AnswerDetailResponse(BaseModel):
    """Schema for a single answer with navigation hints."""

    answer: UserAnswerResponse
    formatted_answer: str
    previous_question_id: Optional[int] = None
    next_question_id: Optional[int] = None


class QuestionTypeStats(BaseModel):
    """Answer counts for one question type."""

    question_type: QuestionType
    total: int
    answered: int
    correct: Optional[int] = None


class AnswerStatsResponse(BaseModel):
    """Schema for per-attempt answer statistics."""

    attempt_id: int
    total_questions: int
    answered_questions: int
    draft_answers: int
    correct_answers: Optional[int] = Field(
        None, description="Only included for administrators"
    )
    incorrect_answers: Optional[int] = Field(
        None, description="Only included for administrators"
    )
    average_time_per_question: Optional[float] = None
    total_time_spent: Optional[int] = None
    average_confidence_level: Optional[float] = None
    by_question_type: List[QuestionTypeStats]


class ScoreChange(BaseModel):
    """One re-scored answer."""

    answer_id: int
    question_id: int
    old_score: Optional[float]
    new_score: float
    old_is_correct: Optional[bool]
    new_is_correct: Optional[bool]


class RecalculateScoresResponse(BaseModel):
    """Schema returned by the admin re-scoring endpoint."""

    attempt_id: int
    answers_checked: int
    answers_updated: int
    changes: List[ScoreChange]
