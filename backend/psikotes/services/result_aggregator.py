"""
Result aggregation for completed attempts.

Two scoring classes exist:

- Personality (module_type ``personality`` or a rating-scale test): no grade,
  percentile or pass/fail. The result carries a trait profile built from the
  category's fixed taxonomy and a distribution of 1-5 ratings.
- Cognitive (everything else): raw score is the sum of per-answer scores,
  scaled to 0-100 against the test's question count and banded into a grade.

Every calculation re-reads the attempt's answers; cached counters on the
attempt are never used for scoring. Results are upserted by attempt_id, so
recomputing over unchanged answers reproduces the same row.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.config import settings
from psikotes.core.datetime_utils import Clock, utc_now
from psikotes.core.error_responses import AssessmentError, ErrorKind, ErrorMessages
from psikotes.models import (
    AttemptStatus,
    ModuleType,
    Question,
    QuestionType,
    Test,
    TestAttempt,
    TestResult,
    User,
    UserAnswer,
)
from psikotes.services.scoring import (
    TraitKey,
    normalize_scoring_key,
    parse_rating,
    round_half_up,
    score_answer,
)
from psikotes.services.trait_taxonomy import taxonomy_for

logger = logging.getLogger(__name__)

RATING_VALUES = ("1", "2", "3", "4", "5")

# Grade bands on the 0-100 scaled score; D is anything from the passing score
GRADE_BANDS = ((90.0, "A"), (80.0, "B"), (70.0, "C"))


def is_personality_test(test: Test) -> bool:
    """Personality class: personality module or a rating-scale test."""
    return (
        test.module_type == ModuleType.PERSONALITY
        or test.question_type == QuestionType.RATING_SCALE
    )


def calculate_grade(scaled_score: float, passing_score: float) -> str:
    """Band a scaled score into A-E."""
    for threshold, grade in GRADE_BANDS:
        if scaled_score >= threshold:
            return grade
    if scaled_score >= passing_score:
        return "D"
    return "E"


def trait_score(ratings: List[int]) -> Tuple[int, float]:
    """
    Convert a trait's 1-5 ratings into a 0-100 score.

    Returns:
        (score, raw_average) where raw_average is rounded to one decimal.
        A trait without ratings scores (0, 0.0).
    """
    if not ratings:
        return 0, 0.0
    average = sum(ratings) / len(ratings)
    score = int(round_half_up((average - 1) / 4 * 100))
    return max(0, min(100, score)), round_half_up(average, 1)


def dominant_rating(distribution: Dict[str, int]) -> Tuple[str, int]:
    """Most frequent rating; ties go to the lower rating, empty defaults to 3."""
    best_rating, best_count = "3", 0
    for rating in RATING_VALUES:
        count = distribution.get(rating, 0)
        if count > best_count:
            best_rating, best_count = rating, count
    return best_rating, best_count


def build_trait_profile(
    test: Test, trait_ratings: Dict[str, List[int]], observed_order: List[str]
) -> List[Dict[str, Any]]:
    """
    Build the trait list for a personality result.

    Categories with a taxonomy always emit every trait of it, in taxonomy
    order. Other personality categories emit the traits seen in the answers,
    in first-seen order.
    """
    definitions = taxonomy_for(test.category)
    if definitions:
        entries = [(d.name, d.key, d.description) for d in definitions]
    else:
        entries = [
            (key.replace("_", " ").title(), key, "") for key in observed_order
        ]

    traits = []
    for name, key, description in entries:
        ratings = trait_ratings.get(key, [])
        score, raw_average = trait_score(ratings)
        traits.append(
            {
                "name": name,
                "key": key,
                "score": score,
                "description": description,
                "category": "personality",
                "raw_average": raw_average,
                "question_count": len(ratings),
            }
        )
    return traits


def personality_recommendations(distribution: Dict[str, int]) -> str:
    rating, _ = dominant_rating(distribution)
    if int(rating) >= 4:
        text = (
            "Strong personality traits detected. Consider leadership roles or "
            "positions with high responsibility that build on these strengths."
        )
    elif int(rating) == 3:
        text = (
            "Balanced personality profile. Well suited to collaborative roles "
            "and team-based positions."
        )
    else:
        text = (
            "Introspective personality profile. Consider roles that call for "
            "careful analysis and independent work."
        )
    return text + (
        " Focus on personal development and self-awareness training to build "
        "on these strengths."
    )


def cognitive_recommendations(
    scaled_score: float, is_passed: bool, module_type: ModuleType
) -> str:
    if is_passed:
        if scaled_score >= 90:
            text = "Excellent performance. Consider advanced roles and leadership positions."
        elif scaled_score >= 80:
            text = (
                "Good performance. Suitable for the target position with some "
                "skill development."
            )
        else:
            text = (
                "Average performance. Additional training is recommended to "
                "strengthen these abilities."
            )
    else:
        text = (
            "Performance is below the passing threshold. A retest after skill "
            "development, or an alternative position, is recommended."
        )

    if module_type == ModuleType.INTELLIGENCE:
        text += " Consider cognitive training and problem-solving practice."
    elif module_type == ModuleType.APTITUDE:
        text += " Focus on skill-specific training and practice in the relevant areas."
    return text


@dataclass
class ScoredAttempt:
    """Result fields computed from an attempt's answers."""

    raw_score: float
    scaled_score: float
    percentile: Optional[float]
    grade: Optional[str]
    is_passed: Optional[bool]
    completion_percentage: float
    traits: Optional[List[Dict[str, Any]]]
    description: str
    recommendations: str
    detailed_analysis: Dict[str, Any] = field(default_factory=dict)

    def as_columns(self) -> Dict[str, Any]:
        return {
            "raw_score": self.raw_score,
            "scaled_score": self.scaled_score,
            "percentile": self.percentile,
            "grade": self.grade,
            "is_passed": self.is_passed,
            "completion_percentage": self.completion_percentage,
            "traits": self.traits,
            "trait_names": [t["name"] for t in self.traits] if self.traits else None,
            "description": self.description,
            "recommendations": self.recommendations,
            "detailed_analysis": self.detailed_analysis,
        }


def _has_content(answer: UserAnswer) -> bool:
    if answer.answer is not None and str(answer.answer).strip():
        return True
    return bool(answer.answer_data)


def score_personality(
    test: Test,
    rows: List[Tuple[UserAnswer, Question]],
    total_questions: int,
) -> ScoredAttempt:
    """Aggregate rating answers into a trait profile."""
    answered = sum(1 for answer, _ in rows if _has_content(answer))
    completion = answered / total_questions * 100 if total_questions > 0 else 0.0

    distribution = {rating: 0 for rating in RATING_VALUES}
    trait_ratings: Dict[str, List[int]] = {}
    observed_order: List[str] = []

    for answer, question in rows:
        rating = parse_rating(answer.answer, answer.answer_data)
        if rating is None:
            continue
        distribution[str(rating)] += 1

        key = normalize_scoring_key(question.question_type, question.scoring_key)
        if isinstance(key, TraitKey):
            trait = key.trait.strip().lower()
            if trait not in trait_ratings:
                trait_ratings[trait] = []
                observed_order.append(trait)
            trait_ratings[trait].append(rating)

    total_ratings = sum(distribution.values())
    traits = build_trait_profile(test, trait_ratings, observed_order)

    rating, count = dominant_rating(distribution)
    share = round_half_up(count / total_ratings * 100) if total_ratings else 0
    description = (
        f"Test completed with {int(round_half_up(completion))}% completion rate. "
        f"Most responses in rating {rating} ({int(share)}% of answers)."
    )

    return ScoredAttempt(
        raw_score=float(total_ratings),
        scaled_score=completion,
        percentile=None,
        grade=None,
        is_passed=None,
        completion_percentage=completion,
        traits=traits,
        description=description,
        recommendations=personality_recommendations(distribution),
        detailed_analysis={
            "scoring_class": "personality",
            "rating_distribution": distribution,
            "answered_questions": answered,
            "total_questions": total_questions,
        },
    )


def score_cognitive(
    test: Test,
    rows: List[Tuple[UserAnswer, Question]],
    total_questions: int,
) -> ScoredAttempt:
    """Sum per-answer scores and band the scaled score into a grade."""
    answered = 0
    correct = 0
    raw_score = 0.0

    for answer, question in rows:
        if not _has_content(answer):
            continue
        answered += 1

        # Stored scores may be stale or missing (drafts); score from the current key
        scored = score_answer(
            question.question_type,
            answer.answer,
            answer.answer_data,
            correct_answer=question.correct_answer,
            options=question.options,
            scoring_key=normalize_scoring_key(
                question.question_type, question.scoring_key
            ),
        )
        if scored.is_correct:
            correct += 1
        raw_score += scored.score

    completion = answered / total_questions * 100 if total_questions > 0 else 0.0
    scaled_score = raw_score / total_questions * 100 if total_questions > 0 else 0.0
    passing_score = (
        float(test.passing_score)
        if test.passing_score is not None
        else settings.DEFAULT_PASSING_SCORE
    )
    grade = calculate_grade(scaled_score, passing_score)
    is_passed = scaled_score >= passing_score

    description = (
        f"Test completed with {int(round_half_up(completion))}% completion rate. "
        f"Scored {int(round_half_up(scaled_score))} out of 100 ({grade})."
    )

    return ScoredAttempt(
        raw_score=raw_score,
        scaled_score=scaled_score,
        percentile=min(100.0, scaled_score),
        grade=grade,
        is_passed=is_passed,
        completion_percentage=completion,
        traits=None,
        description=description,
        recommendations=cognitive_recommendations(
            scaled_score, is_passed, test.module_type
        ),
        detailed_analysis={
            "scoring_class": "cognitive",
            "answered_questions": answered,
            "correct_answers": correct,
            "total_questions": total_questions,
            "accuracy": round(correct / answered * 100, 2) if answered else 0.0,
            "passing_score": passing_score,
        },
    )


class ResultAggregator:
    """Computes and persists TestResult rows for completed attempts."""

    def __init__(self, db: AsyncSession, clock: Clock = utc_now):
        self.db = db
        self.clock = clock

    async def _load_attempt(self, attempt_id: int) -> TestAttempt:
        attempt = await self.db.get(TestAttempt, attempt_id)
        if attempt is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.ATTEMPT_NOT_FOUND)
        return attempt

    @staticmethod
    def _ensure_can_view(requester: User, attempt: TestAttempt) -> None:
        if attempt.user_id != requester.id and not requester.is_admin:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.RESULT_ACCESS_DENIED
            )

    async def _existing_result(self, attempt_id: int) -> Optional[TestResult]:
        result = await self.db.execute(
            select(TestResult).where(TestResult.attempt_id == attempt_id)
        )
        return result.scalar_one_or_none()

    async def _answer_rows(self, attempt_id: int) -> List[Tuple[UserAnswer, Question]]:
        result = await self.db.execute(
            select(UserAnswer, Question)
            .join(Question, UserAnswer.question_id == Question.id)
            .where(UserAnswer.attempt_id == attempt_id)
            .order_by(Question.sequence)
        )
        return [(answer, question) for answer, question in result.all()]

    async def calculate(
        self,
        attempt_id: int,
        force_recalculate: bool = False,
        requester: Optional[User] = None,
    ) -> Tuple[TestResult, bool]:
        """
        Calculate (or return) the result of a completed attempt.

        Args:
            attempt_id: Attempt to score
            force_recalculate: Overwrite an existing result
            requester: When given, must own the attempt or be an admin

        Returns:
            (result, recalculated) where recalculated is False when an existing
            result was returned untouched

        Raises:
            AssessmentError: NOT_FOUND, FORBIDDEN or ATTEMPT_NOT_COMPLETED
        """
        attempt = await self._load_attempt(attempt_id)
        if requester is not None:
            self._ensure_can_view(requester, attempt)

        if attempt.status != AttemptStatus.COMPLETED:
            raise AssessmentError(
                ErrorKind.ATTEMPT_NOT_COMPLETED, ErrorMessages.ATTEMPT_NOT_COMPLETED
            )

        existing = await self._existing_result(attempt_id)
        if existing is not None and not force_recalculate:
            return existing, False

        test = await self.db.get(Test, attempt.test_id)
        if test is None:
            raise AssessmentError(
                ErrorKind.DATA_INTEGRITY_ERROR, ErrorMessages.TEST_DATA_MISSING
            )

        total_questions = (
            attempt.total_questions
            if attempt.total_questions is not None
            else test.total_questions
        )
        rows = await self._answer_rows(attempt_id)

        if is_personality_test(test):
            scored = score_personality(test, rows, total_questions)
        else:
            scored = score_cognitive(test, rows, total_questions)

        columns = scored.as_columns()
        columns["calculated_at"] = self.clock()
        user_id, test_id = attempt.user_id, attempt.test_id

        result = await self._upsert(attempt_id, user_id, test_id, existing, columns)

        logger.info(
            f"Calculated result for attempt {attempt_id}: "
            f"raw={scored.raw_score}, scaled={scored.scaled_score:.1f}, "
            f"grade={scored.grade}, recalculated={existing is not None}"
        )
        return result, True

    async def _upsert(
        self,
        attempt_id: int,
        user_id: int,
        test_id: int,
        existing: Optional[TestResult],
        columns: Dict[str, Any],
    ) -> TestResult:
        if existing is None:
            result = TestResult(
                attempt_id=attempt_id, user_id=user_id, test_id=test_id, **columns
            )
            self.db.add(result)
            try:
                await self.db.commit()
                await self.db.refresh(result)
                return result
            except IntegrityError:
                # Another request inserted the result first; overwrite it
                await self.db.rollback()
                logger.warning(
                    f"Concurrent result insert for attempt {attempt_id}, updating instead"
                )
                existing = await self._existing_result(attempt_id)
                if existing is None:
                    raise

        for name, value in columns.items():
            setattr(existing, name, value)
        await self.db.commit()
        await self.db.refresh(existing)
        return existing

    async def get_result_for_attempt(self, requester: User, attempt_id: int) -> TestResult:
        """Read the result of an attempt (owner or admin)."""
        attempt = await self._load_attempt(attempt_id)
        self._ensure_can_view(requester, attempt)

        result = await self._existing_result(attempt_id)
        if result is None:
            raise AssessmentError(ErrorKind.NOT_FOUND, ErrorMessages.RESULT_NOT_FOUND)
        return result

    async def list_results_for_user(
        self, requester: User, user_id: int
    ) -> List[TestResult]:
        """All results of a user, newest first (owner or admin)."""
        if requester.id != user_id and not requester.is_admin:
            raise AssessmentError(
                ErrorKind.FORBIDDEN, ErrorMessages.RESULT_ACCESS_DENIED
            )

        result = await self.db.execute(
            select(TestResult)
            .where(TestResult.user_id == user_id)
            .order_by(TestResult.calculated_at.desc(), TestResult.id.desc())
        )
        return list(result.scalars().all())
