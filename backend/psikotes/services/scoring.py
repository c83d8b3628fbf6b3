"""
Answer scoring.

Pure functions: no database access, no clock. Given a question's type and
metadata and a submitted answer, produce an ``AnswerScore``.

Scoring rules by question type:

- multiple_choice / true_false: correct when the submitted value equals
  ``correct_answer``. The score is the matched option's explicit ``score``
  when it has one, otherwise 1 for correct and 0 for incorrect.
- rating_scale, and every question of a personality test: there is no right
  answer, so ``is_correct`` is always None. The 1-5 rating is attributed to the
  trait named by the scoring key and consumed only by the trait profile.
- text / drawing / sequence / matrix: any non-empty answer is credited,
  unless the scoring key carries expected values, in which case the answer
  must match them exactly.

Scoring keys arrive in several historical shapes and are normalized by
``normalize_scoring_key`` before use.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Union

from psikotes.models.models import QuestionType

logger = logging.getLogger(__name__)

OBJECTIVE_TYPES = frozenset({QuestionType.MULTIPLE_CHOICE, QuestionType.TRUE_FALSE})
OPEN_TYPES = frozenset(
    {
        QuestionType.TEXT,
        QuestionType.DRAWING,
        QuestionType.SEQUENCE,
        QuestionType.MATRIX,
    }
)

# answer_data field holding the primary value of each structured type
_PRIMARY_FIELD = {
    QuestionType.TEXT: "answer",
    QuestionType.DRAWING: "drawing_data",
    QuestionType.SEQUENCE: "sequence",
    QuestionType.MATRIX: "matrix_selection",
}


# =============================================================================
# Scoring keys
# =============================================================================


@dataclass(frozen=True)
class NoKey:
    """Question has no scoring key."""


@dataclass(frozen=True)
class TraitKey:
    """Rating is attributed to a personality trait."""

    trait: str


@dataclass(frozen=True)
class OptionScoreKey:
    """Numeric score per option value."""

    scores: Dict[str, float]


@dataclass(frozen=True)
class ExpectedValueKey:
    """Exact values an open answer must match, keyed by payload field."""

    values: Dict[str, Any]


ScoringKey = Union[NoKey, TraitKey, OptionScoreKey, ExpectedValueKey]


def round_half_up(value: float, ndigits: int = 0) -> float:
    """Round with halves going up (87.5 -> 88), unlike the built-in round()."""
    factor = 10**ndigits
    return math.floor(value * factor + 0.5) / factor


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def normalize_scoring_key(question_type: QuestionType, raw: Any) -> ScoringKey:
    """
    Convert a stored ``scoring_key`` into its typed representation.

    Accepted shapes:
        - ``"dominance"`` or ``{"trait": "dominance"}`` -> TraitKey
        - ``{"expected": <value or map>}`` -> ExpectedValueKey
        - ``{"a": 2, "b": 0}`` on choice/rating questions -> OptionScoreKey
        - any other mapping on open questions -> ExpectedValueKey

    Args:
        question_type: Type of the question the key belongs to
        raw: The JSON value stored on the question

    Returns:
        The normalized key; NoKey when the value is empty or unrecognised
    """
    if raw is None or raw == "" or raw == {}:
        return NoKey()

    if isinstance(raw, str):
        return TraitKey(trait=raw)

    if not isinstance(raw, Mapping):
        logger.debug(f"Ignoring unsupported scoring key shape: {type(raw).__name__}")
        return NoKey()

    trait = raw.get("trait")
    if isinstance(trait, str) and trait:
        return TraitKey(trait=trait)

    if "expected" in raw:
        expected = raw["expected"]
        if isinstance(expected, Mapping):
            return ExpectedValueKey(values=dict(expected))
        primary = _PRIMARY_FIELD.get(question_type, "answer")
        return ExpectedValueKey(values={primary: expected})

    if question_type in OPEN_TYPES:
        return ExpectedValueKey(values=dict(raw))

    if all(_is_number(v) for v in raw.values()):
        return OptionScoreKey(scores={str(k): float(v) for k, v in raw.items()})

    logger.debug(f"Ignoring unrecognised scoring key for {question_type.value}")
    return NoKey()


# =============================================================================
# Scoring
# =============================================================================


@dataclass(frozen=True)
class AnswerScore:
    """Outcome of scoring a single answer."""

    score: float
    is_correct: Optional[bool]
    trait: Optional[str] = None
    rating: Optional[int] = field(default=None)


def parse_rating(
    answer: Optional[str], answer_data: Optional[Mapping[str, Any]] = None
) -> Optional[int]:
    """
    Extract a 1-5 rating from a stored answer.

    Looks at ``answer`` first, then ``answer_data["value"]`` and
    ``answer_data["rating"]``.

    Returns:
        The rating, or None when absent or out of range
    """
    candidates: List[Any] = [answer]
    if answer_data:
        candidates.extend([answer_data.get("value"), answer_data.get("rating")])

    for candidate in candidates:
        if candidate is None or isinstance(candidate, bool):
            continue
        try:
            rating = int(str(candidate).strip())
        except ValueError:
            continue
        if 1 <= rating <= 5:
            return rating
    return None


def _find_option(
    options: Optional[List[Mapping[str, Any]]], value: Optional[str]
) -> Optional[Mapping[str, Any]]:
    if not options or value is None:
        return None
    for option in options:
        if str(option.get("value")) == value:
            return option
    return None


def _option_score(
    options: Optional[List[Mapping[str, Any]]],
    key: ScoringKey,
    value: Optional[str],
) -> Optional[float]:
    """Explicit score for a chosen value: option score first, then key map."""
    option = _find_option(options, value)
    if option is not None and _is_number(option.get("score")):
        return float(option["score"])
    if isinstance(key, OptionScoreKey) and value is not None and value in key.scores:
        return key.scores[value]
    return None


def _has_content(answer: Optional[str], answer_data: Optional[Mapping[str, Any]]) -> bool:
    if answer is not None and answer.strip():
        return True
    return bool(answer_data)


def _matches_expected(
    expected: Dict[str, Any],
    answer: Optional[str],
    answer_data: Optional[Mapping[str, Any]],
) -> bool:
    submitted: Dict[str, Any] = dict(answer_data or {})
    if answer is not None:
        submitted["answer"] = answer
    return all(submitted.get(name) == value for name, value in expected.items())


def score_answer(
    question_type: QuestionType,
    answer: Optional[str],
    answer_data: Optional[Mapping[str, Any]],
    *,
    correct_answer: Optional[str] = None,
    options: Optional[List[Mapping[str, Any]]] = None,
    scoring_key: ScoringKey = NoKey(),
    personality: bool = False,
) -> AnswerScore:
    """
    Score one answer.

    Args:
        question_type: Type of the question
        answer: Scalar answer as stored
        answer_data: Structured answer as stored
        correct_answer: The question's correct answer, if it has one
        options: The question's options (``value``/``label``/optional ``score``)
        scoring_key: Normalized scoring key
        personality: True when the question belongs to a personality test

    Returns:
        AnswerScore with score, correctness and, for rating-class answers,
        the trait and rating the answer contributes to
    """
    rating_class = personality or question_type == QuestionType.RATING_SCALE

    if not _has_content(answer, answer_data):
        return AnswerScore(score=0.0, is_correct=None if rating_class else False)

    if rating_class:
        trait = scoring_key.trait if isinstance(scoring_key, TraitKey) else None
        rating = parse_rating(answer, answer_data)
        explicit = _option_score(options, scoring_key, answer)
        if explicit is not None:
            score = explicit
        elif rating is not None:
            score = float(rating)
        else:
            score = 0.0
        return AnswerScore(score=score, is_correct=None, trait=trait, rating=rating)

    if question_type in OBJECTIVE_TYPES:
        is_correct = correct_answer is not None and answer == correct_answer
        explicit = _option_score(options, scoring_key, answer)
        if explicit is not None:
            return AnswerScore(score=explicit, is_correct=is_correct)
        return AnswerScore(score=1.0 if is_correct else 0.0, is_correct=is_correct)

    if isinstance(scoring_key, ExpectedValueKey):
        is_correct = _matches_expected(scoring_key.values, answer, answer_data)
        return AnswerScore(score=1.0 if is_correct else 0.0, is_correct=is_correct)

    # Open answer without an expected value: answered means credited
    return AnswerScore(score=1.0, is_correct=True)
