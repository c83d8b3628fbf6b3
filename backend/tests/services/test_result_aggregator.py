"""
Tests for ResultAggregator: calculating, recalculating and reading results.
"""
import pytest
from sqlalchemy import func, select

from psikotes.core.error_responses import AssessmentError, ErrorKind
from psikotes.models import AttemptStatus, Question, TestResult
from psikotes.services.answer_store import AnswerStore
from psikotes.services.attempt_lifecycle import AttemptLifecycleManager
from psikotes.services.result_aggregator import ResultAggregator


@pytest.fixture
def aggregator(async_db_session, clock):
    return ResultAggregator(async_db_session, clock)


@pytest.fixture
def manager(async_db_session, clock):
    return AttemptLifecycleManager(async_db_session, clock)


@pytest.fixture
def store(async_db_session, clock):
    return AnswerStore(async_db_session, clock)


async def _completed_cognitive(manager, store, user, test, question_ids, correct):
    started = await manager.start(user, test.id)
    attempt_id = started.view.attempt.id
    for index, question_id in enumerate(question_ids):
        await store.submit(
            user, attempt_id, question_id, answer="a" if index < correct else "b"
        )
    outcome = await manager.finish(user, attempt_id)
    return attempt_id, outcome.result


class TestCalculate:
    """Tests for ResultAggregator.calculate."""

    @pytest.mark.asyncio
    async def test_existing_result_is_returned_untouched(
        self,
        aggregator,
        manager,
        store,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, first = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 8
        )

        result, recalculated = await aggregator.calculate(attempt_id)

        assert recalculated is False
        assert result.id == first.id
        assert result.scaled_score == pytest.approx(80.0)
        assert result.grade == "B"

    @pytest.mark.asyncio
    async def test_forced_recalculation_is_deterministic(
        self,
        aggregator,
        async_db_session,
        manager,
        store,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, first = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 8
        )
        first_id = first.id
        before = (first.raw_score, first.scaled_score, first.grade, first.is_passed)

        result, recalculated = await aggregator.calculate(
            attempt_id, force_recalculate=True
        )

        assert recalculated is True
        assert result.id == first_id
        assert (
            result.raw_score,
            result.scaled_score,
            result.grade,
            result.is_passed,
        ) == before

        rows = await async_db_session.execute(
            select(func.count(TestResult.id)).where(TestResult.attempt_id == attempt_id)
        )
        assert rows.scalar() == 1

    @pytest.mark.asyncio
    async def test_recalculation_follows_stored_scores(
        self,
        aggregator,
        async_db_session,
        manager,
        store,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        """Scores changed by re-scoring flow into a forced recalculation."""
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, _ = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 5
        )

        for question_id in question_ids[5:]:
            question = await async_db_session.get(Question, question_id)
            question.correct_answer = "b"
        await async_db_session.commit()
        await store.recalculate_scores(attempt_id)

        result, _ = await aggregator.calculate(attempt_id, force_recalculate=True)
        assert result.scaled_score == pytest.approx(100.0)
        assert result.grade == "A"

    @pytest.mark.asyncio
    async def test_recalculation_uses_current_answer_key(
        self,
        aggregator,
        async_db_session,
        manager,
        store,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        """Stored per-answer scores are ignored in favour of the current key."""
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, first = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 5
        )
        assert first.raw_score == pytest.approx(5.0)

        for question_id in question_ids[5:]:
            question = await async_db_session.get(Question, question_id)
            question.correct_answer = "b"
        await async_db_session.commit()

        result, _ = await aggregator.calculate(attempt_id, force_recalculate=True)
        assert result.raw_score == pytest.approx(10.0)
        assert result.grade == "A"

    @pytest.mark.asyncio
    async def test_auto_saved_answers_are_scored(
        self,
        manager,
        store,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        started = await manager.start(participant, async_cognitive_test.id)
        attempt_id = started.view.attempt.id

        await store.submit(participant, attempt_id, question_ids[0], answer="a")
        await store.auto_save(participant, attempt_id, question_ids[1], answer="a")
        await store.submit(
            participant, attempt_id, question_ids[2], answer="b", is_draft=True
        )

        outcome = await manager.finish(participant, attempt_id)

        result = outcome.result
        assert result.raw_score == pytest.approx(2.0)
        assert result.scaled_score == pytest.approx(20.0)
        assert result.detailed_analysis["answered_questions"] == 3
        assert result.detailed_analysis["correct_answers"] == 2

    @pytest.mark.asyncio
    async def test_attempt_must_be_completed(
        self, aggregator, manager, participant, async_cognitive_test
    ):
        started = await manager.start(participant, async_cognitive_test.id)

        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.calculate(started.view.attempt.id)
        assert exc_info.value.kind == ErrorKind.ATTEMPT_NOT_COMPLETED

    @pytest.mark.asyncio
    async def test_expired_attempt_has_no_result(
        self, aggregator, manager, clock, participant, async_cognitive_test
    ):
        started = await manager.start(participant, async_cognitive_test.id)
        attempt_id = started.view.attempt.id
        clock.advance(minutes=31)
        outcome = await manager.finish(participant, attempt_id)
        assert outcome.attempt.status == AttemptStatus.EXPIRED

        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.calculate(attempt_id)
        assert exc_info.value.kind == ErrorKind.ATTEMPT_NOT_COMPLETED

    @pytest.mark.asyncio
    async def test_requester_must_own_attempt(
        self,
        aggregator,
        manager,
        store,
        participant,
        second_participant,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, _ = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 3
        )

        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.calculate(attempt_id, requester=second_participant)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN

    @pytest.mark.asyncio
    async def test_unknown_attempt(self, aggregator, participant):
        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.calculate(9999)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND


class TestPersonalityResult:
    """Tests for personality results built through the full flow."""

    @pytest.mark.asyncio
    async def test_disc_profile(
        self,
        manager,
        store,
        participant,
        async_disc_test,
        async_question_ids,
    ):
        started = await manager.start(participant, async_disc_test.id)
        attempt_id = started.view.attempt.id
        question_ids = await async_question_ids(async_disc_test.id)

        # dominance 5, influence 4, steadiness 2, compliance unanswered
        for question_id, rating in zip(question_ids[:3], ["5", "4", "2"]):
            await store.submit(participant, attempt_id, question_id, answer=rating)

        outcome = await manager.finish(participant, attempt_id)
        result = outcome.result

        assert result.grade is None
        assert result.percentile is None
        assert result.is_passed is None
        assert result.completion_percentage == pytest.approx(75.0)
        assert result.trait_names == [
            "Dominance",
            "Influence",
            "Steadiness",
            "Compliance",
        ]
        scores = {t["key"]: t["score"] for t in result.traits}
        assert scores == {
            "dominance": 100,
            "influence": 75,
            "steadiness": 25,
            "compliance": 0,
        }


class TestReadResults:
    """Tests for reading stored results."""

    @pytest.mark.asyncio
    async def test_owner_and_admin_can_read(
        self,
        aggregator,
        manager,
        store,
        participant,
        admin,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        attempt_id, first = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 6
        )

        mine = await aggregator.get_result_for_attempt(participant, attempt_id)
        theirs = await aggregator.get_result_for_attempt(admin, attempt_id)
        assert mine.id == theirs.id == first.id

    @pytest.mark.asyncio
    async def test_missing_result(
        self, aggregator, manager, participant, async_cognitive_test
    ):
        started = await manager.start(participant, async_cognitive_test.id)

        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.get_result_for_attempt(
                participant, started.view.attempt.id
            )
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    @pytest.mark.asyncio
    async def test_user_results_newest_first(
        self,
        aggregator,
        manager,
        store,
        clock,
        participant,
        async_cognitive_test,
        async_question_ids,
    ):
        question_ids = await async_question_ids(async_cognitive_test.id)
        first_attempt, _ = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 4
        )
        clock.advance(hours=1)
        second_attempt, _ = await _completed_cognitive(
            manager, store, participant, async_cognitive_test, question_ids, 9
        )

        results = await aggregator.list_results_for_user(participant, participant.id)
        assert [r.attempt_id for r in results] == [second_attempt, first_attempt]

    @pytest.mark.asyncio
    async def test_user_results_are_private(
        self, aggregator, participant, second_participant
    ):
        with pytest.raises(AssessmentError) as exc_info:
            await aggregator.list_results_for_user(participant, second_participant.id)
        assert exc_info.value.kind == ErrorKind.FORBIDDEN
