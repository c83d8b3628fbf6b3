"""
Shared FastAPI dependencies for the v1 endpoints.

Services receive the request's database session and a clock. Tests pin time
by overriding ``get_clock`` and swap the scheduler via ``get_scheduler``.
"""
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from psikotes.core.datetime_utils import Clock, utc_now
from psikotes.models import get_db
from psikotes.services.answer_store import AnswerStore
from psikotes.services.attempt_lifecycle import AttemptLifecycleManager
from psikotes.services.result_aggregator import ResultAggregator
from psikotes.services.session_scheduler import SessionStatisticsScheduler


def get_clock() -> Clock:
    return utc_now


def get_attempt_manager(
    db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)
) -> AttemptLifecycleManager:
    return AttemptLifecycleManager(db, clock)


def get_answer_store(
    db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)
) -> AnswerStore:
    return AnswerStore(db, clock)


def get_result_aggregator(
    db: AsyncSession = Depends(get_db), clock: Clock = Depends(get_clock)
) -> ResultAggregator:
    return ResultAggregator(db, clock)


def get_scheduler(request: Request) -> SessionStatisticsScheduler:
    """The application's scheduler instance (created in ``create_application``)."""
    return request.app.state.scheduler
