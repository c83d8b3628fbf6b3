"""
Test result endpoints.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends

from psikotes.api.v1.deps import get_result_aggregator
from psikotes.core.auth import get_current_user
from psikotes.models import User
from psikotes.schemas.results import (
    CalculateResultRequest,
    CalculateResultResponse,
    TestResultResponse,
    UserResultsResponse,
)
from psikotes.services.result_aggregator import ResultAggregator

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/attempt/{attempt_id}", response_model=TestResultResponse)
async def get_attempt_result(
    attempt_id: int,
    current_user: User = Depends(get_current_user),
    aggregator: ResultAggregator = Depends(get_result_aggregator),
):
    """Get the calculated result of an attempt."""
    result = await aggregator.get_result_for_attempt(current_user, attempt_id)
    return TestResultResponse.model_validate(result)


@router.post("/attempt/{attempt_id}/calculate", response_model=CalculateResultResponse)
async def calculate_attempt_result(
    attempt_id: int,
    payload: Optional[CalculateResultRequest] = Body(default=None),
    current_user: User = Depends(get_current_user),
    aggregator: ResultAggregator = Depends(get_result_aggregator),
):
    """
    Calculate the result of a completed attempt.

    An existing result is returned untouched unless ``force_recalculate`` is
    set. Calculating twice with the same answers yields the same figures.
    """
    force = payload.force_recalculate if payload is not None else False
    result, recalculated = await aggregator.calculate(
        attempt_id, force_recalculate=force, requester=current_user
    )
    return CalculateResultResponse(
        message=(
            "Result calculated successfully"
            if recalculated
            else "Result already calculated"
        ),
        recalculated=recalculated,
        result=TestResultResponse.model_validate(result),
    )


@router.get("/user/{user_id}", response_model=UserResultsResponse)
async def list_user_results(
    user_id: int,
    current_user: User = Depends(get_current_user),
    aggregator: ResultAggregator = Depends(get_result_aggregator),
):
    """List a user's results, newest first."""
    results = await aggregator.list_results_for_user(current_user, user_id)
    return UserResultsResponse(
        user_id=user_id,
        results=[TestResultResponse.model_validate(r) for r in results],
        total=len(results),
    )
