"""
Pydantic schemas for test result endpoints.
"""
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class TraitScore(BaseModel):
    """Score for one dimension of a personality taxonomy."""

    name: str
    key: str
    score: int = Field(..., ge=0, le=100)
    description: str
    category: str = "personality"
    raw_average: float = Field(..., description="Mean 1-5 rating, one decimal")
    question_count: int


class TestResultResponse(BaseModel):
    """Schema for a calculated test result."""

    id: int
    attempt_id: int
    user_id: int
    test_id: int
    raw_score: Optional[float] = None
    scaled_score: Optional[float] = None
    percentile: Optional[float] = Field(
        None, description="Null for personality tests"
    )
    grade: Optional[str] = Field(None, description="A-E; null for personality tests")
    is_passed: Optional[bool] = Field(
        None, description="Null for personality tests"
    )
    completion_percentage: Optional[float] = None
    traits: Optional[List[TraitScore]] = None
    trait_names: Optional[List[str]] = None
    description: Optional[str] = None
    recommendations: Optional[str] = None
    detailed_analysis: Optional[Dict[str, Any]] = None
    calculated_at: datetime

    class Config:
        """Pydantic configuration."""

        from_attributes = True


class CalculateResultRequest(BaseModel):
    """Schema for requesting result calculation."""

    force_recalculate: bool = Field(
        False, description="Recompute and overwrite an existing result"
    )


class CalculateResultResponse(BaseModel):
    """Schema returned by the calculate endpoint."""

    message: str
    recalculated: bool
    result: TestResultResponse


class UserResultsResponse(BaseModel):
    """Schema for a user's results."""

    user_id: int
    results: List[TestResultResponse]
    total: int
