"""
Models package for the psikotes backend.
"""
from .base import Base, engine, SessionLocal, AsyncSessionLocal, get_db
from .models import (
    User,
    AuthSession,
    Test,
    Question,
    TestSession,
    SessionModule,
    TestAttempt,
    UserAnswer,
    TestResult,
    SessionResult,
    UserPerformanceStats,
    QuestionType,
    AttemptStatus,
    SessionStatus,
    TestStatus,
    ModuleType,
    TestCategory,
    UserRole,
    TERMINAL_ATTEMPT_STATUSES,
    ACTIVE_ATTEMPT_STATUSES,
)

__all__ = [
    "Base",
    "engine",
    "SessionLocal",
    "AsyncSessionLocal",
    "get_db",
    "User",
    "AuthSession",
    "Test",
    "Question",
    "TestSession",
    "SessionModule",
    "TestAttempt",
    "UserAnswer",
    "TestResult",
    "SessionResult",
    "UserPerformanceStats",
    "QuestionType",
    "AttemptStatus",
    "SessionStatus",
    "TestStatus",
    "ModuleType",
    "TestCategory",
    "UserRole",
    "TERMINAL_ATTEMPT_STATUSES",
    "ACTIVE_ATTEMPT_STATUSES",
]
