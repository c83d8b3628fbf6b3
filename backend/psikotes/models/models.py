"""
Database models for the psikotes assessment engine.

Tests, questions, sessions and users are authored by other services; this
package reads them and owns attempts, answers, results and the performance
statistics snapshot.
"""
from sqlalchemy import (
    Column,
    Integer,
    String,
    Boolean,
    DateTime,
    ForeignKey,
    Text,
    Enum,
    Float,
    UniqueConstraint,
    Index,
    CheckConstraint,
)
from sqlalchemy.orm import relationship
from sqlalchemy.dialects.postgresql import JSON
from datetime import datetime, timezone
import enum

from .base import Base


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class QuestionType(str, enum.Enum):
    """Question type enumeration."""

    MULTIPLE_CHOICE = "multiple_choice"
    TRUE_FALSE = "true_false"
    TEXT = "text"
    RATING_SCALE = "rating_scale"
    DRAWING = "drawing"
    SEQUENCE = "sequence"
    MATRIX = "matrix"


class AttemptStatus(str, enum.Enum):
    """Test attempt status enumeration."""

    STARTED = "started"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    ABANDONED = "abandoned"
    EXPIRED = "expired"


class SessionStatus(str, enum.Enum):
    """Test session (administration window) status enumeration."""

    DRAFT = "draft"
    ACTIVE = "active"
    EXPIRED = "expired"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class TestStatus(str, enum.Enum):
    """Publication status of a test."""

    __test__ = False

    ACTIVE = "active"
    INACTIVE = "inactive"
    ARCHIVED = "archived"


class ModuleType(str, enum.Enum):
    """Psychometric module type enumeration."""

    INTELLIGENCE = "intelligence"
    PERSONALITY = "personality"
    APTITUDE = "aptitude"
    INTEREST = "interest"
    PROJECTIVE = "projective"
    COGNITIVE = "cognitive"


class TestCategory(str, enum.Enum):
    """Instrument family of a test."""

    __test__ = False

    WAIS = "wais"
    MBTI = "mbti"
    WARTEGG = "wartegg"
    RIASEC = "riasec"
    KRAEPELIN = "kraepelin"
    PAULI = "pauli"
    BIG_FIVE = "big_five"
    PAPI_KOSTICK = "papi_kostick"
    DAP = "dap"
    RAVEN = "raven"
    EPPS = "epps"
    ARMY_ALPHA = "army_alpha"
    HTP = "htp"
    DISC = "disc"
    IQ = "iq"
    EQ = "eq"


class UserRole(str, enum.Enum):
    """User role enumeration."""

    ADMIN = "admin"
    PARTICIPANT = "participant"


TERMINAL_ATTEMPT_STATUSES = frozenset(
    {AttemptStatus.COMPLETED, AttemptStatus.ABANDONED, AttemptStatus.EXPIRED}
)
ACTIVE_ATTEMPT_STATUSES = frozenset({AttemptStatus.STARTED, AttemptStatus.IN_PROGRESS})


class User(Base):
    """Participant or administrator account (managed by the auth service)."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    full_name = Column(String(255))
    role = Column(Enum(UserRole), default=UserRole.PARTICIPANT, nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    # Relationships
    attempts = relationship("TestAttempt", back_populates="user")
    auth_sessions = relationship(
        "AuthSession", back_populates="user", cascade="all, delete-orphan"
    )

    @property
    def is_admin(self) -> bool:
        return self.role == UserRole.ADMIN


class AuthSession(Base):
    """Login session record; only cleaned up here."""

    __tablename__ = "auth_sessions"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(
        Integer, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    token = Column(String(512), nullable=False, unique=True)
    refresh_token = Column(String(512), nullable=True)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)
    last_used = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    user = relationship("User", back_populates="auth_sessions")


class Test(Base):
    """Psychometric test definition (authored elsewhere, read-only here)."""

    __tablename__ = "tests"
    __test__ = False

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(255), nullable=False)
    category = Column(Enum(TestCategory), nullable=False, index=True)
    module_type = Column(Enum(ModuleType), nullable=False, index=True)
    question_type = Column(
        Enum(QuestionType), default=QuestionType.MULTIPLE_CHOICE, nullable=False
    )
    time_limit = Column(Integer, nullable=False)  # minutes
    total_questions = Column(Integer, default=0, nullable=False)
    passing_score = Column(Float, nullable=True)  # scaled 0-100
    status = Column(Enum(TestStatus), default=TestStatus.ACTIVE, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    questions = relationship(
        "Question", back_populates="test", order_by="Question.sequence"
    )

    __table_args__ = (
        CheckConstraint("time_limit > 0", name="ck_tests_time_limit_positive"),
        CheckConstraint(
            "total_questions >= 0", name="ck_tests_total_questions_non_negative"
        ),
    )


class Question(Base):
    """A single item of a test."""

    __tablename__ = "questions"

    id = Column(Integer, primary_key=True, index=True)
    test_id = Column(
        Integer, ForeignKey("tests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    question = Column(Text, nullable=False)
    question_type = Column(Enum(QuestionType), nullable=False)
    # [{"value": "a", "label": "Option A", "score": 2}, ...]
    options = Column(JSON, nullable=True)
    correct_answer = Column(String(500), nullable=True)
    # {"trait": "dominance"} or {"expected": ...}; see services.scoring
    scoring_key = Column(JSON, nullable=True)
    sequence = Column(Integer, nullable=False)
    time_limit = Column(Integer, nullable=True)  # seconds
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    test = relationship("Test", back_populates="questions")

    __table_args__ = (
        UniqueConstraint("test_id", "sequence", name="uq_questions_test_sequence"),
    )


class TestSession(Base):
    """A scheduled administration window grouping several tests."""

    __tablename__ = "test_sessions"
    __test__ = False

    id = Column(Integer, primary_key=True, index=True)
    session_name = Column(String(255), nullable=False)
    session_code = Column(String(50), unique=True, nullable=False, index=True)
    start_time = Column(DateTime(timezone=True), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=False)
    status = Column(
        Enum(SessionStatus), default=SessionStatus.DRAFT, nullable=False, index=True
    )
    auto_expire = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    modules = relationship(
        "SessionModule", back_populates="session", order_by="SessionModule.sequence"
    )


class SessionModule(Base):
    """Membership of a test in a session, with its order and weight."""

    __tablename__ = "session_modules"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(
        Integer,
        ForeignKey("test_sessions.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    test_id = Column(
        Integer, ForeignKey("tests.id", ondelete="CASCADE"), nullable=False, index=True
    )
    sequence = Column(Integer, nullable=False)
    is_required = Column(Boolean, default=True, nullable=False)
    weight = Column(Float, default=1.0, nullable=False)

    session = relationship("TestSession", back_populates="modules")
    test = relationship("Test")

    __table_args__ = (
        UniqueConstraint("session_id", "test_id", name="uq_session_modules_test"),
    )


class TestAttempt(Base):
    """One participant's timed run through one test."""

    __tablename__ = "test_attempts"
    __test__ = False

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False, index=True)
    session_test_id = Column(
        Integer, ForeignKey("test_sessions.id"), nullable=True, index=True
    )
    start_time = Column(DateTime(timezone=True), nullable=False)
    # start_time + test.time_limit; written once at creation
    end_time = Column(DateTime(timezone=True), nullable=False)
    actual_end_time = Column(DateTime(timezone=True), nullable=True)
    status = Column(
        Enum(AttemptStatus), default=AttemptStatus.STARTED, nullable=False, index=True
    )
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)
    browser_info = Column(JSON, nullable=True)
    attempt_number = Column(Integer, default=1, nullable=False)
    time_spent = Column(Integer, nullable=True)  # seconds
    questions_answered = Column(Integer, default=0, nullable=False)
    total_questions = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    user = relationship("User", back_populates="attempts")
    test = relationship("Test")
    session = relationship("TestSession")
    answers = relationship("UserAnswer", back_populates="attempt")
    result = relationship("TestResult", back_populates="attempt", uselist=False)

    __table_args__ = (
        Index(
            "ix_test_attempts_user_test_session",
            "user_id",
            "test_id",
            "session_test_id",
        ),
        UniqueConstraint(
            "user_id",
            "test_id",
            "session_test_id",
            "attempt_number",
            name="uq_test_attempts_number",
        ),
        CheckConstraint(
            "questions_answered >= 0",
            name="ck_test_attempts_questions_answered_non_negative",
        ),
    )


class UserAnswer(Base):
    """Answer to one question within one attempt; overwritten on resubmission."""

    __tablename__ = "user_answers"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    question_id = Column(Integer, ForeignKey("questions.id"), nullable=False)
    attempt_id = Column(
        Integer, ForeignKey("test_attempts.id"), nullable=False, index=True
    )
    answer = Column(Text, nullable=True)
    answer_data = Column(JSON, nullable=True)
    score = Column(Float, nullable=True)  # null while the answer is a draft
    time_taken = Column(Integer, nullable=True)  # seconds
    is_correct = Column(Boolean, nullable=True)
    confidence_level = Column(Integer, nullable=True)
    answered_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    attempt = relationship("TestAttempt", back_populates="answers")
    question = relationship("Question")

    __table_args__ = (
        UniqueConstraint(
            "user_id", "question_id", "attempt_id", name="uq_user_answers_identity"
        ),
        CheckConstraint(
            "confidence_level IS NULL OR (confidence_level >= 1 AND confidence_level <= 5)",
            name="ck_user_answers_confidence_level_range",
        ),
    )


class TestResult(Base):
    """Scored outcome of a completed attempt."""

    __tablename__ = "test_results"
    __test__ = False

    id = Column(Integer, primary_key=True, index=True)
    attempt_id = Column(
        Integer, ForeignKey("test_attempts.id"), unique=True, nullable=False
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    test_id = Column(Integer, ForeignKey("tests.id"), nullable=False, index=True)
    raw_score = Column(Float, nullable=True)
    scaled_score = Column(Float, nullable=True)
    percentile = Column(Float, nullable=True)
    grade = Column(String(5), nullable=True)
    # [{"name", "key", "score", "description", "category", "raw_average", "question_count"}]
    traits = Column(JSON, nullable=True)
    trait_names = Column(JSON, nullable=True)
    description = Column(Text, nullable=True)
    recommendations = Column(Text, nullable=True)
    detailed_analysis = Column(JSON, nullable=True)
    is_passed = Column(Boolean, nullable=True)
    completion_percentage = Column(Float, nullable=True)
    calculated_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    created_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=_utc_now, onupdate=_utc_now, nullable=False
    )

    attempt = relationship("TestAttempt", back_populates="result")


class SessionResult(Base):
    """Per-user aggregate over a session (written by reporting)."""

    __tablename__ = "session_results"

    id = Column(Integer, primary_key=True, index=True)
    session_id = Column(
        Integer, ForeignKey("test_sessions.id"), nullable=False, index=True
    )
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    weighted_score = Column(Float, nullable=True)
    overall_grade = Column(String(5), nullable=True)
    completed_tests = Column(Integer, default=0, nullable=False)
    total_tests = Column(Integer, default=0, nullable=False)
    completion_percentage = Column(Float, nullable=True)
    calculated_at = Column(DateTime(timezone=True), default=_utc_now, nullable=False)

    __table_args__ = (
        UniqueConstraint("session_id", "user_id", name="uq_session_results_user"),
    )


class UserPerformanceStats(Base):
    """Population-wide performance snapshot, rebuilt by the scheduler."""

    __tablename__ = "user_performance_stats"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), unique=True, nullable=False)
    total_tests_taken = Column(Integer, default=0, nullable=False)
    total_tests_completed = Column(Integer, default=0, nullable=False)
    average_raw_score = Column(Float, nullable=True)
    average_scaled_score = Column(Float, nullable=True)
    highest_raw_score = Column(Float, nullable=True)
    highest_scaled_score = Column(Float, nullable=True)
    lowest_raw_score = Column(Float, nullable=True)
    lowest_scaled_score = Column(Float, nullable=True)
    total_time_spent = Column(Integer, default=0, nullable=False)  # seconds
    average_time_per_test = Column(Float, nullable=True)
    completion_rate = Column(Float, nullable=True)
    consistency_score = Column(Float, nullable=True)
    performance_rank = Column(Integer, nullable=True)
    performance_percentile = Column(Float, nullable=True)
    last_test_date = Column(DateTime(timezone=True), nullable=True)
    calculation_date = Column(DateTime(timezone=True), default=_utc_now, nullable=False)
