"""
Pytest configuration and shared fixtures for testing.
"""
import os
from pathlib import Path

# Use SQLite for tests; path is relative to this file so the .db lands inside
# tests/ regardless of the working directory. Must be set before importing
# psikotes, which builds its engines and settings at import time.
_TEST_DB = Path(__file__).parent / "test.db"
os.environ.setdefault("DATABASE_URL", f"sqlite:///{_TEST_DB}")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret-key-for-psikotes-tests")
os.environ.setdefault("ADMIN_TOKEN", "test-admin-token")
os.environ.setdefault("SCHEDULER_ENABLED", "false")
os.environ.setdefault("SENTRY_DSN", "")

from contextlib import asynccontextmanager  # noqa: E402
from typing import AsyncGenerator, Callable, Dict, List  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402
from sqlalchemy import create_engine, select  # noqa: E402
from sqlalchemy.ext.asyncio import (  # noqa: E402
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import sessionmaker  # noqa: E402
from sqlalchemy.pool import NullPool  # noqa: E402

from psikotes.api.v1.deps import get_clock, get_scheduler  # noqa: E402
from psikotes.core.config import settings  # noqa: E402
from psikotes.core.security import create_access_token  # noqa: E402
from psikotes.main import app  # noqa: E402
from psikotes.models import Base, Question, Test, User, UserRole, get_db  # noqa: E402
from psikotes.services.session_scheduler import SessionStatisticsScheduler  # noqa: E402
from tests.factories import (  # noqa: E402
    FrozenClock,
    build_cognitive_test,
    build_disc_test,
)


@asynccontextmanager
async def _test_lifespan(app):
    """No-op lifespan for tests.

    Skips error tracking initialization and the periodic scheduler.
    """
    yield


# Neutralize the production lifespan on the singleton app.
app.router.lifespan_context = _test_lifespan


SQLALCHEMY_DATABASE_URL = f"sqlite:///{_TEST_DB}"

engine = create_engine(
    SQLALCHEMY_DATABASE_URL, connect_args={"check_same_thread": False}
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

# Async test engine (aiosqlite): same DB file as the sync engine so that
# sync fixtures can create data visible to async endpoint overrides.
ASYNC_SQLALCHEMY_DATABASE_URL = f"sqlite+aiosqlite:///{_TEST_DB}"

async_test_engine = create_async_engine(
    ASYNC_SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=NullPool,
)
AsyncTestingSessionLocal = async_sessionmaker(
    async_test_engine, class_=AsyncSession, expire_on_commit=False
)


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock()


# --- Sync fixtures (API tests) ---


@pytest.fixture(scope="function")
def db_session():
    """
    Create a fresh database session for each test.
    """
    Base.metadata.create_all(bind=engine)

    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def test_scheduler(clock) -> SessionStatisticsScheduler:
    """Scheduler bound to the test database and the frozen clock."""
    return SessionStatisticsScheduler(
        session_factory=AsyncTestingSessionLocal,
        clock=clock,
        interval_seconds=60,
        min_interval_seconds=300,
    )


@pytest.fixture(scope="function")
def client(db_session, clock, test_scheduler):
    """
    Create a test client with database, clock and scheduler overrides.

    Overrides get_db (async) to use a test async session backed by the same
    test.db file where db_session creates data.
    """

    async def override_get_db():
        async with AsyncTestingSessionLocal() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    app.dependency_overrides[get_scheduler] = lambda: test_scheduler
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _make_user(db, email: str, role: UserRole = UserRole.PARTICIPANT) -> User:
    user = User(email=email, full_name=email.split("@")[0].title(), role=role)
    db.add(user)
    db.commit()
    db.refresh(user)
    return user


def _headers_for(user: User) -> Dict[str, str]:
    token = create_access_token({"user_id": user.id})
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def test_user(db_session) -> User:
    """
    Create a participant in the database.
    """
    return _make_user(db_session, "participant@example.com")


@pytest.fixture
def other_user(db_session) -> User:
    return _make_user(db_session, "other@example.com")


@pytest.fixture
def admin_user(db_session) -> User:
    return _make_user(db_session, "admin@example.com", role=UserRole.ADMIN)


@pytest.fixture
def auth_headers(test_user) -> Dict[str, str]:
    """
    Create authentication headers for the participant.
    """
    return _headers_for(test_user)


@pytest.fixture
def other_headers(other_user) -> Dict[str, str]:
    return _headers_for(other_user)


@pytest.fixture
def admin_auth_headers(admin_user) -> Dict[str, str]:
    """Bearer headers for a user with the admin role."""
    return _headers_for(admin_user)


@pytest.fixture
def admin_headers() -> Dict[str, str]:
    """
    Create headers with valid admin token for admin endpoints.
    """
    return {"X-Admin-Token": settings.ADMIN_TOKEN}


@pytest.fixture
def cognitive_test(db_session) -> Test:
    test = build_cognitive_test()
    db_session.add(test)
    db_session.commit()
    db_session.refresh(test)
    return test


@pytest.fixture
def disc_test(db_session) -> Test:
    test = build_disc_test()
    db_session.add(test)
    db_session.commit()
    db_session.refresh(test)
    return test


@pytest.fixture
def question_ids(db_session) -> Callable[[Test], List[int]]:
    """Question ids of a test in sequence order."""

    def _ids(test: Test) -> List[int]:
        questions = (
            db_session.query(Question)
            .filter(Question.test_id == test.id)
            .order_by(Question.sequence)
            .all()
        )
        return [q.id for q in questions]

    return _ids


# --- Async fixtures (service tests) ---


@pytest.fixture(scope="function")
async def async_db_session() -> AsyncGenerator[AsyncSession, None]:
    """
    Create a fresh async database session for each test.
    """
    async with async_test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async with AsyncTestingSessionLocal() as session:
        yield session

    async with async_test_engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture(scope="function")
async def async_client(
    async_db_session: AsyncSession, clock
) -> AsyncGenerator[AsyncClient, None]:
    """
    Create an async test client with async database dependency override.
    """

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield async_db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_clock] = lambda: clock
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    app.dependency_overrides.clear()


async def _add_user(
    db: AsyncSession, email: str, role: UserRole = UserRole.PARTICIPANT
) -> User:
    user = User(email=email, full_name=email.split("@")[0].title(), role=role)
    db.add(user)
    await db.commit()
    await db.refresh(user)
    return user


@pytest.fixture
async def participant(async_db_session) -> User:
    return await _add_user(async_db_session, "participant@example.com")


@pytest.fixture
async def second_participant(async_db_session) -> User:
    return await _add_user(async_db_session, "second@example.com")


@pytest.fixture
async def admin(async_db_session) -> User:
    return await _add_user(async_db_session, "admin@example.com", UserRole.ADMIN)


async def _add_test(db: AsyncSession, test: Test) -> Test:
    db.add(test)
    await db.commit()
    return test


@pytest.fixture
async def async_cognitive_test(async_db_session) -> Test:
    return await _add_test(async_db_session, build_cognitive_test())


@pytest.fixture
async def async_disc_test(async_db_session) -> Test:
    return await _add_test(async_db_session, build_disc_test())


@pytest.fixture
def async_question_ids(async_db_session):
    """Question ids of a test in sequence order."""

    async def _ids(test_id: int) -> List[int]:
        result = await async_db_session.execute(
            select(Question.id)
            .where(Question.test_id == test_id)
            .order_by(Question.sequence)
        )
        return list(result.scalars().all())

    return _ids


@pytest.fixture
def async_session_factory():
    """Factory for independent sessions, e.g. a second writer in race tests."""
    return AsyncTestingSessionLocal
