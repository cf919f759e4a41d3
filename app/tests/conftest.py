"""
Pytest configuration and shared fixtures for the drift engine test suite.

This module provides:
- Database fixtures (in-memory SQLite for fast tests)
- A FastAPI test client wired to the golden test routers
- Test doubles for the platform (replay) and alert sink collaborators
- A controllable clock
"""

import os

# Must be set before core.db creates its engine
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("GOLDEN_TEST_SCHEDULER_ENABLED", "false")

import asyncio
from datetime import datetime, timedelta
from typing import AsyncGenerator, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from core.db import Base, get_db
from exceptions import register_exception_handlers
import models  # noqa: F401  (registers tables on Base.metadata)
from routers import golden_tests as golden_tests_router_module
from schemas.golden_test import ReplayResult, RunMetrics
from services.exceptions import ReplayFailure
from services.golden_test_service import GoldenTestService, RunLockRegistry
from services.notifications import AlertSink
from services.platform_client import PlatformClient


# Test Database Configuration
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest.fixture
async def async_engine():
    """Create async engine for testing with in-memory SQLite."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        echo=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest.fixture
def session_factory(async_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def async_db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create async database session for testing."""
    async with session_factory() as session:
        yield session


# Collaborator doubles

class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class FakePlatformClient(PlatformClient):
    """In-memory replay capability with scripted transcripts and failures."""

    def __init__(self):
        self.transcripts: dict[str, list[str]] = {}
        self.metrics: Optional[RunMetrics] = None
        self.test_case_names: dict[str, str] = {}
        # A message raises ReplayFailure; an exception instance is raised as-is
        self.failures: dict[str, str | Exception] = {}
        self.delay: float = 0.0
        self.calls: list[tuple[str, str]] = []

    async def replay(self, test_case_id: str, agent_id: str) -> ReplayResult:
        self.calls.append((test_case_id, agent_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        failure = self.failures.get(test_case_id)
        if isinstance(failure, Exception):
            raise failure
        if failure is not None:
            raise ReplayFailure(failure)
        return ReplayResult(
            responses=self.transcripts.get(test_case_id, []),
            result_id=f"result-{len(self.calls)}",
            metrics=self.metrics,
        )

    async def get_test_case_name(self, test_case_id: str) -> Optional[str]:
        return self.test_case_names.get(test_case_id)


class RecordingAlertSink(AlertSink):
    def __init__(self):
        self.published = []

    async def publish(self, golden_test, run) -> None:
        self.published.append((golden_test.id, run.id, list(run.alerts)))


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock(datetime(2024, 1, 10, 10, 0, 0))


@pytest.fixture
def platform_client() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture
def alert_sink() -> RecordingAlertSink:
    return RecordingAlertSink()


@pytest.fixture
def run_locks() -> RunLockRegistry:
    return RunLockRegistry()


@pytest.fixture
def golden_test_service(async_db_session, platform_client, alert_sink, run_locks, clock) -> GoldenTestService:
    return GoldenTestService(
        async_db_session,
        platform_client=platform_client,
        alert_sink=alert_sink,
        locks=run_locks,
        clock=clock,
        run_hour=3,
        replay_timeout=1.0,
    )


# Test Data Factories

@pytest.fixture
def create_payload():
    """Factory for golden test creation payloads."""
    def _make(**overrides) -> dict:
        payload = {
            "test_case_id": "tc-refund",
            "agent_id": "agent-1",
            "name": "Refund happy path",
            "baseline_result_id": "result-0",
            "baseline_responses": [
                "Hello, how can I help you today?",
                "The refund was approved.",
            ],
            "baseline_metrics": {"overall_score": 0.95, "latency_ms": 1000, "token_count": 200},
        }
        payload.update(overrides)
        return payload
    return _make


@pytest.fixture
async def golden_test(golden_test_service, create_payload):
    """A persisted weekly golden test owned by user-1."""
    return await golden_test_service.create_golden_test("user-1", create_payload())


# HTTP client

@pytest.fixture
async def test_async_client(async_db_session, platform_client, alert_sink, run_locks) -> AsyncGenerator[AsyncClient, None]:
    """A lightweight test FastAPI app mounting only the golden test router."""
    async def override_get_db():
        yield async_db_session

    test_app = FastAPI()
    register_exception_handlers(test_app)
    test_app.include_router(golden_tests_router_module.router)
    test_app.state.platform_client = platform_client
    test_app.state.alert_sink = alert_sink
    test_app.state.run_locks = run_locks

    test_app.dependency_overrides[get_db] = override_get_db

    async with AsyncClient(transport=ASGITransport(app=test_app), base_url="http://test") as client:
        yield client

    test_app.dependency_overrides.clear()


# Common Test Doubles
@pytest.fixture
def mock_async_session():
    """Provide a reusable AsyncSession-like test double.

    - `add` is a `MagicMock` (synchronous)
    - `flush`, `commit`, `rollback`, `refresh`, `execute` are `AsyncMock`
    Tests can override `execute.side_effect` / `commit.side_effect` as needed.
    """
    session = AsyncMock()
    session.add = MagicMock()
    session.flush = AsyncMock()
    session.commit = AsyncMock()
    session.rollback = AsyncMock()
    session.refresh = AsyncMock()
    session.execute = AsyncMock()
    return session
