"""
Pytest fixtures for PantryJobs tests.
"""
import asyncio
import os
from collections import defaultdict

# Settings are cached on first use, so the environment must be ready before any app import
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("RUN_WORKER_IN_PROCESS", "false")
os.environ.setdefault("JWT_SECRET", "test-secret")
os.environ["REDIS_URL"] = ""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from pantry_jobs.client.transport import StatusSnapshot
from pantry_jobs.database import get_db, init_db


@pytest_asyncio.fixture
async def engine(tmp_path):
    """Fresh SQLite database per test."""
    db_engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'jobs.db'}")
    await init_db(db_engine)
    yield db_engine
    await db_engine.dispose()


@pytest.fixture
def session_factory(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def app(session_factory):
    """FastAPI app bound to the test database, rate limiting off."""
    from pantry_jobs.main import app
    from pantry_jobs.routes import jobs

    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    jobs.limiter.enabled = False
    yield app
    app.dependency_overrides.clear()
    jobs.limiter.enabled = True


@pytest_asyncio.fixture
async def async_client(app):
    """Create async HTTP client for testing."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


class FakeClock:
    """Clock whose sleeps advance time instantly."""

    def __init__(self, start: float = 0.0):
        self.time = start
        self.sleeps = []

    def now(self) -> float:
        return self.time

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.time += seconds
        await asyncio.sleep(0)

    def advance(self, seconds: float) -> None:
        self.time += seconds


class FakeTransport:
    """
    Scripted status responses per job id.

    Each fetch pops the next outcome; the last one repeats. An outcome is a
    status string, a StatusSnapshot or an exception instance to raise.
    """

    def __init__(self):
        self.scripts = defaultdict(list)
        self.calls = []

    def script(self, job_id: str, *outcomes) -> None:
        self.scripts[job_id].extend(outcomes)

    async def fetch_status(self, queue_name, job_id):
        self.calls.append(job_id)
        outcomes = self.scripts.get(job_id)
        if not outcomes:
            raise AssertionError(f"No scripted status for {job_id}")
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        if isinstance(outcome, str):
            return StatusSnapshot(job_id=job_id, status=outcome)
        return outcome


@pytest.fixture
def fake_clock():
    return FakeClock()


@pytest.fixture
def fake_transport():
    return FakeTransport()


@pytest.fixture
def owner_headers():
    return {"X-User-ID": "user_alice"}


@pytest.fixture
def other_headers():
    return {"X-User-ID": "user_bob"}
