"""Test configuration and fixtures.

Tests run against SQLite through aiosqlite: each test gets a fresh in-memory
database (StaticPool keeps the single connection alive across sessions), so
no Postgres or Redis is needed. Redis is an AsyncMock and the payment gateway
is a recording double.
"""

import uuid
from collections.abc import AsyncGenerator
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from jobescrow.auth.actor import Actor, ActorKind
from jobescrow.config import settings
from jobescrow.database import Base, get_db
from jobescrow.main import app
from jobescrow.redis import get_redis
from jobescrow.schemas.job import CompleteJob, JobCreate
from jobescrow.services import job as job_service
from jobescrow.services.payment_gateway import GatewayResult, get_payment_gateway


# ---------------------------------------------------------------------------
# Test doubles
# ---------------------------------------------------------------------------

class RecordingGateway:
    """Payment gateway double that records calls and can fail on demand.

    ``fail_on`` maps an operation name ("hold", "settle", "reverse") or an
    idempotency-key suffix (":release:platform") to the GatewayResult to
    return instead of success.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, int, str, str]] = []
        self.fail_on: dict[str, GatewayResult] = {}

    def _result(self, op: str, idempotency_key: str) -> GatewayResult:
        if op in self.fail_on:
            return self.fail_on[op]
        for suffix, result in self.fail_on.items():
            if suffix.startswith(":") and idempotency_key.endswith(suffix):
                return result
        return GatewayResult(success=True, reference=f"ref-{idempotency_key}")

    async def hold(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        self.calls.append(("hold", amount, "escrow", idempotency_key))
        return self._result("hold", idempotency_key)

    async def settle(
        self, amount: int, destination_account: str, job_id: uuid.UUID, idempotency_key: str,
    ) -> GatewayResult:
        self.calls.append(("settle", amount, destination_account, idempotency_key))
        return self._result("settle", idempotency_key)

    async def reverse(self, amount: int, job_id: uuid.UUID, idempotency_key: str) -> GatewayResult:
        self.calls.append(("reverse", amount, "requirer", idempotency_key))
        return self._result("reverse", idempotency_key)

    def ops(self, name: str) -> list[tuple[str, int, str, str]]:
        return [c for c in self.calls if c[0] == name]


def make_fake_redis() -> AsyncMock:
    """Redis stand-in: rate limiter always allows, sorted-set calls succeed."""
    fake = AsyncMock()
    fake.eval.return_value = [1, 10, 0]
    fake.zadd.return_value = 1
    fake.zrem.return_value = 1
    return fake


# ---------------------------------------------------------------------------
# Settings isolation
# ---------------------------------------------------------------------------

@pytest.fixture(autouse=True)
def _isolate_settings() -> None:
    """Snapshot settings before each test and restore after to prevent mutation bleed."""
    original = settings.model_dump()
    yield  # type: ignore[misc]
    for key, value in original.items():
        object.__setattr__(settings, key, value)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    engine = create_async_engine(
        settings.test_database_url,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(
    session_factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def gateway() -> RecordingGateway:
    return RecordingGateway()


@pytest.fixture
def fake_redis() -> AsyncMock:
    return make_fake_redis()


# ---------------------------------------------------------------------------
# Actors
# ---------------------------------------------------------------------------

@pytest.fixture
def requirer() -> Actor:
    return Actor(user_id=uuid.uuid4())


@pytest.fixture
def provider() -> Actor:
    return Actor(user_id=uuid.uuid4())


@pytest.fixture
def arbiter() -> Actor:
    return Actor(user_id=uuid.uuid4(), kind=ActorKind.ARBITER)


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------

@pytest_asyncio.fixture
async def client(
    session_factory: async_sessionmaker[AsyncSession],
    gateway: RecordingGateway,
    fake_redis: AsyncMock,
) -> AsyncGenerator[AsyncClient, None]:
    """HTTP test client with overridden DB, Redis and gateway dependencies."""

    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        async with session_factory() as session:
            yield session

    async def override_get_redis() -> AsyncGenerator[AsyncMock, None]:
        yield fake_redis

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_redis] = override_get_redis
    app.dependency_overrides[get_payment_gateway] = lambda: gateway

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac

    app.dependency_overrides.clear()


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def make_job_data(**overrides) -> JobCreate:  # type: ignore[no-untyped-def]
    """Factory for a job posting payload. Base amount 10000 minor units by default."""
    data = {
        "title": "Fix kitchen sink",
        "description": "Leaking trap under the kitchen sink needs replacing.",
        "category": "plumbing",
        "location": "Ikeja, Lagos",
        "required_skills": ["plumbing"],
        "base_amount": 10_000,
        "deadline": datetime.now(UTC) + timedelta(days=3),
    }
    data.update(overrides)
    return JobCreate(**data)


def job_payload(**overrides) -> dict:  # type: ignore[no-untyped-def]
    """Same as make_job_data, as a JSON body."""
    return make_job_data(**overrides).model_dump(mode="json")


def actor_headers(actor: Actor) -> dict[str, str]:
    return {"X-Actor-Id": str(actor.user_id)}


async def create_job(db: AsyncSession, requirer: Actor, **overrides):  # type: ignore[no-untyped-def]
    return await job_service.create_job(db, requirer, make_job_data(**overrides))


async def accepted_job(db: AsyncSession, gateway, requirer: Actor, provider: Actor, **overrides):  # type: ignore[no-untyped-def]
    job = await create_job(db, requirer, **overrides)
    return await job_service.accept_job(db, gateway, job.job_id, provider)


async def completed_job(db: AsyncSession, gateway, requirer: Actor, provider: Actor, **overrides):  # type: ignore[no-untyped-def]
    job = await accepted_job(db, gateway, requirer, provider, **overrides)
    return await job_service.complete_job(
        db, job.job_id, provider, CompleteJob(completion_notes="Replaced the trap and tested for leaks."),
    )
