"""Tests for deadline queue: enqueue, cancel, expire pending jobs, and startup recovery."""

import asyncio
import uuid
from datetime import UTC, datetime, timedelta
from unittest.mock import AsyncMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobescrow.auth.actor import Actor
from jobescrow.main import _recover_deadlines
from jobescrow.models.escrow import EscrowState
from jobescrow.models.job import JobStatus
from jobescrow.services import escrow as escrow_service
from jobescrow.services import job as job_service
from jobescrow.services.deadline_queue import (
    DEADLINE_KEY,
    _cancel_expired_job,
    cancel_deadline,
    enqueue_deadline,
    run_deadline_consumer,
    sync_deadline,
)
from tests.conftest import accepted_job, create_job, make_fake_redis


async def _expire(db: AsyncSession, job) -> None:  # type: ignore[no-untyped-def]
    job.deadline = datetime.now(UTC) - timedelta(minutes=5)
    await db.commit()


@pytest.mark.asyncio
async def test_enqueue_and_cancel(fake_redis: AsyncMock) -> None:
    job_id = uuid.uuid4()
    await enqueue_deadline(fake_redis, job_id, 1_700_000_000.0)
    fake_redis.zadd.assert_awaited_once_with(DEADLINE_KEY, {str(job_id): 1_700_000_000.0})

    await cancel_deadline(fake_redis, job_id)
    fake_redis.zrem.assert_awaited_once_with(DEADLINE_KEY, str(job_id))


@pytest.mark.asyncio
async def test_sync_deadline_follows_status(
    db_session: AsyncSession, gateway, fake_redis: AsyncMock, requirer: Actor, provider: Actor,
) -> None:
    job = await create_job(db_session, requirer)
    await sync_deadline(fake_redis, job)
    fake_redis.zadd.assert_awaited_once_with(DEADLINE_KEY, {str(job.job_id): job.deadline.timestamp()})

    job = await job_service.accept_job(db_session, gateway, job.job_id, provider)
    await sync_deadline(fake_redis, job)
    fake_redis.zrem.assert_awaited_once_with(DEADLINE_KEY, str(job.job_id))


@pytest.mark.asyncio
async def test_sync_deadline_survives_redis_outage(db_session: AsyncSession, requirer: Actor) -> None:
    job = await create_job(db_session, requirer)
    broken = make_fake_redis()
    broken.zadd.side_effect = RedisConnectionError("down")
    await sync_deadline(broken, job)  # logged, not raised


@pytest.mark.asyncio
async def test_expired_pending_job_is_cancelled_by_system(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway,
    requirer: Actor,
) -> None:
    job = await create_job(db_session, requirer)
    await _expire(db_session, job)

    assert await _cancel_expired_job(job.job_id, session_factory, gateway) is True

    async with session_factory() as check:
        job = await job_service.get_job(check, job.job_id)
        assert job.status == JobStatus.CANCELLED
        assert job.archived_at is not None
        assert job.cancellation_reason == "Deadline passed before acceptance"
        entry = await escrow_service.get_entry(check, job.job_id, lock=False)
        assert entry.state == EscrowState.NONE
        assert entry.archived_at is not None
    assert gateway.calls == []


@pytest.mark.asyncio
async def test_deadline_not_yet_passed_is_skipped(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway,
    requirer: Actor,
) -> None:
    job = await create_job(db_session, requirer)
    assert await _cancel_expired_job(job.job_id, session_factory, gateway) is False

    async with session_factory() as check:
        assert (await job_service.get_job(check, job.job_id)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_accepted_job_is_not_cancelled(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway,
    requirer: Actor,
    provider: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)
    await _expire(db_session, job)

    assert await _cancel_expired_job(job.job_id, session_factory, gateway) is False
    assert gateway.ops("reverse") == []


@pytest.mark.asyncio
async def test_missing_job_is_ignored(session_factory: async_sessionmaker[AsyncSession], gateway) -> None:
    assert await _cancel_expired_job(uuid.uuid4(), session_factory, gateway) is False


@pytest.mark.asyncio
async def test_consumer_pops_due_job_and_cancels(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    requirer: Actor,
) -> None:
    job = await create_job(db_session, requirer)
    await _expire(db_session, job)

    redis = make_fake_redis()
    redis.zrangebyscore.side_effect = [
        [(str(job.job_id).encode(), job.deadline.timestamp())],
        asyncio.CancelledError(),
    ]

    await run_deadline_consumer(session_factory, redis)

    redis.zrem.assert_awaited_once_with(DEADLINE_KEY, str(job.job_id).encode())
    redis.aclose.assert_awaited_once()
    async with session_factory() as check:
        assert (await job_service.get_job(check, job.job_id)).status == JobStatus.CANCELLED


@pytest.mark.asyncio
async def test_recover_deadlines_requeues_pending_jobs(
    db_session: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    gateway,
    requirer: Actor,
    provider: Actor,
) -> None:
    pending = await create_job(db_session, requirer)
    await accepted_job(db_session, gateway, requirer, provider)

    redis = make_fake_redis()
    assert await _recover_deadlines(session_factory, redis) == 1
    redis.zadd.assert_awaited_once_with(
        DEADLINE_KEY, {str(pending.job_id): pending.deadline.timestamp()},
    )
