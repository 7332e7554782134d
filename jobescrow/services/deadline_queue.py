"""Acceptance deadline queue using a Redis sorted set.

Pending jobs are ZADDed with score = deadline unix timestamp. A single
async consumer sleeps until the earliest deadline is due, pops it and
cancels the job as the system actor if nobody accepted it in time.
"""

import asyncio
import logging
import time
import uuid

import redis.asyncio as aioredis
from redis.exceptions import RedisError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobescrow.auth.actor import Actor
from jobescrow.config import settings
from jobescrow.errors import MarketplaceError
from jobescrow.models.job import Job, JobStatus
from jobescrow.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)

DEADLINE_KEY = "job:deadlines"


async def enqueue_deadline(
    redis: aioredis.Redis,
    job_id: uuid.UUID,
    deadline_timestamp: float,
) -> None:
    """Schedule a job for deadline enforcement. Re-adding moves the score."""
    await redis.zadd(DEADLINE_KEY, {str(job_id): deadline_timestamp})
    logger.info("Enqueued deadline for job %s at %s", job_id, deadline_timestamp)


async def cancel_deadline(redis: aioredis.Redis, job_id: uuid.UUID) -> None:
    """Remove a job from the deadline queue (accepted or cancelled)."""
    await redis.zrem(DEADLINE_KEY, str(job_id))


async def sync_deadline(redis: aioredis.Redis, job: Job) -> None:
    """Bring the queue in line with a job that has just been committed.

    The job change is already durable, so a Redis outage is logged and left
    for startup recovery rather than reported to the caller.
    """
    try:
        if job.status == JobStatus.PENDING:
            await enqueue_deadline(redis, job.job_id, job.deadline.timestamp())
        else:
            await cancel_deadline(redis, job.job_id)
    except RedisError:
        logger.warning("Could not sync deadline for job %s; will recover at startup", job.job_id)


async def run_deadline_consumer(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis: aioredis.Redis | None = None,
) -> None:
    """Sleep until the next deadline is due, then enforce it."""
    if redis is None:
        from jobescrow.redis import redis_client
        redis = redis_client()

    while True:
        try:
            entries = await redis.zrangebyscore(
                DEADLINE_KEY, "-inf", "+inf", start=0, num=1, withscores=True
            )

            if not entries:
                await asyncio.sleep(settings.deadline_idle_sleep_seconds)
                continue

            job_id_raw, deadline_ts = entries[0]
            now = time.time()

            if deadline_ts > now:
                # Wake up at most every N seconds to pick up new earlier deadlines
                await asyncio.sleep(min(deadline_ts - now, settings.deadline_poll_max_sleep_seconds))
                continue

            removed = await redis.zrem(DEADLINE_KEY, job_id_raw)
            if not removed:
                # Another consumer got it
                continue

            if isinstance(job_id_raw, bytes):
                job_id_raw = job_id_raw.decode()
            await _cancel_expired_job(uuid.UUID(job_id_raw), session_factory)

        except asyncio.CancelledError:
            logger.info("Deadline consumer shutting down")
            break
        except Exception:
            logger.exception("Deadline consumer error, retrying in 5s")
            await asyncio.sleep(5)

    await redis.aclose()


async def _cancel_expired_job(
    job_id: uuid.UUID,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    gateway: PaymentGateway | None = None,
) -> bool:
    """Cancel a single job whose acceptance deadline has passed.

    Returns True if the job was cancelled.
    """
    from jobescrow.services import job as job_service
    from jobescrow.services.payment_gateway import get_payment_gateway

    if session_factory is None:
        from jobescrow.database import async_session_factory
        session_factory = async_session_factory
    gateway = gateway or get_payment_gateway()

    try:
        async with session_factory() as db:
            try:
                job = await job_service.load_job(db, job_id)
            except MarketplaceError:
                logger.warning("Deadline fired for nonexistent job %s", job_id)
                return False

            if job.status != JobStatus.PENDING:
                logger.info(
                    "Job %s already in state %s, skipping deadline enforcement",
                    job_id, job.status.value,
                )
                return False

            await job_service.cancel_job(db, gateway, job_id, Actor.system())
            logger.info("Auto-cancelled job %s: deadline passed before acceptance", job_id)
            return True

    except MarketplaceError as e:
        # e.g. deadline was extended after this entry was popped
        logger.warning("Deadline enforcement skipped for job %s: %s", job_id, e.message)
        return False
    except Exception:
        logger.exception("Failed to enforce deadline for job %s", job_id)
        return False
