"""FastAPI application entry point."""

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import redis.asyncio as aioredis
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from jobescrow.config import settings
from jobescrow.errors import register_exception_handlers
from jobescrow.logging_config import configure_logging
from jobescrow.middleware import BodySizeLimitMiddleware, RequestLoggingMiddleware
from jobescrow.routers import escrow, fees, jobs

logger = logging.getLogger(__name__)

NOTIFICATION_DISPATCH_INTERVAL_SECONDS = 5.0


async def _recover_deadlines(
    session_factory: async_sessionmaker[AsyncSession] | None = None,
    redis_client: aioredis.Redis | None = None,
) -> int:
    """Re-enqueue deadlines for pending jobs after server restart.

    ZADD is idempotent: re-adding an existing job_id with the same score
    is a no-op, so this is safe to call unconditionally at startup.
    """
    from jobescrow.services.deadline_queue import enqueue_deadline
    from jobescrow.services.job import pending_jobs_with_deadlines

    if session_factory is None:
        from jobescrow.database import async_session_factory
        session_factory = async_session_factory

    try:
        async with session_factory() as db:
            jobs_ = await pending_jobs_with_deadlines(db)

        if not jobs_:
            logger.info("Deadline recovery: no pending jobs")
            return 0

        owns_client = redis_client is None
        if redis_client is None:
            from jobescrow.redis import redis_client as make_client
            redis_client = make_client()
        try:
            for job in jobs_:
                await enqueue_deadline(redis_client, job.job_id, job.deadline.timestamp())
        finally:
            if owns_client:
                await redis_client.aclose()

        logger.info("Deadline recovery: re-enqueued %d deadlines", len(jobs_))
        return len(jobs_)

    except Exception:
        logger.exception("Deadline recovery failed")
        return 0


async def _run_notification_dispatcher() -> None:
    """Deliver queued job notifications in the background."""
    from jobescrow.database import async_session_factory
    from jobescrow.services.notifications import LogNotificationSender, dispatch_pending

    sender = LogNotificationSender()
    while True:
        try:
            async with async_session_factory() as db:
                await dispatch_pending(db, sender)
            await asyncio.sleep(NOTIFICATION_DISPATCH_INTERVAL_SECONDS)
        except asyncio.CancelledError:
            logger.info("Notification dispatcher shutting down")
            break
        except Exception:
            logger.exception("Notification dispatcher error, retrying")
            await asyncio.sleep(NOTIFICATION_DISPATCH_INTERVAL_SECONDS)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan: startup and shutdown."""
    from jobescrow.redis import close_redis_pool
    from jobescrow.services.deadline_queue import run_deadline_consumer

    configure_logging(settings.log_level)
    await _recover_deadlines()
    tasks = [
        asyncio.create_task(run_deadline_consumer()),
        asyncio.create_task(_run_notification_dispatcher()),
    ]

    yield

    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await close_redis_pool()


app = FastAPI(
    title="Job Escrow Marketplace",
    description="Job lifecycle with escrowed payments and dispute resolution",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Middleware (order matters: outermost last)
app.add_middleware(BodySizeLimitMiddleware, max_bytes=settings.max_request_body_bytes)
app.add_middleware(RequestLoggingMiddleware)

register_exception_handlers(app)

app.include_router(fees.router)
app.include_router(jobs.router)
app.include_router(escrow.router)


@app.get("/health")
async def health() -> dict[str, str]:
    """Health check endpoint."""
    return {"status": "ok"}
