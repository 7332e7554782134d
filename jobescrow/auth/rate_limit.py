"""Token bucket rate limiter backed by Redis."""

import time

import redis.asyncio as aioredis
from fastapi import Depends, HTTPException, Request, Response

from jobescrow.auth.actor import ACTOR_HEADER
from jobescrow.config import settings
from jobescrow.redis import get_redis

# Atomic check-and-consume. Returns {allowed, remaining, retry_after_seconds}.
_TOKEN_BUCKET_SCRIPT = """
local key = KEYS[1]
local capacity = tonumber(ARGV[1])
local refill_rate = tonumber(ARGV[2])
local now = tonumber(ARGV[3])

local bucket = redis.call('HMGET', key, 'tokens', 'last_refill')
local tokens = tonumber(bucket[1])
local last_refill = tonumber(bucket[2])

if tokens == nil then
    tokens = capacity
    last_refill = now
end

local elapsed = math.max(0, now - last_refill)
local available = math.min(capacity, tokens + elapsed * (refill_rate / 60.0))
local allowed = 0
local retry_after = 0

if available >= 1 then
    available = available - 1
    allowed = 1
else
    retry_after = math.ceil((1 - available) * 60 / refill_rate)
end

redis.call('HSET', key, 'tokens', available, 'last_refill', now)
redis.call('EXPIRE', key, math.ceil(capacity * 60 / refill_rate) + 60)
return {allowed, math.floor(available), retry_after}
"""

_LIFECYCLE_SUFFIXES = (
    "/accept", "/complete", "/satisfy", "/dispute", "/resolve", "/cancel",
)


def _get_rate_config(method: str, path: str) -> tuple[int, int, str]:
    """Return (capacity, refill_per_min, category) for an endpoint."""
    if method in ("POST", "PATCH", "PUT", "DELETE"):
        stripped = path.rstrip("/")
        if stripped == "/jobs" or stripped.endswith(_LIFECYCLE_SUFFIXES):
            return (
                settings.rate_limit_job_lifecycle_capacity,
                settings.rate_limit_job_lifecycle_refill_per_min,
                "job_lifecycle",
            )
        return (
            settings.rate_limit_write_capacity,
            settings.rate_limit_write_refill_per_min,
            "write",
        )
    return (
        settings.rate_limit_read_capacity,
        settings.rate_limit_read_refill_per_min,
        "read",
    )


def _get_client_ip(request: Request) -> str:
    """Extract client IP, respecting X-Forwarded-For for reverse proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    if request.client is not None:
        return request.client.host
    return "unknown"


def bucket_key(request: Request, category: str) -> str:
    actor_id = request.headers.get(ACTOR_HEADER)
    if actor_id:
        return f"ratelimit:actor:{actor_id}:{category}"
    return f"ratelimit:ip:{_get_client_ip(request)}:{category}"


async def check_rate_limit(
    request: Request,
    response: Response,
    redis: aioredis.Redis = Depends(get_redis),
) -> None:
    """Rate limit dependency, keyed by actor when known and by client IP otherwise."""
    capacity, refill_rate, category = _get_rate_config(request.method.upper(), request.url.path)

    result = await redis.eval(
        _TOKEN_BUCKET_SCRIPT, 1, bucket_key(request, category), capacity, refill_rate, time.time()
    )
    allowed, remaining, retry_after = int(result[0]), int(result[1]), int(result[2])

    response.headers["X-RateLimit-Limit"] = str(capacity)
    response.headers["X-RateLimit-Remaining"] = str(remaining)

    if not allowed:
        raise HTTPException(
            status_code=429,
            detail="Rate limit exceeded",
            headers={"Retry-After": str(retry_after)},
        )
