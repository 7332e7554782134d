"""Job lifecycle endpoints."""

import uuid

import redis.asyncio as aioredis
from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.auth.actor import Actor, get_actor
from jobescrow.auth.rate_limit import check_rate_limit
from jobescrow.database import get_db
from jobescrow.errors import ValidationError
from jobescrow.models.job import JobStatus
from jobescrow.redis import get_redis
from jobescrow.schemas.dispute import DisputeCreate, DisputeResolve
from jobescrow.schemas.job import (
    AcceptJob,
    CancelJob,
    CompleteJob,
    JobCreate,
    JobResponse,
    JobUpdate,
    SatisfactionSubmit,
    Versioned,
)
from jobescrow.services import dispute as dispute_service
from jobescrow.services import job as job_service
from jobescrow.services.deadline_queue import sync_deadline
from jobescrow.services.payment_gateway import PaymentGateway, get_payment_gateway

router = APIRouter(prefix="/jobs", tags=["jobs"], dependencies=[Depends(check_rate_limit)])


def _require_version(data: Versioned | DisputeCreate | DisputeResolve) -> None:
    """State changes over HTTP must name the job version they were based on."""
    if data.expected_version is None:
        raise ValidationError(
            "expected_version is required; fetch the job and send its current version",
            {"field": "expected_version"},
        )


@router.post("", response_model=JobResponse, status_code=201)
async def create_job(
    data: JobCreate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Requirer posts a job. Fees are fixed at the current rate."""
    job = await job_service.create_job(db, actor, data)
    await sync_deadline(redis, job)
    return JobResponse.model_validate(job)


@router.get("", response_model=list[JobResponse])
async def list_jobs(
    role: str | None = Query(None, pattern="^(requirer|provider|open)$"),
    status: JobStatus | None = None,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[JobResponse]:
    """Jobs the caller is party to, or open jobs they could accept (role=open)."""
    jobs = await job_service.list_jobs(db, actor, role=role, status=status, limit=limit, offset=offset)
    return [JobResponse.model_validate(j) for j in jobs]


@router.get("/{job_id}", response_model=JobResponse)
async def get_job(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    job = await job_service.get_job(db, job_id, actor)
    return JobResponse.model_validate(job)


@router.patch("/{job_id}", response_model=JobResponse)
async def update_job(
    job_id: uuid.UUID,
    data: JobUpdate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Requirer edits a job nobody has accepted yet."""
    _require_version(data)
    job = await job_service.update_job(db, job_id, actor, data)
    await sync_deadline(redis, job)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/accept", response_model=JobResponse)
async def accept_job(
    job_id: uuid.UUID,
    data: AcceptJob,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Provider accepts. The requirer's total is held in escrow."""
    _require_version(data)
    job = await job_service.accept_job(db, gateway, job_id, actor, data)
    await sync_deadline(redis, job)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/complete", response_model=JobResponse)
async def complete_job(
    job_id: uuid.UUID,
    data: CompleteJob,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    """Provider reports the work as done."""
    _require_version(data)
    job = await job_service.complete_job(db, job_id, actor, data)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/satisfy", response_model=JobResponse)
async def satisfy_job(
    job_id: uuid.UUID,
    data: SatisfactionSubmit,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> JobResponse:
    """Requirer confirms satisfaction. Escrow is released to the provider."""
    _require_version(data)
    job = await job_service.submit_satisfaction(db, gateway, job_id, actor, data)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/dispute", response_model=JobResponse)
async def dispute_job(
    job_id: uuid.UUID,
    data: DisputeCreate,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> JobResponse:
    _require_version(data)
    job = await dispute_service.open_dispute(db, job_id, actor, data)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/resolve", response_model=JobResponse)
async def resolve_dispute(
    job_id: uuid.UUID,
    data: DisputeResolve,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
) -> JobResponse:
    """Arbiter settles a dispute: release, refund or split."""
    _require_version(data)
    job = await dispute_service.resolve_dispute(db, gateway, job_id, actor, data)
    return JobResponse.model_validate(job)


@router.post("/{job_id}/cancel", response_model=JobResponse)
async def cancel_job(
    job_id: uuid.UUID,
    data: CancelJob,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
    gateway: PaymentGateway = Depends(get_payment_gateway),
    redis: aioredis.Redis = Depends(get_redis),
) -> JobResponse:
    """Cancel a job. After acceptance both parties must agree; escrow is refunded."""
    _require_version(data)
    job = await job_service.cancel_job(db, gateway, job_id, actor, data)
    await sync_deadline(redis, job)
    return JobResponse.model_validate(job)
