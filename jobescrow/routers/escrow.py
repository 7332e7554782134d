"""Escrow and payment history endpoints."""

import uuid

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.auth.actor import Actor, get_actor
from jobescrow.auth.rate_limit import check_rate_limit
from jobescrow.database import get_db
from jobescrow.errors import AuthorizationError
from jobescrow.schemas.escrow import (
    EscrowAuditResponse,
    EscrowDetailResponse,
    EscrowResponse,
    SettlementConfirmation,
)
from jobescrow.services import escrow as escrow_service
from jobescrow.services import job as job_service

router = APIRouter(tags=["escrow"], dependencies=[Depends(check_rate_limit)])


@router.get("/jobs/{job_id}/escrow", response_model=EscrowDetailResponse)
async def get_escrow(
    job_id: uuid.UUID,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> EscrowDetailResponse:
    """Escrow state and full audit history. Parties and arbiters only."""
    job = await job_service.get_job(db, job_id, actor)
    if not (actor.is_arbiter or actor.is_requirer_of(job) or actor.is_provider_of(job)):
        raise AuthorizationError("Not a party to this job")
    entry = await escrow_service.get_entry(db, job_id, lock=False)
    history = await escrow_service.get_audit_trail(db, job_id)
    return EscrowDetailResponse(
        escrow=EscrowResponse.model_validate(entry),
        history=[EscrowAuditResponse.model_validate(a) for a in history],
    )


@router.post("/jobs/{job_id}/escrow/settlement", response_model=EscrowResponse)
async def confirm_settlement(
    job_id: uuid.UUID,
    data: SettlementConfirmation,
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> EscrowResponse:
    """Gateway callback (relayed by an arbiter/operator) reporting final settlement."""
    if not actor.is_arbiter:
        raise AuthorizationError("Only operators can confirm settlement")
    receipt = await escrow_service.confirm_settlement(db, job_id, data.reference, data.succeeded)
    await db.commit()
    return EscrowResponse.model_validate(receipt.entry)


@router.get("/payments/history", response_model=list[EscrowAuditResponse])
async def payment_history(
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    actor: Actor = Depends(get_actor),
    db: AsyncSession = Depends(get_db),
) -> list[EscrowAuditResponse]:
    """Money movements on every job the caller is party to, newest first."""
    entries = await escrow_service.payment_history(db, actor.user_id, limit=limit, offset=offset)
    return [EscrowAuditResponse.model_validate(a) for a in entries]
