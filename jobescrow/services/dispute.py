"""Dispute filing and arbiter resolution."""

import logging
import uuid

from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.auth.actor import Actor
from jobescrow.database import utcnow
from jobescrow.errors import ValidationError
from jobescrow.models.dispute import (
    DisputeRecord,
    PartyRole,
    ResolutionOutcome,
    ResolutionStatus,
)
from jobescrow.models.job import Job, JobAction
from jobescrow.schemas.dispute import DisputeCreate, DisputeResolve
from jobescrow.services import escrow as escrow_service
from jobescrow.services.job import apply_status, check_version, load_job, transition, unit_of_work
from jobescrow.services.notifications import notify_job_event
from jobescrow.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)


async def open_dispute(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, data: DisputeCreate
) -> Job:
    """Either party disputes an accepted or completed job. Escrow stays held."""
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    was = job.status
    target = transition(job, JobAction.DISPUTE, actor)
    role = PartyRole.REQUIRER if actor.is_requirer_of(job) else PartyRole.PROVIDER

    async with unit_of_work(db):
        record = DisputeRecord(
            dispute_id=uuid.uuid4(),
            job_id=job.job_id,
            reason=data.reason,
            description=data.description,
            proposed_resolution=data.proposed_resolution,
            evidence_refs=list(data.evidence_refs),
            initiated_by_id=actor.user_id,
            initiated_by_role=role,
            resolution_status=ResolutionStatus.PENDING,
        )
        job.dispute = record
        apply_status(job, target)
        notify_job_event(db, job, "job.disputed", {
            "initiated_by": role.value,
            "reason": data.reason.value,
        })

    logger.info(
        "Job %s disputed by %s (%s) from %s",
        job.job_id, role.value, data.reason.value, was.value,
    )
    return job


async def resolve_dispute(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: Actor,
    data: DisputeResolve,
) -> Job:
    """Arbiter decides: release to provider, refund requirer, or split."""
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    target = transition(job, JobAction.RESOLVE, actor)
    record = job.dispute
    if record is None:
        raise ValidationError("Job has no dispute record")

    async with unit_of_work(db):
        if data.outcome == ResolutionOutcome.RELEASE:
            receipt = await escrow_service.release(db, gateway, job, actor)
        elif data.outcome == ResolutionOutcome.REFUND:
            receipt = await escrow_service.refund(db, gateway, job, actor)
        else:
            receipt = await escrow_service.partial_split(
                db, gateway, job, data.provider_share, actor,  # type: ignore[arg-type]
            )
        entry = receipt.entry

        record.resolution_status = ResolutionStatus.RESOLVED
        record.resolution_outcome = data.outcome
        record.provider_share = data.provider_share
        record.provider_amount = entry.provider_paid
        record.requirer_amount = entry.requirer_refunded
        record.resolution_notes = data.notes
        record.resolved_by_id = actor.user_id
        record.resolved_at = utcnow()
        apply_status(job, target, entry)
        notify_job_event(db, job, "job.resolved", {
            "outcome": data.outcome.value,
            "provider_amount": entry.provider_paid,
            "requirer_amount": entry.requirer_refunded,
        })

    logger.info(
        "Dispute on job %s resolved by arbiter %s: %s (provider %d, requirer %d)",
        job.job_id, actor.user_id, data.outcome.value,
        record.provider_amount, record.requirer_amount,
    )
    return job
