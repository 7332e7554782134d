"""Job lifecycle business logic.

Every state change goes through ``transition()``, which checks the
transition table and the actor's rights without touching anything. The
status write and its escrow side effect are then committed together in
``unit_of_work``; if the ledger or the gateway fails, the whole unit is
rolled back and the job keeps its previous status.
"""

import logging
import uuid
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from jobescrow.auth.actor import Actor
from jobescrow.config import settings
from jobescrow.database import utcnow
from jobescrow.errors import (
    AuthorizationError,
    InvalidTransitionError,
    NotFoundError,
    PartialDisbursementError,
    StaleStateError,
    ValidationError,
)
from jobescrow.models.escrow import EscrowEntry
from jobescrow.models.job import TERMINAL_STATUSES, TRANSITIONS, Job, JobAction, JobStatus
from jobescrow.models.review import SatisfactionReview
from jobescrow.schemas.job import (
    AcceptJob,
    CancelJob,
    CompleteJob,
    JobCreate,
    JobUpdate,
    SatisfactionSubmit,
)
from jobescrow.services import escrow as escrow_service
from jobescrow.services import fees
from jobescrow.services.notifications import notify_job_event
from jobescrow.services.payment_gateway import PaymentGateway

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Transition guards
# ---------------------------------------------------------------------------

def _authorize(job: Job, action: JobAction, actor: Actor) -> None:
    """Raise AuthorizationError if the actor may not perform this action."""
    if action == JobAction.ACCEPT:
        if actor.is_system or actor.user_id is None:
            raise AuthorizationError("Only a provider can accept a job")
        if actor.is_requirer_of(job):
            raise AuthorizationError("You cannot accept your own job")
        if job.candidate_provider_id is not None and actor.user_id != job.candidate_provider_id:
            raise AuthorizationError("This job is reserved for another provider")
    elif action == JobAction.COMPLETE:
        if not actor.is_provider_of(job):
            raise AuthorizationError("Only the assigned provider can complete this job")
    elif action in (JobAction.SATISFY, JobAction.UPDATE):
        if not actor.is_requirer_of(job):
            raise AuthorizationError(f"Only the requirer can {action.value} this job")
    elif action == JobAction.DISPUTE:
        if not (actor.is_requirer_of(job) or actor.is_provider_of(job)):
            raise AuthorizationError("Only a party to this job can file a dispute")
    elif action == JobAction.RESOLVE:
        if not actor.is_arbiter:
            raise AuthorizationError("Only an arbiter can resolve a dispute")
        if actor.is_requirer_of(job) or actor.is_provider_of(job):
            raise AuthorizationError("An arbiter cannot resolve a dispute on their own job")
    elif action == JobAction.CANCEL:
        if job.status == JobStatus.PENDING:
            if actor.is_system:
                if job.deadline > datetime.now(UTC):
                    raise AuthorizationError("System may only cancel jobs whose deadline has passed")
            elif not actor.is_requirer_of(job):
                raise AuthorizationError("Only the requirer can cancel an open job")
        elif not (actor.is_requirer_of(job) or actor.is_provider_of(job)):
            raise AuthorizationError("Only a party to this job can cancel it")


def transition(job: Job, action: JobAction, actor: Actor) -> JobStatus:
    """Validate ``action`` on ``job`` by ``actor`` and return the target status.

    Pure check: nothing on the job is modified. Raises InvalidTransitionError
    when the table has no entry for (status, action), AuthorizationError
    when the actor is not allowed to perform it.
    """
    target = TRANSITIONS.get((job.status, action))
    if target is None:
        raise InvalidTransitionError(job.status.value, action.value)
    _authorize(job, action, actor)
    return target


def check_version(job: Job, expected_version: int | None) -> None:
    if expected_version is not None and job.version != expected_version:
        raise StaleStateError(
            f"Job {job.job_id} is at version {job.version}, not {expected_version}; re-fetch and retry",
            {"current_version": job.version, "expected_version": expected_version},
        )


def _assert_future(deadline: datetime, what: str = "Deadline") -> None:
    if deadline <= datetime.now(UTC):
        raise ValidationError(f"{what} must be in the future", {"deadline": deadline.isoformat()})


def _assert_amount(amount: int) -> None:
    if amount < settings.min_job_amount or amount > settings.max_job_amount:
        raise ValidationError(
            f"Amount must be between {settings.min_job_amount} and {settings.max_job_amount} minor units",
            {"amount": amount},
        )


def _apply_fees(job: Job, breakdown: fees.FeeBreakdown) -> None:
    """Fee and totals are always written together."""
    job.base_amount = breakdown.base_amount
    job.service_fee = breakdown.fee
    job.total_amount_due = breakdown.total_due
    job.net_amount_to_provider = breakdown.net_payout


def apply_status(job: Job, target: JobStatus, entry: EscrowEntry | None = None) -> None:
    """Move the job to ``target``, archiving it (and its escrow) on terminal states."""
    job.status = target
    if target in TERMINAL_STATUSES:
        now = utcnow()
        job.archived_at = now
        if entry is not None:
            entry.archived_at = now


@asynccontextmanager
async def unit_of_work(db: AsyncSession) -> AsyncIterator[None]:
    """Commit everything done in the block, or roll all of it back.

    A payout that stopped part-way is the one exception: after the rollback,
    the legs that already moved money are recorded in a second transaction.
    """
    try:
        yield
        await db.commit()
    except StaleDataError as e:
        await db.rollback()
        raise StaleStateError("Job was modified concurrently; re-fetch and retry") from e
    except PartialDisbursementError as e:
        await db.rollback()
        await escrow_service.record_partial_disbursement(db, e)
        await db.commit()
        raise
    except Exception:
        await db.rollback()
        raise


async def load_job(db: AsyncSession, job_id: uuid.UUID, lock: bool = False) -> Job:
    stmt = select(Job).where(Job.job_id == job_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    job = result.scalar_one_or_none()
    if job is None:
        raise NotFoundError("Job not found")
    return job


# ---------------------------------------------------------------------------
# Operations
# ---------------------------------------------------------------------------

async def create_job(db: AsyncSession, actor: Actor, data: JobCreate) -> Job:
    """Requirer posts a job. Fees are computed with the current rate, which is frozen on the job."""
    if actor.is_system or actor.user_id is None:
        raise AuthorizationError("Jobs must be created by a user")
    _assert_amount(data.base_amount)
    _assert_future(data.deadline)
    if not data.required_skills:
        raise ValidationError("At least one skill is required")
    if data.candidate_provider_id == actor.user_id:
        raise ValidationError("You cannot invite yourself to your own job")

    rate = settings.service_fee_rate
    breakdown = fees.compute(data.base_amount, rate)

    job = Job(
        job_id=uuid.uuid4(),
        title=data.title,
        description=data.description,
        category=data.category,
        location=data.location,
        required_skills=list(data.required_skills),
        service_fee_rate=rate,
        requirer_id=actor.user_id,
        candidate_provider_id=data.candidate_provider_id,
        status=JobStatus.PENDING,
        deadline=data.deadline,
        conversation_id=data.conversation_id,
        dispute=None,
    )
    _apply_fees(job, breakdown)

    async with unit_of_work(db):
        db.add(job)
        await db.flush()
        await escrow_service.create_entry(db, job, actor)
        notify_job_event(db, job, "job.created", {"total_due": job.total_amount_due})

    logger.info(
        "Job %s created by %s: base %d, fee %d (rate %s)",
        job.job_id, actor.user_id, job.base_amount, job.service_fee, rate,
    )
    return job


async def update_job(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, data: JobUpdate
) -> Job:
    """Requirer edits an open job. Fees are recomputed at the job's frozen rate."""
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    transition(job, JobAction.UPDATE, actor)

    changes = data.model_dump(exclude_unset=True, exclude={"expected_version"})
    if "deadline" in changes:
        if data.deadline is None:
            raise ValidationError("Deadline is required")
        _assert_future(data.deadline)
    if "base_amount" in changes:
        if data.base_amount is None:
            raise ValidationError("Amount is required")
        _assert_amount(data.base_amount)
    if "required_skills" in changes and not data.required_skills:
        raise ValidationError("At least one skill is required")
    for field in ("title", "description", "location"):
        if field in changes and not (changes[field] or "").strip():
            raise ValidationError(f"{field} must not be blank")

    async with unit_of_work(db):
        for field in ("title", "description", "category", "location", "conversation_id", "deadline"):
            if field in changes:
                setattr(job, field, changes[field])
        if "required_skills" in changes:
            job.required_skills = list(data.required_skills or [])
        if "base_amount" in changes and data.base_amount != job.base_amount:
            _apply_fees(job, fees.compute(data.base_amount, job.service_fee_rate))  # type: ignore[arg-type]
        notify_job_event(db, job, "job.updated", {"fields": sorted(changes)})

    logger.info("Job %s updated by requirer: %s", job.job_id, sorted(changes))
    return job


async def accept_job(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: Actor,
    data: AcceptJob | None = None,
) -> Job:
    """Provider accepts. Escrow is funded with the requirer's total before the status moves."""
    data = data or AcceptJob()
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    target = transition(job, JobAction.ACCEPT, actor)
    _assert_future(job.deadline, "Job deadline")

    async with unit_of_work(db):
        if data.agreed_amount is not None and data.agreed_amount != job.base_amount:
            _assert_amount(data.agreed_amount)
            previous = job.base_amount
            _apply_fees(job, fees.compute(data.agreed_amount, job.service_fee_rate))
            logger.info(
                "Job %s renegotiated at acceptance: %d -> %d",
                job.job_id, previous, job.base_amount,
            )
        job.provider_id = actor.user_id
        if data.conversation_id is not None:
            job.conversation_id = data.conversation_id
        await escrow_service.hold(db, gateway, job, job.total_amount_due, actor)
        job.accepted_at = utcnow()
        apply_status(job, target)
        notify_job_event(db, job, "job.accepted", {
            "provider_id": str(job.provider_id),
            "escrow_held": job.total_amount_due,
        })

    logger.info("Job %s accepted by %s", job.job_id, actor.user_id)
    return job


async def complete_job(
    db: AsyncSession, job_id: uuid.UUID, actor: Actor, data: CompleteJob
) -> Job:
    """Provider reports completion. Escrow stays held."""
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    target = transition(job, JobAction.COMPLETE, actor)
    if not data.completion_notes or not data.completion_notes.strip():
        raise ValidationError("Completion notes are required")

    async with unit_of_work(db):
        job.completion_notes = data.completion_notes
        job.completion_evidence_refs = list(data.completion_evidence_refs)
        job.time_spent = data.time_spent
        job.completed_at = utcnow()
        apply_status(job, target)
        notify_job_event(db, job, "job.completed", {})

    logger.info("Job %s completed by provider %s", job.job_id, actor.user_id)
    return job


async def submit_satisfaction(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: Actor,
    data: SatisfactionSubmit,
) -> Job:
    """Requirer is satisfied: record the review and release escrow to the provider."""
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    target = transition(job, JobAction.SATISFY, actor)
    if not 1 <= data.rating <= 5:
        raise ValidationError("Rating must be between 1 and 5", {"rating": data.rating})

    async with unit_of_work(db):
        receipt = await escrow_service.release(db, gateway, job, actor)
        db.add(SatisfactionReview(
            review_id=uuid.uuid4(),
            job_id=job.job_id,
            reviewer_id=actor.user_id,
            provider_id=job.provider_id,
            rating=data.rating,
            feedback=data.feedback,
            quality_aspects=data.quality_aspects.model_dump() if data.quality_aspects else None,
            would_recommend=data.would_recommend,
            would_hire_again=data.would_hire_again,
        ))
        apply_status(job, target, receipt.entry)
        notify_job_event(db, job, "job.satisfied", {
            "rating": data.rating,
            "provider_payout": receipt.entry.provider_paid,
        })

    logger.info("Job %s satisfied; escrow released to %s", job.job_id, job.provider_id)
    return job


async def cancel_job(
    db: AsyncSession,
    gateway: PaymentGateway,
    job_id: uuid.UUID,
    actor: Actor,
    data: CancelJob | None = None,
) -> Job:
    """Cancel a job. Held escrow goes back to the requirer."""
    data = data or CancelJob()
    job = await load_job(db, job_id, lock=True)
    check_version(job, data.expected_version)
    was = job.status
    target = transition(job, JobAction.CANCEL, actor)
    if was == JobStatus.ACCEPTED and not data.mutual_agreement:
        raise ValidationError("Cancelling an accepted job requires mutual agreement")

    async with unit_of_work(db):
        if was == JobStatus.ACCEPTED:
            receipt = await escrow_service.refund(db, gateway, job, actor)
            entry = receipt.entry
        else:
            entry = await escrow_service.get_entry(db, job.job_id)
        job.cancellation_reason = data.reason or (
            "Deadline passed before acceptance" if actor.is_system else None
        )
        apply_status(job, target, entry)
        notify_job_event(db, job, "job.cancelled", {
            "cancelled_by": actor.role_on(job),
            "refunded": entry.requirer_refunded,
        })

    logger.info("Job %s cancelled from %s by %s", job.job_id, was.value, actor.role_on(job))
    return job


async def get_job(db: AsyncSession, job_id: uuid.UUID, actor: Actor | None = None) -> Job:
    """Get a job. Open jobs are public; others are visible to parties and arbiters."""
    job = await load_job(db, job_id)
    if actor is None or actor.is_system or actor.is_arbiter:
        return job
    if job.status == JobStatus.PENDING and (
        job.candidate_provider_id is None or job.candidate_provider_id == actor.user_id
    ):
        return job
    if actor.is_requirer_of(job) or actor.is_provider_of(job):
        return job
    raise AuthorizationError("Not a party to this job")


async def list_jobs(
    db: AsyncSession,
    actor: Actor,
    role: str | None = None,
    status: JobStatus | None = None,
    limit: int = 50,
    offset: int = 0,
) -> list[Job]:
    """List the actor's jobs, or open jobs they could accept (role="open")."""
    stmt = select(Job)
    if role == "open":
        stmt = stmt.where(
            Job.status == JobStatus.PENDING,
            Job.requirer_id != actor.user_id,
            or_(Job.candidate_provider_id.is_(None), Job.candidate_provider_id == actor.user_id),
            Job.deadline > datetime.now(UTC),
        )
    elif role == "requirer":
        stmt = stmt.where(Job.requirer_id == actor.user_id)
    elif role == "provider":
        stmt = stmt.where(Job.provider_id == actor.user_id)
    elif role is None:
        stmt = stmt.where(or_(Job.requirer_id == actor.user_id, Job.provider_id == actor.user_id))
    else:
        raise ValidationError(f"Unknown role filter {role!r}")
    if status is not None:
        stmt = stmt.where(Job.status == status)
    stmt = stmt.order_by(Job.created_at.desc()).limit(limit).offset(offset)
    result = await db.execute(stmt)
    return list(result.scalars().all())


async def pending_jobs_with_deadlines(db: AsyncSession) -> list[Job]:
    result = await db.execute(select(Job).where(Job.status == JobStatus.PENDING))
    return list(result.scalars().all())
