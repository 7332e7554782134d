"""Escrow ledger: hold, release, refund and split with an append-only audit log.

Ledger operations only flush; the job lifecycle commits the status change
and the ledger change together, or rolls both back. Each operation is
idempotent per job and target state: repeating a completed operation
returns the original audit entry instead of moving money again, while a
different terminal operation on a closed entry raises AlreadyTerminalError.
"""

import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.auth.actor import Actor
from jobescrow.config import settings
from jobescrow.errors import (
    AlreadyTerminalError,
    EscrowError,
    GatewayError,
    InsufficientFundsError,
    NotFoundError,
    PartialDisbursementError,
)
from jobescrow.database import utcnow
from jobescrow.models.escrow import (
    EscrowAction,
    EscrowAuditLog,
    EscrowEntry,
    EscrowState,
    SettlementStatus,
)
from jobescrow.models.job import Job
from jobescrow.services.fees import split_breakdown
from jobescrow.services.payment_gateway import GatewayResult, PaymentGateway, account_for_user

logger = logging.getLogger(__name__)


@dataclass
class LedgerReceipt:
    """Outcome of a ledger operation."""
    entry: EscrowEntry
    audit: EscrowAuditLog
    replayed: bool = False


async def _log_audit(
    db: AsyncSession,
    entry: EscrowEntry,
    action: EscrowAction,
    amount: int,
    actor: Actor,
    actor_role: str,
    metadata: dict | None = None,
) -> EscrowAuditLog:
    """Append to the immutable audit log."""
    audit = EscrowAuditLog(
        audit_id=uuid.uuid4(),
        entry_id=entry.entry_id,
        job_id=entry.job_id,
        action=action,
        state_after=entry.state,
        amount=amount,
        actor_id=actor.user_id,
        actor_role=actor_role,
        timestamp=utcnow(),
        metadata_=metadata,
    )
    db.add(audit)
    await db.flush()
    return audit


async def _latest_audit(
    db: AsyncSession, entry: EscrowEntry, action: EscrowAction
) -> EscrowAuditLog:
    result = await db.execute(
        select(EscrowAuditLog)
        .where(EscrowAuditLog.entry_id == entry.entry_id, EscrowAuditLog.action == action)
        .order_by(EscrowAuditLog.timestamp.desc())
        .limit(1)
    )
    audit = result.scalar_one_or_none()
    if audit is None:
        raise EscrowError(f"Escrow entry is {entry.state.value} but has no {action.value} audit record")
    return audit


def _raise_for_gateway(result: GatewayResult, operation: str, job_id: uuid.UUID) -> None:
    if result.success:
        return
    logger.warning(
        "Gateway %s failed for job %s (retryable=%s): %s",
        operation, job_id, result.retryable, result.error,
    )
    raise GatewayError(
        result.error or f"Payment gateway {operation} failed",
        retryable=result.retryable,
        timed_out=result.timed_out,
        details={"operation": operation, "job_id": str(job_id)},
    )


def _assert_open(entry: EscrowEntry, target: EscrowState) -> None:
    """Reject a terminal operation on an entry that already closed differently."""
    if entry.is_terminal and entry.state != target:
        raise AlreadyTerminalError(
            f"Escrow for job {entry.job_id} is already {entry.state.value}",
            {"state": entry.state.value, "attempted": target.value},
        )
    if entry.state == EscrowState.DISBURSING:
        pending = (entry.disbursement or {}).get("target")
        if pending != target.value:
            raise AlreadyTerminalError(
                f"Escrow for job {entry.job_id} is part-way through a payout to {pending}",
                {"state": entry.state.value, "pending": pending, "attempted": target.value},
            )
    if entry.state == EscrowState.NONE:
        raise EscrowError(
            f"No funds are held for job {entry.job_id}",
            {"state": entry.state.value, "attempted": target.value},
        )


async def get_entry(db: AsyncSession, job_id: uuid.UUID, lock: bool = True) -> EscrowEntry:
    stmt = select(EscrowEntry).where(EscrowEntry.job_id == job_id)
    if lock:
        stmt = stmt.with_for_update()
    result = await db.execute(stmt)
    entry = result.scalar_one_or_none()
    if entry is None:
        raise NotFoundError("Escrow entry not found for this job")
    return entry


async def create_entry(db: AsyncSession, job: Job, actor: Actor) -> EscrowEntry:
    """Create the (empty) escrow entry that accompanies every job."""
    entry = EscrowEntry(
        entry_id=uuid.uuid4(),
        job_id=job.job_id,
        requirer_id=job.requirer_id,
        state=EscrowState.NONE,
        created_at=utcnow(),
    )
    db.add(entry)
    await db.flush()
    await _log_audit(db, entry, EscrowAction.CREATED, 0, actor, actor.role_on(job))
    return entry


async def hold(
    db: AsyncSession, gateway: PaymentGateway, job: Job, amount: int, actor: Actor
) -> LedgerReceipt:
    """Collect the requirer's total and hold it against the job."""
    entry = await get_entry(db, job.job_id)
    if entry.state == EscrowState.HELD:
        return LedgerReceipt(entry, await _latest_audit(db, entry, EscrowAction.HELD), replayed=True)
    if entry.state != EscrowState.NONE:
        raise AlreadyTerminalError(
            f"Escrow for job {job.job_id} is already {entry.state.value}",
            {"state": entry.state.value, "attempted": EscrowState.HELD.value},
        )
    if amount < job.total_amount_due:
        raise InsufficientFundsError(
            f"Hold of {amount} does not cover the total due of {job.total_amount_due}",
            {"amount": amount, "total_due": job.total_amount_due},
        )
    if amount > job.total_amount_due:
        raise EscrowError(
            f"Hold of {amount} exceeds the total due of {job.total_amount_due}",
            {"amount": amount, "total_due": job.total_amount_due},
        )

    result = await gateway.hold(amount, job.job_id, f"{job.job_id}:hold")
    _raise_for_gateway(result, "hold", job.job_id)

    entry.state = EscrowState.HELD
    entry.provider_id = job.provider_id
    entry.amount_funded = amount
    entry.amount_held = amount
    entry.hold_reference = result.reference
    entry.held_at = utcnow()
    audit = await _log_audit(
        db, entry, EscrowAction.HELD, amount, actor, actor.role_on(job),
        {"gateway_reference": result.reference},
    )
    logger.info("Escrow held for job %s: %d", job.job_id, amount)
    return LedgerReceipt(entry, audit)


async def _disburse(
    gateway: PaymentGateway,
    entry: EscrowEntry,
    job: Job,
    operation: str,
    target: EscrowState,
    legs: dict[str, int],
    actor: Actor,
) -> dict[str, str | None]:
    """Pay out ``legs`` in order, one gateway call per leg.

    Legs already settled by an earlier, interrupted attempt are skipped.
    If a leg fails once another has gone through, PartialDisbursementError
    carries the settled legs so they can be recorded after rollback.
    """
    progress = entry.disbursement or {}
    if entry.state == EscrowState.DISBURSING and progress.get("legs") != legs:
        raise EscrowError(
            f"Escrow for job {job.job_id} is part-way through a different payout",
            {"pending": progress.get("legs"), "attempted": legs},
        )
    settled: dict[str, str | None] = dict(progress.get("settled") or {})

    for leg, amount in legs.items():
        if not amount or leg in settled:
            continue
        key = f"{job.job_id}:{operation}:{leg}"
        if leg == "requirer":
            result = await gateway.reverse(amount, job.job_id, key)
        else:
            destination = (
                settings.platform_account if leg == "platform"
                else account_for_user(job.provider_id)  # type: ignore[arg-type]
            )
            result = await gateway.settle(amount, destination, job.job_id, key)
        if result.success:
            settled[leg] = result.reference
            continue
        if settled:
            logger.error(
                "Gateway %s leg %s failed for job %s after %s settled: %s",
                operation, leg, job.job_id, sorted(settled), result.error,
            )
            raise PartialDisbursementError(
                result.error or f"Payment gateway {operation} failed on the {leg} leg",
                job_id=job.job_id,
                target=target.value,
                legs=legs,
                settled=settled,
                actor=actor,
                actor_role=actor.role_on(job),
                retryable=result.retryable,
                timed_out=result.timed_out,
            )
        _raise_for_gateway(result, operation, job.job_id)
    return settled


async def record_partial_disbursement(db: AsyncSession, exc: PartialDisbursementError) -> EscrowEntry:
    """Persist the legs that reached the gateway before a payout failed.

    Runs in its own transaction after the failed transition was rolled
    back. The entry moves to ``disbursing`` so that only the same payout can
    continue; refunds and other splits are refused until it completes.
    """
    entry = await get_entry(db, exc.job_id)
    entry.state = EscrowState.DISBURSING
    entry.disbursement = {"target": exc.target, "legs": dict(exc.legs), "settled": dict(exc.settled)}
    paid = {leg: exc.legs[leg] for leg in exc.settled}
    entry.provider_paid = paid.get("provider", 0)
    entry.platform_fee_collected = paid.get("platform", 0)
    entry.requirer_refunded = paid.get("requirer", 0)
    entry.amount_held = entry.amount_funded - sum(paid.values())
    await _log_audit(
        db, entry, EscrowAction.DISBURSEMENT_STALLED, sum(paid.values()), exc.actor, exc.actor_role,
        {"target": exc.target, "settled": dict(exc.settled), "error": exc.message},
    )
    logger.error(
        "Escrow for job %s stalled mid-payout: settled %s of %s",
        exc.job_id, sorted(exc.settled), sorted(exc.legs),
    )
    return entry


async def release(
    db: AsyncSession, gateway: PaymentGateway, job: Job, actor: Actor
) -> LedgerReceipt:
    """Pay the provider their net amount and the platform its fee."""
    entry = await get_entry(db, job.job_id)
    if entry.state == EscrowState.RELEASED:
        return LedgerReceipt(entry, await _latest_audit(db, entry, EscrowAction.RELEASED), replayed=True)
    _assert_open(entry, EscrowState.RELEASED)
    if job.provider_id is None:
        raise EscrowError("Cannot release escrow for a job with no provider")

    funded = entry.amount_funded
    provider_amount = job.net_amount_to_provider
    platform_amount = funded - provider_amount
    if platform_amount < 0:
        raise InsufficientFundsError(
            f"Held {funded} cannot cover provider payout {provider_amount}",
            {"held": funded, "provider_payout": provider_amount},
        )

    settled = await _disburse(
        gateway, entry, job, "release", EscrowState.RELEASED,
        {"provider": provider_amount, "platform": platform_amount}, actor,
    )

    entry.provider_paid = provider_amount
    entry.platform_fee_collected = platform_amount
    entry.amount_held = 0
    entry.state = EscrowState.RELEASED
    entry.disbursement = None
    entry.settlement_status = SettlementStatus.PENDING
    entry.settlement_reference = settled.get("provider")
    entry.closed_at = utcnow()
    audit = await _log_audit(
        db, entry, EscrowAction.RELEASED, funded, actor, actor.role_on(job),
        {
            "provider_payout": provider_amount,
            "platform_fee": platform_amount,
            "service_fee": job.service_fee,
            "fee_rate": str(job.service_fee_rate),
            "gateway_reference": settled.get("provider"),
        },
    )
    logger.info(
        "Escrow released for job %s: provider %d, platform %d",
        job.job_id, provider_amount, platform_amount,
    )
    return LedgerReceipt(entry, audit)


async def refund(
    db: AsyncSession, gateway: PaymentGateway, job: Job, actor: Actor
) -> LedgerReceipt:
    """Return the full held amount to the requirer."""
    entry = await get_entry(db, job.job_id)
    if entry.state == EscrowState.REFUNDED:
        return LedgerReceipt(entry, await _latest_audit(db, entry, EscrowAction.REFUNDED), replayed=True)
    _assert_open(entry, EscrowState.REFUNDED)

    held = entry.amount_held
    result = await gateway.reverse(held, job.job_id, f"{job.job_id}:refund:requirer")
    _raise_for_gateway(result, "refund", job.job_id)

    entry.requirer_refunded = held
    entry.amount_held = 0
    entry.state = EscrowState.REFUNDED
    entry.settlement_status = SettlementStatus.PENDING
    entry.settlement_reference = result.reference
    entry.closed_at = utcnow()
    audit = await _log_audit(
        db, entry, EscrowAction.REFUNDED, held, actor, actor.role_on(job),
        {"requirer_refund": held, "gateway_reference": result.reference},
    )
    logger.info("Escrow refunded for job %s: %d", job.job_id, held)
    return LedgerReceipt(entry, audit)


async def partial_split(
    db: AsyncSession,
    gateway: PaymentGateway,
    job: Job,
    provider_share: Decimal,
    actor: Actor,
) -> LedgerReceipt:
    """Split held funds between provider and requirer. Dispute resolution only."""
    entry = await get_entry(db, job.job_id)
    if entry.state == EscrowState.PARTIALLY_RELEASED:
        return LedgerReceipt(
            entry, await _latest_audit(db, entry, EscrowAction.PARTIALLY_RELEASED), replayed=True,
        )
    _assert_open(entry, EscrowState.PARTIALLY_RELEASED)
    if job.provider_id is None:
        raise EscrowError("Cannot split escrow for a job with no provider")

    funded = entry.amount_funded
    shares = split_breakdown(job.base_amount, job.service_fee_rate, provider_share)
    if sum(shares.values()) != funded:
        raise EscrowError(
            "Split legs do not match the held amount",
            {"held": funded, **shares},
        )

    settled = await _disburse(
        gateway, entry, job, "split", EscrowState.PARTIALLY_RELEASED,
        {leg: shares[leg] for leg in ("provider", "platform", "requirer")}, actor,
    )

    entry.provider_paid = shares["provider"]
    entry.requirer_refunded = shares["requirer"]
    entry.platform_fee_collected = shares["platform"]
    entry.amount_held = 0
    entry.state = EscrowState.PARTIALLY_RELEASED
    entry.disbursement = None
    entry.settlement_status = SettlementStatus.PENDING
    entry.settlement_reference = settled.get("provider")
    entry.closed_at = utcnow()
    audit = await _log_audit(
        db, entry, EscrowAction.PARTIALLY_RELEASED, funded, actor, actor.role_on(job),
        {
            "provider_share": str(provider_share),
            "provider_payout": shares["provider"],
            "requirer_refund": shares["requirer"],
            "platform_fee": shares["platform"],
        },
    )
    logger.info("Escrow split for job %s: %s", job.job_id, shares)
    return LedgerReceipt(entry, audit)


async def confirm_settlement(
    db: AsyncSession,
    job_id: uuid.UUID,
    reference: str | None,
    succeeded: bool,
) -> LedgerReceipt:
    """Record the gateway's asynchronous settlement outcome.

    Never changes ``state``; a failed settlement is surfaced for operators
    to retry at the gateway with the original idempotency keys.
    """
    entry = await get_entry(db, job_id)
    if not entry.is_terminal:
        raise EscrowError(
            f"Escrow for job {job_id} has not been disbursed",
            {"state": entry.state.value},
        )
    target = SettlementStatus.SETTLED if succeeded else SettlementStatus.FAILED
    action = EscrowAction.SETTLEMENT_CONFIRMED if succeeded else EscrowAction.SETTLEMENT_FAILED
    if entry.settlement_status == target:
        return LedgerReceipt(entry, await _latest_audit(db, entry, action), replayed=True)
    if entry.settlement_status == SettlementStatus.SETTLED:
        raise AlreadyTerminalError(f"Settlement for job {job_id} is already confirmed")

    entry.settlement_status = target
    if reference:
        entry.settlement_reference = reference
    audit = await _log_audit(
        db, entry, action, entry.amount_funded, Actor.system(), "gateway",
        {"gateway_reference": reference},
    )
    if succeeded:
        logger.info("Settlement confirmed for job %s (%s)", job_id, reference)
    else:
        logger.error("Settlement FAILED for job %s (%s)", job_id, reference)
    return LedgerReceipt(entry, audit)


async def get_audit_trail(db: AsyncSession, job_id: uuid.UUID) -> list[EscrowAuditLog]:
    result = await db.execute(
        select(EscrowAuditLog)
        .where(EscrowAuditLog.job_id == job_id)
        .order_by(EscrowAuditLog.timestamp)
    )
    return list(result.scalars().all())


async def payment_history(
    db: AsyncSession, user_id: uuid.UUID, limit: int = 50, offset: int = 0
) -> list[EscrowAuditLog]:
    """Money movements on every job the user is a party to, newest first."""
    result = await db.execute(
        select(EscrowAuditLog)
        .join(EscrowEntry, EscrowEntry.entry_id == EscrowAuditLog.entry_id)
        .where(or_(EscrowEntry.requirer_id == user_id, EscrowEntry.provider_id == user_id))
        .where(EscrowAuditLog.action != EscrowAction.CREATED)
        .order_by(EscrowAuditLog.timestamp.desc())
        .limit(limit)
        .offset(offset)
    )
    return list(result.scalars().all())
