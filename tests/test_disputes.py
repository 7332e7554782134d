"""Tests for filing and resolving disputes."""

import uuid
from decimal import Decimal

import pytest
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from jobescrow.auth.actor import Actor, ActorKind
from jobescrow.errors import (
    AlreadyTerminalError,
    AuthorizationError,
    EscrowError,
    InvalidTransitionError,
    PartialDisbursementError,
)
from jobescrow.models.dispute import DisputeReason, PartyRole, ResolutionOutcome, ResolutionStatus
from jobescrow.models.escrow import EscrowState
from jobescrow.models.job import JobStatus
from jobescrow.schemas.dispute import DisputeCreate, DisputeResolve
from jobescrow.services import dispute as dispute_service
from jobescrow.services import escrow as escrow_service
from jobescrow.services.payment_gateway import GatewayResult
from tests.conftest import accepted_job, completed_job, create_job


def _dispute(**overrides) -> DisputeCreate:  # type: ignore[no-untyped-def]
    data = {
        "reason": DisputeReason.QUALITY,
        "description": "The trap still leaks after the repair.",
        "proposed_resolution": "Full refund",
        "evidence_refs": ["photo-1.jpg"],
    }
    data.update(overrides)
    return DisputeCreate(**data)


@pytest.mark.asyncio
async def test_refund_resolution_returns_everything_to_requirer(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)

    job = await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())
    assert job.status == JobStatus.DISPUTED
    assert job.dispute.initiated_by_role == PartyRole.REQUIRER
    entry = await escrow_service.get_entry(db_session, job.job_id, lock=False)
    assert entry.state == EscrowState.HELD

    job = await dispute_service.resolve_dispute(
        db_session, gateway, job.job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.REFUND),
    )
    assert job.status == JobStatus.RESOLVED
    assert job.archived_at is not None

    entry = await escrow_service.get_entry(db_session, job.job_id, lock=False)
    assert entry.state == EscrowState.REFUNDED
    assert entry.requirer_refunded == 10_250
    assert entry.provider_paid == 0
    assert entry.amount_held == 0

    record = job.dispute
    assert record.resolution_status == ResolutionStatus.RESOLVED
    assert record.resolution_outcome == ResolutionOutcome.REFUND
    assert record.requirer_amount == 10_250
    assert record.provider_amount == 0
    assert record.resolved_by_id == arbiter.user_id


@pytest.mark.asyncio
async def test_provider_can_dispute_completed_job(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await completed_job(db_session, gateway, requirer, provider)
    job = await dispute_service.open_dispute(
        db_session, job.job_id, provider,
        _dispute(reason=DisputeReason.PAYMENT, proposed_resolution="Release payment"),
    )
    assert job.dispute.initiated_by_role == PartyRole.PROVIDER

    job = await dispute_service.resolve_dispute(
        db_session, gateway, job.job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.RELEASE),
    )
    entry = await escrow_service.get_entry(db_session, job.job_id, lock=False)
    assert entry.state == EscrowState.RELEASED
    assert entry.provider_paid == 9_750
    assert job.dispute.provider_amount == 9_750


@pytest.mark.asyncio
async def test_split_resolution(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await completed_job(db_session, gateway, requirer, provider)
    await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())

    job = await dispute_service.resolve_dispute(
        db_session, gateway, job.job_id, arbiter,
        DisputeResolve(outcome=ResolutionOutcome.SPLIT, provider_share=Decimal("0.6"), notes="Partly done"),
    )
    entry = await escrow_service.get_entry(db_session, job.job_id, lock=False)
    assert entry.state == EscrowState.PARTIALLY_RELEASED
    assert entry.provider_paid + entry.requirer_refunded + entry.platform_fee_collected == 10_250
    assert job.dispute.provider_share == Decimal("0.6")
    assert job.dispute.resolution_notes == "Partly done"


@pytest.mark.asyncio
async def test_resolve_on_completed_job_is_invalid_transition(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await completed_job(db_session, gateway, requirer, provider)
    with pytest.raises(InvalidTransitionError) as exc_info:
        await dispute_service.resolve_dispute(
            db_session, gateway, job.job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.REFUND),
        )
    assert exc_info.value.from_status == "completed"
    assert gateway.ops("reverse") == []


@pytest.mark.asyncio
async def test_cannot_dispute_pending_job(db_session: AsyncSession, requirer: Actor) -> None:
    job = await create_job(db_session, requirer)
    with pytest.raises(InvalidTransitionError):
        await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())


@pytest.mark.asyncio
async def test_stranger_cannot_dispute(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)
    with pytest.raises(AuthorizationError):
        await dispute_service.open_dispute(db_session, job.job_id, Actor(user_id=uuid.uuid4()), _dispute())


@pytest.mark.asyncio
async def test_second_dispute_is_invalid(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)
    await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())
    with pytest.raises(InvalidTransitionError):
        await dispute_service.open_dispute(db_session, job.job_id, provider, _dispute())


@pytest.mark.asyncio
async def test_only_uninvolved_arbiter_can_resolve(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)
    await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())
    decision = DisputeResolve(outcome=ResolutionOutcome.REFUND)

    with pytest.raises(AuthorizationError):
        await dispute_service.resolve_dispute(db_session, gateway, job.job_id, requirer, decision)
    with pytest.raises(AuthorizationError):
        await dispute_service.resolve_dispute(db_session, gateway, job.job_id, Actor.system(), decision)

    conflicted = Actor(user_id=provider.user_id, kind=ActorKind.ARBITER)
    with pytest.raises(AuthorizationError):
        await dispute_service.resolve_dispute(db_session, gateway, job.job_id, conflicted, decision)
    assert gateway.ops("reverse") == []


@pytest.mark.asyncio
async def test_resolved_job_cannot_be_resolved_again(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await accepted_job(db_session, gateway, requirer, provider)
    await dispute_service.open_dispute(db_session, job.job_id, requirer, _dispute())
    await dispute_service.resolve_dispute(
        db_session, gateway, job.job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.REFUND),
    )
    with pytest.raises(InvalidTransitionError):
        await dispute_service.resolve_dispute(
            db_session, gateway, job.job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.RELEASE),
        )
    assert gateway.ops("settle") == []


def test_split_requires_share_strictly_between_zero_and_one() -> None:
    with pytest.raises(PydanticValidationError):
        DisputeResolve(outcome=ResolutionOutcome.SPLIT)
    with pytest.raises(PydanticValidationError):
        DisputeResolve(outcome=ResolutionOutcome.SPLIT, provider_share=Decimal("1"))
    with pytest.raises(PydanticValidationError):
        DisputeResolve(outcome=ResolutionOutcome.REFUND, provider_share=Decimal("0.5"))


def test_dispute_requires_description() -> None:
    with pytest.raises(PydanticValidationError):
        _dispute(description="   ")


@pytest.mark.asyncio
async def test_interrupted_split_can_only_finish_as_the_same_split(
    db_session: AsyncSession, gateway, requirer: Actor, provider: Actor, arbiter: Actor,
) -> None:
    job = await completed_job(db_session, gateway, requirer, provider)
    job_id = job.job_id
    await dispute_service.open_dispute(db_session, job_id, requirer, _dispute())
    gateway.fail_on[":split:requirer"] = GatewayResult(success=False, retryable=True, error="Card network down")
    split = DisputeResolve(outcome=ResolutionOutcome.SPLIT, provider_share=Decimal("0.6"))

    with pytest.raises(PartialDisbursementError):
        await dispute_service.resolve_dispute(db_session, gateway, job_id, arbiter, split)

    entry = await escrow_service.get_entry(db_session, job_id, lock=False)
    assert entry.state == EscrowState.DISBURSING
    assert entry.provider_paid == 5_850
    assert entry.platform_fee_collected == 400
    assert entry.requirer_refunded == 0
    assert entry.amount_held == 4_000

    with pytest.raises(AlreadyTerminalError):
        await dispute_service.resolve_dispute(
            db_session, gateway, job_id, arbiter, DisputeResolve(outcome=ResolutionOutcome.REFUND),
        )
    with pytest.raises(EscrowError) as exc_info:
        await dispute_service.resolve_dispute(
            db_session, gateway, job_id, arbiter,
            DisputeResolve(outcome=ResolutionOutcome.SPLIT, provider_share=Decimal("0.5")),
        )
    assert type(exc_info.value) is EscrowError

    del gateway.fail_on[":split:requirer"]
    job = await dispute_service.resolve_dispute(db_session, gateway, job_id, arbiter, split)
    assert job.status == JobStatus.RESOLVED
    assert job.dispute.provider_amount == 5_850
    assert job.dispute.requirer_amount == 4_000

    entry = await escrow_service.get_entry(db_session, job_id, lock=False)
    assert entry.state == EscrowState.PARTIALLY_RELEASED
    assert entry.amount_held == 0
    assert [c[3] for c in gateway.ops("settle")].count(f"{job_id}:split:provider") == 1
    assert [c[3] for c in gateway.ops("reverse")].count(f"{job_id}:split:requirer") == 2
