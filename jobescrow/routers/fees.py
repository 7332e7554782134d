"""Fee schedule and quote endpoints. Public, no actor required."""

from fastapi import APIRouter, Query

from jobescrow.config import settings
from jobescrow.schemas.job import FeeQuote
from jobescrow.services import fees

router = APIRouter(tags=["fees"])


@router.get("/fees")
async def fee_schedule() -> dict:
    """Current fee schedule. Query this before posting a job to price it.

    - **Requirer** pays: base amount + service fee, held in escrow at acceptance
    - **Provider** receives: base amount - service fee, when the requirer is satisfied

    The rate in force when a job is created stays with that job.
    """
    return fees.get_fee_schedule()


@router.get("/fees/quote", response_model=FeeQuote)
async def fee_quote(base_amount: int = Query(..., gt=0)) -> FeeQuote:
    """What a job of ``base_amount`` minor units would cost and pay at today's rate."""
    breakdown = fees.compute(base_amount, settings.service_fee_rate)
    return FeeQuote(
        base_amount=breakdown.base_amount,
        fee_rate=breakdown.fee_rate,
        fee=breakdown.fee,
        total_due=breakdown.total_due,
        net_payout=breakdown.net_payout,
    )
