"""Service fee arithmetic.

All amounts are integer minor units (kobo/cents). The rate is a Decimal
fraction frozen on the job at creation time. The fee is rounded half-up
once; the totals are derived from that single rounded value so that

    fee + net_payout == base_amount
    total_due        == base_amount + fee

hold exactly for every input.
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from jobescrow.config import settings
from jobescrow.errors import ValidationError


@dataclass(frozen=True)
class FeeBreakdown:
    """Fee figures for one base amount at one rate."""
    base_amount: int
    fee_rate: Decimal
    fee: int
    total_due: int  # charged to the requirer and held in escrow
    net_payout: int  # paid to the provider on release

    @property
    def platform_share(self) -> int:
        """What the platform keeps on a full release: fee from each side."""
        return self.total_due - self.net_payout

    def to_dict(self) -> dict:
        return {
            "base_amount": self.base_amount,
            "fee_rate": str(self.fee_rate),
            "fee": self.fee,
            "total_due": self.total_due,
            "net_payout": self.net_payout,
        }


def round_half_up(value: Decimal) -> int:
    return int(value.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute(base_amount: int, fee_rate: Decimal) -> FeeBreakdown:
    """Convert a base amount into fee, requirer total and provider payout.

    Raises ValidationError for a non-positive amount or a rate outside [0, 1).
    """
    if isinstance(base_amount, bool) or not isinstance(base_amount, int):
        raise ValidationError("base_amount must be an integer number of minor units")
    if base_amount <= 0:
        raise ValidationError("base_amount must be greater than zero", {"base_amount": base_amount})
    rate = Decimal(str(fee_rate)) if not isinstance(fee_rate, Decimal) else fee_rate
    if rate < 0 or rate >= 1:
        raise ValidationError("fee_rate must be in [0, 1)", {"fee_rate": str(fee_rate)})

    fee = round_half_up(Decimal(base_amount) * rate)
    return FeeBreakdown(
        base_amount=base_amount,
        fee_rate=rate,
        fee=fee,
        total_due=base_amount + fee,
        net_payout=base_amount - fee,
    )


def split_breakdown(base_amount: int, fee_rate: Decimal, provider_share: Decimal) -> dict[str, int]:
    """Distribute a held amount when a dispute ends in a split.

    The provider's gross is ``provider_share`` of the base amount; the
    provider-side fee is charged on that gross only. The requirer-side fee
    stays with the platform, and the rest of the base goes back to the
    requirer. The three legs always sum to ``compute(base_amount).total_due``.
    """
    if provider_share <= 0 or provider_share >= 1:
        raise ValidationError("provider_share must be strictly between 0 and 1")
    full = compute(base_amount, fee_rate)
    provider_gross = round_half_up(Decimal(base_amount) * provider_share)
    provider_fee = round_half_up(Decimal(provider_gross) * fee_rate)
    return {
        "provider": provider_gross - provider_fee,
        "requirer": base_amount - provider_gross,
        "platform": full.fee + provider_fee,
    }


def get_fee_schedule() -> dict:
    """Return the current fee schedule for display before a job is posted."""
    example = compute(10_000, settings.service_fee_rate)
    pct = settings.service_fee_rate * 100
    return {
        "currency": settings.currency,
        "amount_unit": "minor",
        "service_fee_rate": str(settings.service_fee_rate),
        "requirer_pays": f"base amount + {pct}% service fee (held in escrow at acceptance)",
        "provider_receives": f"base amount - {pct}% service fee (on release)",
        "rate_frozen_at": "Job creation. Later changes to the rate never affect existing jobs.",
        "example": example.to_dict(),
    }
