"""Pydantic v2 schemas for disputes."""

import uuid
from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobescrow.models.dispute import DisputeReason, ResolutionOutcome


class DisputeCreate(BaseModel):
    """Either party files a dispute. Escrow stays held until resolution."""
    reason: DisputeReason
    description: str = Field(..., min_length=1, max_length=10_000)
    proposed_resolution: str = Field(..., min_length=1, max_length=4096)
    evidence_refs: list[str] = Field(default_factory=list, max_length=20)
    expected_version: int | None = Field(None, ge=1)

    @field_validator("description", "proposed_resolution")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class DisputeResolve(BaseModel):
    """Arbiter's final decision on the held funds."""
    outcome: ResolutionOutcome
    provider_share: Decimal | None = Field(
        None,
        description="Fraction of the base amount awarded to the provider. "
                    "Required for split, strictly between 0 and 1.",
    )
    notes: str | None = Field(None, max_length=4096)
    expected_version: int | None = Field(None, ge=1)

    @model_validator(mode="after")
    def validate_share(self) -> "DisputeResolve":
        if self.outcome == ResolutionOutcome.SPLIT:
            if self.provider_share is None:
                raise ValueError("provider_share is required for a split")
            if not (Decimal("0") < self.provider_share < Decimal("1")):
                raise ValueError("provider_share must be strictly between 0 and 1")
        elif self.provider_share is not None:
            raise ValueError("provider_share is only valid for a split")
        return self


class DisputeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    dispute_id: uuid.UUID
    job_id: uuid.UUID
    reason: str
    description: str
    proposed_resolution: str
    evidence_refs: list[str]
    initiated_by_id: uuid.UUID
    initiated_by_role: str
    created_at: datetime
    resolution_status: str
    resolution_outcome: str | None = None
    provider_share: Decimal | None = None
    provider_amount: int | None = None
    requirer_amount: int | None = None
    resolution_notes: str | None = None
    resolved_by_id: uuid.UUID | None = None
    resolved_at: datetime | None = None

    @field_validator(
        "reason", "initiated_by_role", "resolution_status", "resolution_outcome", mode="before",
    )
    @classmethod
    def serialize_enum(cls, v: object) -> str | None:
        if v is None:
            return None
        if hasattr(v, "value"):
            return v.value
        return str(v)
