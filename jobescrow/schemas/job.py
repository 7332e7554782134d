"""Pydantic v2 schemas for Job lifecycle endpoints."""

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from jobescrow.config import settings
from jobescrow.models.job import JobStatus, allowed_actions
from jobescrow.schemas.dispute import DisputeResponse


def _as_utc(v: datetime | None) -> datetime | None:
    if v is not None and v.tzinfo is None:
        return v.replace(tzinfo=UTC)
    return v


def _clean_skills(v: list[str] | None) -> list[str] | None:
    """Strip, drop blanks and de-duplicate while keeping the caller's order."""
    if v is None:
        return v
    seen: dict[str, None] = {}
    for skill in v:
        skill = skill.strip()
        if len(skill) > 64:
            raise ValueError("Skill must be <= 64 chars")
        if skill and skill.lower() not in (s.lower() for s in seen):
            seen[skill] = None
    return list(seen)


class Versioned(BaseModel):
    """Optimistic-concurrency guard carried by every state change.

    Optional for internal callers; the HTTP routes reject a state change
    that leaves it out.
    """
    expected_version: int | None = Field(
        None,
        ge=1,
        description="Version the caller last saw. The request fails with "
                    "stale_state if the job has changed since.",
    )


class JobCreate(BaseModel):
    """Requirer posts a job. Amounts are integer minor units."""
    title: str = Field(..., min_length=1, max_length=200)
    description: str = Field(..., min_length=1, max_length=10_000)
    category: str | None = Field(None, max_length=64)
    location: str = Field(..., min_length=1, max_length=255)
    required_skills: list[str] = Field(..., min_length=1, max_length=50)
    base_amount: int = Field(..., gt=0)
    deadline: datetime
    candidate_provider_id: uuid.UUID | None = None
    conversation_id: str | None = Field(None, max_length=128)

    @field_validator("title", "description", "location")
    @classmethod
    def strip_required(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v

    @field_validator("required_skills")
    @classmethod
    def validate_skills(cls, v: list[str]) -> list[str]:
        return _clean_skills(v) or []

    @field_validator("deadline")
    @classmethod
    def validate_deadline(cls, v: datetime) -> datetime:
        return _as_utc(v)  # type: ignore[return-value]


class JobUpdate(Versioned):
    """Requirer edits a job that nobody has accepted yet."""
    title: str | None = Field(None, min_length=1, max_length=200)
    description: str | None = Field(None, min_length=1, max_length=10_000)
    category: str | None = Field(None, max_length=64)
    location: str | None = Field(None, min_length=1, max_length=255)
    required_skills: list[str] | None = Field(None, max_length=50)
    base_amount: int | None = Field(None, gt=0)
    deadline: datetime | None = None
    conversation_id: str | None = Field(None, max_length=128)

    @field_validator("required_skills")
    @classmethod
    def validate_skills(cls, v: list[str] | None) -> list[str] | None:
        return _clean_skills(v)

    @field_validator("deadline")
    @classmethod
    def validate_deadline(cls, v: datetime | None) -> datetime | None:
        return _as_utc(v)


class AcceptJob(Versioned):
    """Provider accepts, optionally at a renegotiated amount."""
    agreed_amount: int | None = Field(
        None,
        gt=0,
        description="Renegotiated base amount. Fees are recomputed and the "
                    "job's base amount is replaced permanently.",
    )
    conversation_id: str | None = Field(None, max_length=128)


class CompleteJob(Versioned):
    """Provider reports the work as done."""
    completion_notes: str = Field(..., min_length=1, max_length=10_000)
    completion_evidence_refs: list[str] = Field(default_factory=list, max_length=20)
    time_spent: str | None = Field(None, max_length=64)

    @field_validator("completion_notes")
    @classmethod
    def strip_notes(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Completion notes are required")
        return v


class QualityAspects(BaseModel):
    communication: int = Field(3, ge=1, le=5)
    timeliness: int = Field(3, ge=1, le=5)
    quality: int = Field(3, ge=1, le=5)
    professionalism: int = Field(3, ge=1, le=5)


class SatisfactionSubmit(Versioned):
    """Requirer confirms satisfaction, releasing payment to the provider."""
    rating: int = Field(..., ge=1, le=5)
    feedback: str = Field(..., max_length=4096)
    quality_aspects: QualityAspects | None = None
    would_recommend: bool = True
    would_hire_again: bool = True

    @field_validator("feedback")
    @classmethod
    def validate_feedback(cls, v: str) -> str:
        v = v.strip()
        if len(v) < settings.satisfaction_feedback_min_length:
            raise ValueError(
                f"Feedback must be at least {settings.satisfaction_feedback_min_length} characters long"
            )
        return v


class CancelJob(Versioned):
    """Cancel a job. After acceptance both parties must have agreed."""
    mutual_agreement: bool = False
    reason: str | None = Field(None, max_length=2048)


class FeeQuote(BaseModel):
    base_amount: int
    fee_rate: Decimal
    fee: int
    total_due: int
    net_payout: int


class JobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    job_id: uuid.UUID
    title: str
    description: str
    category: str | None
    location: str
    required_skills: list[str]
    base_amount: int
    service_fee_rate: Decimal
    service_fee: int
    total_amount_due: int
    net_amount_to_provider: int
    requirer_id: uuid.UUID
    provider_id: uuid.UUID | None
    candidate_provider_id: uuid.UUID | None = None
    status: str
    deadline: datetime
    conversation_id: str | None = None
    completion_notes: str | None = None
    completion_evidence_refs: list[str] | None = None
    time_spent: str | None = None
    cancellation_reason: str | None = None
    dispute: DisputeResponse | None = None
    accepted_at: datetime | None = None
    completed_at: datetime | None = None
    archived_at: datetime | None = None
    created_at: datetime
    updated_at: datetime
    version: int
    allowed_actions: list[str] = []

    @field_validator("status", mode="before")
    @classmethod
    def serialize_status(cls, v: object) -> str:
        if hasattr(v, "value"):
            return v.value
        return str(v)

    @model_validator(mode="after")
    def fill_allowed_actions(self) -> "JobResponse":
        self.allowed_actions = [a.value for a in allowed_actions(JobStatus(self.status))]
        return self
