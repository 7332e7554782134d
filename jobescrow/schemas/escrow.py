"""Pydantic v2 schemas for Escrow."""

import uuid
from datetime import datetime

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _enum_value(v: object) -> str:
    if hasattr(v, "value"):
        return v.value
    return str(v)


class EscrowResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    entry_id: uuid.UUID
    job_id: uuid.UUID
    requirer_id: uuid.UUID
    provider_id: uuid.UUID | None
    state: str
    amount_funded: int
    amount_held: int
    provider_paid: int
    requirer_refunded: int
    platform_fee_collected: int
    settlement_status: str
    settlement_reference: str | None
    disbursement: dict | None = None
    held_at: datetime | None
    closed_at: datetime | None
    archived_at: datetime | None

    @field_validator("state", "settlement_status", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class EscrowAuditResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True, populate_by_name=True)

    audit_id: uuid.UUID
    job_id: uuid.UUID
    action: str
    state_after: str
    amount: int
    actor_id: uuid.UUID | None
    actor_role: str
    timestamp: datetime
    metadata: dict | None = Field(None, validation_alias="metadata_")

    @field_validator("action", "state_after", mode="before")
    @classmethod
    def serialize_enum(cls, v: object) -> str:
        return _enum_value(v)


class EscrowDetailResponse(BaseModel):
    escrow: EscrowResponse
    history: list[EscrowAuditResponse]


class SettlementConfirmation(BaseModel):
    """Asynchronous settlement outcome reported by the payment gateway."""
    reference: str | None = Field(None, max_length=128)
    succeeded: bool
