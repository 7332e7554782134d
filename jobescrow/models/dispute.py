"""Dispute record model. Exists only for jobs that were disputed."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Enum, ForeignKey, Numeric, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobescrow.database import Base, JSONType, UTCDateTime, utcnow


class DisputeReason(enum.Enum):
    QUALITY = "quality"
    INCOMPLETE = "incomplete"
    PAYMENT = "payment"
    OTHER = "other"


class PartyRole(enum.Enum):
    REQUIRER = "requirer"
    PROVIDER = "provider"


class ResolutionStatus(enum.Enum):
    PENDING = "pending"
    RESOLVED = "resolved"


class ResolutionOutcome(enum.Enum):
    RELEASE = "release"
    REFUND = "refund"
    SPLIT = "split"


def _enum(cls):  # type: ignore[no-untyped-def]
    return Enum(cls, values_callable=lambda x: [e.value for e in x])


class DisputeRecord(Base):
    __tablename__ = "dispute_records"

    dispute_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    reason: Mapped[DisputeReason] = mapped_column(_enum(DisputeReason), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    proposed_resolution: Mapped[str] = mapped_column(Text, nullable=False)
    evidence_refs: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)
    initiated_by_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    initiated_by_role: Mapped[PartyRole] = mapped_column(_enum(PartyRole), nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )

    resolution_status: Mapped[ResolutionStatus] = mapped_column(
        _enum(ResolutionStatus), nullable=False, default=ResolutionStatus.PENDING
    )
    resolution_outcome: Mapped[ResolutionOutcome | None] = mapped_column(
        _enum(ResolutionOutcome), nullable=True
    )
    provider_share: Mapped[Decimal | None] = mapped_column(Numeric(5, 4), nullable=True)
    provider_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    requirer_amount: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    resolution_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    resolved_by_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    job = relationship("Job", back_populates="dispute")
