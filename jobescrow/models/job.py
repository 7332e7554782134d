"""Job SQLAlchemy model and the lifecycle transition table."""

import enum
import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import BigInteger, Enum, Integer, Numeric, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column, relationship

from jobescrow.database import Base, JSONType, UTCDateTime, utcnow
from jobescrow.models.dispute import DisputeRecord


class JobStatus(enum.Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    COMPLETED = "completed"
    SATISFIED = "satisfied"
    DISPUTED = "disputed"
    RESOLVED = "resolved"
    CANCELLED = "cancelled"


class JobAction(enum.Enum):
    CREATE = "create"
    UPDATE = "update"
    ACCEPT = "accept"
    COMPLETE = "complete"
    SATISFY = "satisfy"
    DISPUTE = "dispute"
    RESOLVE = "resolve"
    CANCEL = "cancel"


# Single source of truth for the lifecycle. Anything missing here is an
# InvalidTransitionError. UPDATE is an in-place edit and keeps the status.
TRANSITIONS: dict[tuple[JobStatus, JobAction], JobStatus] = {
    (JobStatus.PENDING, JobAction.UPDATE): JobStatus.PENDING,
    (JobStatus.PENDING, JobAction.ACCEPT): JobStatus.ACCEPTED,
    (JobStatus.PENDING, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.ACCEPTED, JobAction.COMPLETE): JobStatus.COMPLETED,
    (JobStatus.ACCEPTED, JobAction.CANCEL): JobStatus.CANCELLED,
    (JobStatus.ACCEPTED, JobAction.DISPUTE): JobStatus.DISPUTED,
    (JobStatus.COMPLETED, JobAction.SATISFY): JobStatus.SATISFIED,
    (JobStatus.COMPLETED, JobAction.DISPUTE): JobStatus.DISPUTED,
    (JobStatus.DISPUTED, JobAction.RESOLVE): JobStatus.RESOLVED,
}

TERMINAL_STATUSES = frozenset({JobStatus.SATISFIED, JobStatus.RESOLVED, JobStatus.CANCELLED})


def allowed_actions(status: JobStatus) -> list[JobAction]:
    return [action for (src, action) in TRANSITIONS if src == status]


class Job(Base):
    __tablename__ = "jobs"

    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    title: Mapped[str] = mapped_column(String(200), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    location: Mapped[str] = mapped_column(String(255), nullable=False)
    required_skills: Mapped[list] = mapped_column(JSONType, nullable=False, default=list)

    # Amounts are integer minor units (kobo/cents).
    base_amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    service_fee_rate: Mapped[Decimal] = mapped_column(Numeric(6, 5), nullable=False)
    service_fee: Mapped[int] = mapped_column(BigInteger, nullable=False)
    total_amount_due: Mapped[int] = mapped_column(BigInteger, nullable=False)
    net_amount_to_provider: Mapped[int] = mapped_column(BigInteger, nullable=False)

    requirer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    candidate_provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)

    status: Mapped[JobStatus] = mapped_column(
        Enum(JobStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=JobStatus.PENDING,
    )
    deadline: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(String(128), nullable=True)

    completion_notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    completion_evidence_refs: Mapped[list | None] = mapped_column(JSONType, nullable=True)
    time_spent: Mapped[str | None] = mapped_column(String(64), nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    accepted_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        UTCDateTime, nullable=False, default=utcnow, onupdate=utcnow,
    )
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    dispute: Mapped[DisputeRecord | None] = relationship(
        DisputeRecord, uselist=False, lazy="selectin", back_populates="job"
    )

    __mapper_args__ = {"version_id_col": version}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES
