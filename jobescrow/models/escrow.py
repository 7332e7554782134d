"""Escrow entry and audit log models."""

import enum
import uuid
from datetime import datetime

from sqlalchemy import BigInteger, Enum, ForeignKey, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from jobescrow.database import Base, JSONType, UTCDateTime, utcnow


class EscrowState(enum.Enum):
    NONE = "none"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIALLY_RELEASED = "partially_released"
    # Some payout legs reached the gateway, others did not. Only the same
    # disbursement may continue from here.
    DISBURSING = "disbursing"


TERMINAL_ESCROW_STATES = frozenset({
    EscrowState.RELEASED, EscrowState.REFUNDED, EscrowState.PARTIALLY_RELEASED,
})


class SettlementStatus(enum.Enum):
    NOT_STARTED = "not_started"
    PENDING = "pending"
    SETTLED = "settled"
    FAILED = "failed"


class EscrowAction(enum.Enum):
    CREATED = "created"
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    PARTIALLY_RELEASED = "partially_released"
    SETTLEMENT_CONFIRMED = "settlement_confirmed"
    SETTLEMENT_FAILED = "settlement_failed"
    DISBURSEMENT_STALLED = "disbursement_stalled"


class EscrowEntry(Base):
    """One per job, created alongside it. Mutated only by the escrow ledger."""

    __tablename__ = "escrow_entries"

    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    job_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("jobs.job_id", ondelete="RESTRICT"), unique=True, nullable=False
    )
    requirer_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    provider_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    state: Mapped[EscrowState] = mapped_column(
        Enum(EscrowState, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=EscrowState.NONE,
    )

    # Minor units. amount_funded is what was collected at hold time;
    # amount_held drops to zero once the entry is disbursed.
    amount_funded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    amount_held: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    provider_paid: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    requirer_refunded: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    platform_fee_collected: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    hold_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    settlement_status: Mapped[SettlementStatus] = mapped_column(
        Enum(SettlementStatus, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
        default=SettlementStatus.NOT_STARTED,
    )
    settlement_reference: Mapped[str | None] = mapped_column(String(128), nullable=True)
    # {"target": state, "legs": {leg: amount}, "settled": {leg: gateway reference}}
    disbursement: Mapped[dict | None] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    held_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    closed_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(UTCDateTime, nullable=True)

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_ESCROW_STATES


class EscrowAuditLog(Base):
    """Append-only audit log. Never update or delete rows."""
    __tablename__ = "escrow_audit_log"

    audit_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    entry_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("escrow_entries.entry_id", ondelete="RESTRICT"), nullable=False, index=True
    )
    job_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False, index=True)
    action: Mapped[EscrowAction] = mapped_column(
        Enum(EscrowAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    state_after: Mapped[EscrowState] = mapped_column(
        Enum(EscrowState, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    actor_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    actor_role: Mapped[str] = mapped_column(String(16), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, default=utcnow)
    metadata_: Mapped[dict | None] = mapped_column("metadata", JSONType, nullable=True)
