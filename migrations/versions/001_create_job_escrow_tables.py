"""Create job, dispute, escrow, review and notification tables.

Revision ID: 001
Revises: None
Create Date: 2026-10-18
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_ENUMS = {
    "jobstatus": ("pending", "accepted", "completed", "satisfied", "disputed", "resolved", "cancelled"),
    "disputereason": ("quality", "incomplete", "payment", "other"),
    "partyrole": ("requirer", "provider"),
    "resolutionstatus": ("pending", "resolved"),
    "resolutionoutcome": ("release", "refund", "split"),
    "escrowstate": ("none", "held", "released", "refunded", "partially_released", "disbursing"),
    "settlementstatus": ("not_started", "pending", "settled", "failed"),
    "escrowaction": (
        "created", "held", "released", "refunded", "partially_released",
        "settlement_confirmed", "settlement_failed", "disbursement_stalled",
    ),
    "notificationstatus": ("pending", "delivered", "failed"),
}


def _enum(name: str) -> sa.Enum:
    return sa.Enum(*_ENUMS[name], name=name)


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        "jobs",
        sa.Column("job_id", sa.Uuid(), primary_key=True),
        sa.Column("title", sa.String(200), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("category", sa.String(64), nullable=True),
        sa.Column("location", sa.String(255), nullable=False),
        sa.Column("required_skills", _json(), nullable=False),
        sa.Column("base_amount", sa.BigInteger(), nullable=False),
        sa.Column("service_fee_rate", sa.Numeric(6, 5), nullable=False),
        sa.Column("service_fee", sa.BigInteger(), nullable=False),
        sa.Column("total_amount_due", sa.BigInteger(), nullable=False),
        sa.Column("net_amount_to_provider", sa.BigInteger(), nullable=False),
        sa.Column("requirer_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=True),
        sa.Column("candidate_provider_id", sa.Uuid(), nullable=True),
        sa.Column("status", _enum("jobstatus"), nullable=False, server_default="pending"),
        sa.Column("deadline", sa.DateTime(timezone=True), nullable=False),
        sa.Column("conversation_id", sa.String(128), nullable=True),
        sa.Column("completion_notes", sa.Text(), nullable=True),
        sa.Column("completion_evidence_refs", _json(), nullable=True),
        sa.Column("time_spent", sa.String(64), nullable=True),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("accepted_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.CheckConstraint("base_amount > 0", name="ck_jobs_base_amount_positive"),
        sa.CheckConstraint(
            "total_amount_due = base_amount + service_fee", name="ck_jobs_total_amount_due",
        ),
        sa.CheckConstraint(
            "net_amount_to_provider = base_amount - service_fee", name="ck_jobs_net_amount",
        ),
    )
    op.create_index("ix_jobs_requirer_id", "jobs", ["requirer_id"])
    op.create_index("ix_jobs_provider_id", "jobs", ["provider_id"])
    op.create_index("ix_jobs_status_deadline", "jobs", ["status", "deadline"])

    op.create_table(
        "dispute_records",
        sa.Column("dispute_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(),
            sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, unique=True,
        ),
        sa.Column("reason", _enum("disputereason"), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("proposed_resolution", sa.Text(), nullable=False),
        sa.Column("evidence_refs", _json(), nullable=False),
        sa.Column("initiated_by_id", sa.Uuid(), nullable=False),
        sa.Column("initiated_by_role", _enum("partyrole"), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column(
            "resolution_status", _enum("resolutionstatus"), nullable=False, server_default="pending",
        ),
        sa.Column("resolution_outcome", _enum("resolutionoutcome"), nullable=True),
        sa.Column("provider_share", sa.Numeric(5, 4), nullable=True),
        sa.Column("provider_amount", sa.BigInteger(), nullable=True),
        sa.Column("requirer_amount", sa.BigInteger(), nullable=True),
        sa.Column("resolution_notes", sa.Text(), nullable=True),
        sa.Column("resolved_by_id", sa.Uuid(), nullable=True),
        sa.Column("resolved_at", sa.DateTime(timezone=True), nullable=True),
    )

    op.create_table(
        "escrow_entries",
        sa.Column("entry_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(),
            sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, unique=True,
        ),
        sa.Column("requirer_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=True),
        sa.Column("state", _enum("escrowstate"), nullable=False, server_default="none"),
        sa.Column("amount_funded", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("amount_held", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("provider_paid", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("requirer_refunded", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("platform_fee_collected", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("hold_reference", sa.String(128), nullable=True),
        sa.Column(
            "settlement_status", _enum("settlementstatus"), nullable=False, server_default="not_started",
        ),
        sa.Column("settlement_reference", sa.String(128), nullable=True),
        sa.Column("disbursement", _json(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("held_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("closed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("archived_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint("amount_held >= 0", name="ck_escrow_entries_amount_held"),
    )

    op.create_table(
        "escrow_audit_log",
        sa.Column("audit_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "entry_id", sa.Uuid(),
            sa.ForeignKey("escrow_entries.entry_id", ondelete="RESTRICT"), nullable=False,
        ),
        sa.Column("job_id", sa.Uuid(), nullable=False),
        sa.Column("action", _enum("escrowaction"), nullable=False),
        sa.Column(
            "state_after",
            postgresql.ENUM(*_ENUMS["escrowstate"], name="escrowstate", create_type=False),
            nullable=False,
        ),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("actor_id", sa.Uuid(), nullable=True),
        sa.Column("actor_role", sa.String(16), nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("metadata", _json(), nullable=True),
    )
    op.create_index("ix_escrow_audit_log_entry_id", "escrow_audit_log", ["entry_id"])
    op.create_index("ix_escrow_audit_log_job_id", "escrow_audit_log", ["job_id"])

    # Append-only: block UPDATE and DELETE on the audit log
    op.execute("""
        CREATE OR REPLACE FUNCTION escrow_audit_log_immutable() RETURNS trigger AS $$
        BEGIN
            RAISE EXCEPTION 'escrow_audit_log is append-only';
        END;
        $$ LANGUAGE plpgsql;
    """)
    op.execute("""
        CREATE TRIGGER escrow_audit_log_no_mutation
        BEFORE UPDATE OR DELETE ON escrow_audit_log
        FOR EACH ROW EXECUTE FUNCTION escrow_audit_log_immutable();
    """)

    op.create_table(
        "satisfaction_reviews",
        sa.Column("review_id", sa.Uuid(), primary_key=True),
        sa.Column(
            "job_id", sa.Uuid(),
            sa.ForeignKey("jobs.job_id", ondelete="RESTRICT"), nullable=False, unique=True,
        ),
        sa.Column("reviewer_id", sa.Uuid(), nullable=False),
        sa.Column("provider_id", sa.Uuid(), nullable=False),
        sa.Column("rating", sa.Integer(), nullable=False),
        sa.Column("feedback", sa.Text(), nullable=False),
        sa.Column("quality_aspects", _json(), nullable=True),
        sa.Column("would_recommend", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("would_hire_again", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("rating >= 1 AND rating <= 5", name="ck_satisfaction_reviews_rating"),
    )
    op.create_index("ix_satisfaction_reviews_provider_id", "satisfaction_reviews", ["provider_id"])

    op.create_table(
        "notification_deliveries",
        sa.Column("delivery_id", sa.Uuid(), primary_key=True),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("job_id", sa.Uuid(), nullable=True),
        sa.Column("event_type", sa.String(64), nullable=False),
        sa.Column("payload", _json(), nullable=False),
        sa.Column("status", _enum("notificationstatus"), nullable=False, server_default="pending"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_notification_deliveries_user_id", "notification_deliveries", ["user_id"])
    op.create_index(
        "ix_notification_deliveries_status_created",
        "notification_deliveries", ["status", "created_at"],
    )


def downgrade() -> None:
    op.drop_table("notification_deliveries")
    op.drop_table("satisfaction_reviews")
    op.execute("DROP TRIGGER IF EXISTS escrow_audit_log_no_mutation ON escrow_audit_log")
    op.execute("DROP FUNCTION IF EXISTS escrow_audit_log_immutable()")
    op.drop_table("escrow_audit_log")
    op.drop_table("escrow_entries")
    op.drop_table("dispute_records")
    op.drop_table("jobs")
    for name in _ENUMS:
        op.execute(f"DROP TYPE IF EXISTS {name}")
