"""create settlement schema

Revision ID: 3a1f6c2e9d47
Revises:
Create Date: 2026-10-19 09:00:00

Touched tables:
- producer_account, song_request, song_revision, producer_payout, audit_event

Operational notes:
- song_request.pending_operation marks a settlement in flight; rows with it set
  are picked up by scripts/reconcile-settlements.py
- producer_payout references song_request with ON DELETE RESTRICT so a project
  that moved money cannot be removed
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

revision = "3a1f6c2e9d47"
down_revision = None
branch_labels = None
depends_on = None

JSON_TYPE = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")

PROJECT_STATUSES = (
    "'pending_payment', 'paid', 'accepted', 'in_progress', 'review', "
    "'completed', 'cancellation_requested', 'refunded'"
)


def upgrade() -> None:
    op.create_table(
        "producer_account",
        sa.Column("id", sa.Text(), nullable=False),
        sa.Column("name", sa.Text(), nullable=True),
        sa.Column("email", sa.Text(), nullable=True),
        sa.Column("payout_account_id", sa.Text(), nullable=True),
        sa.Column("payout_onboarded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )

    op.create_table(
        "song_request",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("owner_id", sa.Text(), nullable=False),
        sa.Column("owner_email", sa.Text(), nullable=True),
        sa.Column("assigned_producer_id", sa.Text(), nullable=True),
        sa.Column("tier", sa.Text(), nullable=False),
        sa.Column("price", sa.BigInteger(), nullable=False),
        sa.Column("currency", sa.Text(), nullable=False, server_default="usd"),
        sa.Column("payment_reference", sa.Text(), nullable=True),
        sa.Column("platform_fee_amount", sa.BigInteger(), nullable=True),
        sa.Column("producer_payout_amount", sa.BigInteger(), nullable=True),
        sa.Column("payout_status", sa.Text(), nullable=False, server_default="none"),
        sa.Column("refund_amount", sa.BigInteger(), nullable=True),
        sa.Column("refund_reference", sa.Text(), nullable=True),
        sa.Column("refund_reason", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending_payment"),
        sa.Column("acceptance_deadline", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("producer_paid_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("blocked_producer_ids", JSON_TYPE, nullable=False),
        sa.Column("cancellation_reason", sa.Text(), nullable=True),
        sa.Column("recommended_refund_percent", sa.Integer(), nullable=True),
        sa.Column("number_of_revisions", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("wants_mixing", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("wants_mastering", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("wants_analog", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("wants_recorded_stems", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("genre_category", sa.Text(), nullable=True),
        sa.Column("song_idea", sa.Text(), nullable=True),
        sa.Column("delivered_file_refs", JSON_TYPE, nullable=True),
        sa.Column("pending_operation", sa.Text(), nullable=True),
        sa.Column("pending_operation_payload", JSON_TYPE, nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("payment_reference", name="uq_song_request_payment_reference"),
        sa.CheckConstraint(f"status in ({PROJECT_STATUSES})", name="ck_song_request_status"),
        sa.CheckConstraint(
            "payout_status in ('none', 'transferred', 'manual_required')",
            name="ck_song_request_payout_status",
        ),
        sa.CheckConstraint("price >= 0", name="ck_song_request_price"),
        sa.CheckConstraint("number_of_revisions >= 0", name="ck_song_request_revisions"),
        sa.CheckConstraint(
            "platform_fee_amount is null or producer_payout_amount is null "
            "or platform_fee_amount + producer_payout_amount = price",
            name="ck_song_request_split",
        ),
        sa.CheckConstraint("refunded_at is null or status = 'refunded'", name="ck_song_request_refunded_at"),
        sa.CheckConstraint(
            "status <> 'refunded' or producer_paid_at is null",
            name="ck_song_request_refund_unpaid",
        ),
    )
    op.create_index("ix_song_request_status_deadline", "song_request", ["status", "acceptance_deadline"])
    op.create_index(
        "ix_song_request_pending_operation",
        "song_request",
        ["pending_operation"],
        postgresql_where=sa.text("pending_operation is not null"),
    )

    op.create_table(
        "song_revision",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("revision_number", sa.Integer(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("client_notes", sa.Text(), nullable=True),
        sa.Column("client_feedback", sa.Text(), nullable=True),
        sa.Column("wants_meeting", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("meeting_link", sa.Text(), nullable=True),
        sa.Column("drive_link", sa.Text(), nullable=True),
        sa.Column("delivered_by", sa.Text(), nullable=True),
        sa.Column("requested_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("delivered_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["song_request.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("project_id", "revision_number", name="uq_song_revision_number"),
        sa.CheckConstraint(
            "status in ('pending', 'requested', 'in_progress', 'delivered')",
            name="ck_song_revision_status",
        ),
        sa.CheckConstraint("revision_number >= 1", name="ck_song_revision_number"),
    )

    op.create_table(
        "producer_payout",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("producer_id", sa.Text(), nullable=False),
        sa.Column("kind", sa.Text(), nullable=False),
        sa.Column("amount", sa.BigInteger(), nullable=False),
        sa.Column("status", sa.Text(), nullable=False),
        sa.Column("transfer_reference", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.Text(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(["project_id"], ["song_request.id"], ondelete="RESTRICT"),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("idempotency_key", name="uq_producer_payout_idempotency_key"),
        sa.CheckConstraint("kind in ('partial_reassignment', 'completion')", name="ck_producer_payout_kind"),
        sa.CheckConstraint("status in ('transferred', 'manual_required')", name="ck_producer_payout_status"),
        sa.CheckConstraint("amount > 0", name="ck_producer_payout_amount"),
    )
    op.create_index("ix_producer_payout_project_id", "producer_payout", ["project_id"])

    op.create_table(
        "audit_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("event_type", sa.Text(), nullable=False),
        sa.Column("source", sa.Text(), nullable=False),
        sa.Column("actor_id", sa.Text(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("payload", JSON_TYPE, nullable=True),
        sa.PrimaryKeyConstraint("id"),
        sa.CheckConstraint("source in ('ui', 'system', 'worker')", name="ck_audit_event_source"),
    )
    op.create_index("ix_audit_event_project_id", "audit_event", ["project_id"])
    op.create_index("ix_audit_event_type_occurred_at", "audit_event", ["event_type", "occurred_at"])


def downgrade() -> None:
    op.drop_index("ix_audit_event_type_occurred_at", table_name="audit_event")
    op.drop_index("ix_audit_event_project_id", table_name="audit_event")
    op.drop_table("audit_event")
    op.drop_index("ix_producer_payout_project_id", table_name="producer_payout")
    op.drop_table("producer_payout")
    op.drop_table("song_revision")
    op.drop_index("ix_song_request_pending_operation", table_name="song_request")
    op.drop_index("ix_song_request_status_deadline", table_name="song_request")
    op.drop_table("song_request")
    op.drop_table("producer_account")
