"""workflow instances, payment attachments and transition history

Revision ID: a1b2c3d4e5f6
Revises:
Create Date: 2026-10-19 09:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = "a1b2c3d4e5f6"
down_revision = None
branch_labels = None
depends_on = None


def _create_indexes(insp, table_name, indexes):
    existing_indexes = {str(idx.get("name") or "") for idx in insp.get_indexes(table_name)}
    for name, columns in indexes:
        if name not in existing_indexes:
            op.create_index(name, table_name, columns, unique=False)


def upgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)

    if not insp.has_table("users"):
        op.create_table(
            "users",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("name", sa.String(length=120), nullable=False),
            sa.Column("email", sa.String(length=255), nullable=False),
            sa.Column("phone", sa.String(length=32), nullable=True),
            sa.Column("password_hash", sa.String(length=255), nullable=False),
            sa.Column("role", sa.String(length=32), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
        op.create_index("ix_users_email", "users", ["email"], unique=True)

    if not insp.has_table("listings"):
        op.create_table(
            "listings",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("user_id", sa.Integer(), nullable=False),
            sa.Column("title", sa.String(length=160), nullable=False),
            sa.Column("status", sa.String(length=24), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["user_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(sa.inspect(bind), "listings", (("ix_listings_user_id", ["user_id"]),))

    if not insp.has_table("advertisements"):
        op.create_table(
            "advertisements",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("provider_id", sa.Integer(), nullable=False),
            sa.Column("listing_id", sa.Integer(), nullable=True),
            sa.Column("title", sa.String(length=160), nullable=False),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["provider_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["listing_id"], ["listings.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        sa.inspect(bind),
        "advertisements",
        (
            ("ix_advertisements_provider_id", ["provider_id"]),
            ("ix_advertisements_listing_id", ["listing_id"]),
        ),
    )

    if not insp.has_table("transactions"):
        op.create_table(
            "transactions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("listing_id", sa.Integer(), nullable=False),
            sa.Column("customer_id", sa.Integer(), nullable=False),
            sa.Column("provider_id", sa.Integer(), nullable=False),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("notes", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.ForeignKeyConstraint(["listing_id"], ["listings.id"]),
            sa.ForeignKeyConstraint(["customer_id"], ["users.id"]),
            sa.ForeignKeyConstraint(["provider_id"], ["users.id"]),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        sa.inspect(bind),
        "transactions",
        (
            ("ix_transactions_listing_id", ["listing_id"]),
            ("ix_transactions_customer_id", ["customer_id"]),
            ("ix_transactions_provider_id", ["provider_id"]),
        ),
    )

    if not insp.has_table("workflow_instances"):
        op.create_table(
            "workflow_instances",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("kind", sa.String(length=32), nullable=False),
            sa.Column("subject_id", sa.String(length=64), nullable=False),
            sa.Column("owner_id", sa.Integer(), nullable=False),
            sa.Column("counterparty_id", sa.Integer(), nullable=True),
            sa.Column("state", sa.String(length=32), nullable=False),
            sa.Column("payment_method", sa.String(length=16), nullable=True),
            sa.Column("duration_days", sa.Integer(), nullable=True),
            sa.Column("active_from", sa.DateTime(), nullable=True),
            sa.Column("active_until", sa.DateTime(), nullable=True),
            sa.Column("rejection_reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        sa.inspect(bind),
        "workflow_instances",
        (
            ("ix_workflow_instances_kind", ["kind"]),
            ("ix_workflow_instances_owner_id", ["owner_id"]),
            ("ix_workflow_instances_counterparty_id", ["counterparty_id"]),
            ("ix_workflow_instances_kind_subject", ["kind", "subject_id"]),
            ("ix_workflow_instances_state_active_until", ["state", "active_until"]),
        ),
    )

    if not insp.has_table("payment_attachments"):
        op.create_table(
            "payment_attachments",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("subject_kind", sa.String(length=32), nullable=False),
            sa.Column("subject_id", sa.String(length=64), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=True),
            sa.Column("amount", sa.Numeric(12, 2), nullable=False),
            sa.Column("method", sa.String(length=16), nullable=False),
            sa.Column("proof_reference", sa.String(length=1024), nullable=True),
            sa.Column("sub_status", sa.String(length=16), nullable=False),
            sa.Column("verified_by", sa.Integer(), nullable=True),
            sa.Column("verified_at", sa.DateTime(), nullable=True),
            sa.Column("rejection_reason", sa.String(length=240), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.Column("updated_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("subject_kind", "subject_id", name="uq_payment_attachment_subject"),
        )
    _create_indexes(
        sa.inspect(bind),
        "payment_attachments",
        (
            ("ix_payment_attachments_subject_id", ["subject_id"]),
            ("ix_payment_attachments_instance_id", ["instance_id"]),
        ),
    )

    if not insp.has_table("workflow_transitions"):
        op.create_table(
            "workflow_transitions",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("instance_id", sa.Integer(), nullable=False),
            sa.Column("from_state", sa.String(length=32), nullable=False),
            sa.Column("to_state", sa.String(length=32), nullable=False),
            sa.Column("action", sa.String(length=32), nullable=False),
            sa.Column("actor_role", sa.String(length=32), nullable=False),
            sa.Column("actor_id", sa.Integer(), nullable=True),
            sa.Column("idempotency_key", sa.String(length=160), nullable=True),
            sa.Column("reason", sa.String(length=240), nullable=True),
            sa.Column("metadata_json", sa.Text(), nullable=True),
            sa.Column("created_at", sa.DateTime(), nullable=False),
            sa.PrimaryKeyConstraint("id"),
            sa.UniqueConstraint("instance_id", "idempotency_key", name="uq_workflow_transition_instance_key"),
        )
    _create_indexes(
        sa.inspect(bind),
        "workflow_transitions",
        (
            ("ix_workflow_transitions_instance_id", ["instance_id"]),
            ("ix_workflow_transitions_instance_created", ["instance_id", "created_at"]),
        ),
    )

    if not insp.has_table("job_runs"):
        op.create_table(
            "job_runs",
            sa.Column("id", sa.Integer(), nullable=False),
            sa.Column("job_name", sa.String(length=64), nullable=False),
            sa.Column("ran_at", sa.DateTime(), nullable=False),
            sa.Column("ok", sa.Boolean(), nullable=False),
            sa.Column("duration_ms", sa.Integer(), nullable=True),
            sa.Column("summary_json", sa.Text(), nullable=True),
            sa.Column("error", sa.Text(), nullable=True),
            sa.PrimaryKeyConstraint("id"),
        )
    _create_indexes(
        sa.inspect(bind),
        "job_runs",
        (
            ("ix_job_runs_job_name", ["job_name"]),
            ("ix_job_runs_ran_at", ["ran_at"]),
        ),
    )


def downgrade() -> None:
    bind = op.get_bind()
    insp = sa.inspect(bind)
    for table_name in (
        "job_runs",
        "workflow_transitions",
        "payment_attachments",
        "workflow_instances",
        "transactions",
        "advertisements",
        "listings",
        "users",
    ):
        if insp.has_table(table_name):
            op.drop_table(table_name)
