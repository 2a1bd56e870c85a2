"""initial schema

Revision ID: 202610190900
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610190900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "transactions",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column(
            "category",
            sa.String(length=100),
            nullable=False,
            server_default="Uncategorized",
        ),
        sa.Column("is_paid", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("related_plan_id", sa.String(length=64)),
        sa.Column("last_modified", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index(
        "ix_transactions_related_plan", "transactions", ["related_plan_id"]
    )

    op.create_table(
        "plans",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("description", sa.String(length=200), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type", sa.Enum("income", "expense", name="transactiontype"), nullable=False
        ),
        sa.Column(
            "category",
            sa.String(length=100),
            nullable=False,
            server_default="Uncategorized",
        ),
        sa.Column(
            "frequency",
            sa.Enum("One-time", "Weekly", "Monthly", "Yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column(
            "occurrences_generated", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("max_occurrences", sa.Integer()),
        sa.Column("end_date", sa.Date()),
        sa.Column("last_modified", sa.BigInteger(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_plans_amount_positive"),
        sa.CheckConstraint(
            "occurrences_generated >= 0", name="ck_plans_occurrences_non_negative"
        ),
    )

    op.create_table(
        "tombstones",
        sa.Column("record_id", sa.String(length=64), primary_key=True),
        sa.Column("deleted_at", sa.BigInteger(), nullable=False),
    )

    op.create_table(
        "app_state",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("cycle_start_day", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("view_date", sa.Date()),
        sa.Column("last_modified", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column(
            "sync_enabled", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("sync_id", sa.String(length=200)),
        sa.Column(
            "last_synced_at", sa.BigInteger(), nullable=False, server_default="0"
        ),
        sa.CheckConstraint(
            "cycle_start_day BETWEEN 1 AND 31", name="ck_app_state_cycle_day"
        ),
    )

    op.create_table(
        "period_transitions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("target_date", sa.Date(), nullable=False),
        sa.Column("started_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "pending_resolutions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "transition_id",
            sa.Integer(),
            sa.ForeignKey("period_transitions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("plan_id", sa.String(length=64), nullable=False),
        sa.Column("due_date", sa.Date(), nullable=False),
    )
    op.create_index(
        "ix_pending_resolutions_transition_plan",
        "pending_resolutions",
        ["transition_id", "plan_id"],
    )


def downgrade():
    op.drop_index(
        "ix_pending_resolutions_transition_plan", table_name="pending_resolutions"
    )
    op.drop_table("pending_resolutions")
    op.drop_table("period_transitions")
    op.drop_table("app_state")
    op.drop_table("tombstones")
    op.drop_table("plans")
    op.drop_index("ix_transactions_related_plan", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
