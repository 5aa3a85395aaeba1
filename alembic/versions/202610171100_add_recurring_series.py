"""add recurring series

Revision ID: 202610171100
Revises: 202610171000
Create Date: 2026-10-17 11:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610171100"
down_revision = "202610171000"
branch_labels = None
depends_on = None


TRANSACTION_TYPE = sa.Enum("income", "expense", name="transactiontype")


def upgrade():
    op.create_table(
        "recurring_series",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "group_id",
            sa.Integer(),
            sa.ForeignKey("groups.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("description", sa.String(length=200)),
        sa.Column("type", TRANSACTION_TYPE, nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "to_account_id",
            sa.Integer(),
            sa.ForeignKey("accounts.id", ondelete="CASCADE"),
        ),
        sa.Column(
            "frequency",
            sa.Enum("weekly", "biweekly", "monthly", "yearly", name="frequency"),
            nullable=False,
        ),
        sa.Column(
            "month_day_policy",
            sa.Enum("snap_to_end", "skip", name="monthdaypolicy"),
            nullable=False,
            server_default="snap_to_end",
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("next_due_date", sa.Date(), nullable=False),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_paused", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("pause_until", sa.Date()),
        sa.Column(
            "auto_execute", sa.Boolean(), nullable=False, server_default=sa.true()
        ),
        sa.Column(
            "skip_weekends", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "total_executions", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column(
            "failed_executions", sa.Integer(), nullable=False, server_default="0"
        ),
        sa.Column("last_executed_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_series_amount_positive"),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date", name="ck_series_order"
        ),
    )
    op.create_index(
        "ix_recurring_series_due", "recurring_series", ["is_active", "next_due_date"]
    )

    with op.batch_alter_table("transactions") as batch:
        batch.add_column(sa.Column("recurring_series_id", sa.Integer()))
        batch.add_column(sa.Column("occurrence_date", sa.Date()))
        batch.create_foreign_key(
            "fk_transactions_recurring_series",
            "recurring_series",
            ["recurring_series_id"],
            ["id"],
            ondelete="SET NULL",
        )
        batch.create_unique_constraint(
            "uq_txn_series_occurrence", ["recurring_series_id", "occurrence_date"]
        )


def downgrade():
    with op.batch_alter_table("transactions") as batch:
        batch.drop_constraint("uq_txn_series_occurrence", type_="unique")
        batch.drop_constraint("fk_transactions_recurring_series", type_="foreignkey")
        batch.drop_column("occurrence_date")
        batch.drop_column("recurring_series_id")
    op.drop_index("ix_recurring_series_due", table_name="recurring_series")
    op.drop_table("recurring_series")
