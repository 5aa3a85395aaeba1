"""add budget periods and exceptions

Revision ID: 202610171000
Revises: 202610170900
Create Date: 2026-10-17 10:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610171000"
down_revision = "202610170900"
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "budget_periods",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "person_id",
            sa.Integer(),
            sa.ForeignKey("people.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date()),
        sa.Column("expected_end", sa.Date()),
        sa.Column(
            "is_completed", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("person_id", "start_date", name="uq_budget_period_start"),
        sa.CheckConstraint(
            "(end_date IS NULL AND is_completed = 0) "
            "OR (end_date IS NOT NULL AND is_completed = 1)",
            name="ck_budget_period_completion",
        ),
        sa.CheckConstraint(
            "end_date IS NULL OR end_date >= start_date",
            name="ck_budget_period_order",
        ),
        sa.CheckConstraint(
            "expected_end IS NULL OR expected_end > start_date",
            name="ck_budget_period_expected_end",
        ),
    )
    # At most one open period per person.
    op.create_index(
        "uq_budget_period_person_open",
        "budget_periods",
        ["person_id"],
        unique=True,
        sqlite_where=sa.text("is_completed = 0"),
        postgresql_where=sa.text("NOT is_completed"),
    )

    op.create_table(
        "budget_exceptions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "person_id",
            sa.Integer(),
            sa.ForeignKey("people.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "period_id",
            sa.Integer(),
            sa.ForeignKey("budget_periods.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("exception_date", sa.Date(), nullable=False),
        sa.Column("reason", sa.Text()),
        sa.Column("replaced_start_date", sa.Date(), nullable=False),
        sa.Column(
            "split_period_id",
            sa.Integer(),
            sa.ForeignKey("budget_periods.id", ondelete="SET NULL"),
        ),
        sa.Column(
            "previous_period_id",
            sa.Integer(),
            sa.ForeignKey("budget_periods.id", ondelete="SET NULL"),
        ),
        sa.Column("previous_end_date", sa.Date()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )
    op.create_index(
        "ix_budget_exceptions_person_date",
        "budget_exceptions",
        ["person_id", "exception_date"],
    )


def downgrade():
    op.drop_index("ix_budget_exceptions_person_date", table_name="budget_exceptions")
    op.drop_table("budget_exceptions")
    op.drop_index("uq_budget_period_person_open", table_name="budget_periods")
    op.drop_table("budget_periods")
