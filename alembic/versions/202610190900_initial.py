"""initial budget schema

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

MONEY = sa.Numeric(14, 2)


def _timestamps():
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade():
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("archived_at", sa.DateTime()),
        *_timestamps(),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )

    op.create_table(
        "recurring_obligations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column(
            "kind",
            sa.Enum(
                "income", "fixed", "subscription", "debt", "goal", name="obligationkind"
            ),
            nullable=False,
        ),
        sa.Column(
            "frequency",
            sa.Enum(
                "Daily",
                "Weekly",
                "Biweekly",
                "Monthly",
                "Quarterly",
                "Yearly",
                name="frequency",
            ),
            nullable=False,
        ),
        sa.Column("next_date", sa.Date(), nullable=False),
        sa.Column(
            "status",
            sa.Enum("active", "paused", "cancelled", name="obligationstatus"),
            nullable=False,
        ),
        sa.Column("linked_source_id", sa.Integer()),
        *_timestamps(),
    )
    op.create_index(
        "ix_obligation_user_status_next",
        "recurring_obligations",
        ["user_id", "status", "next_date"],
    )

    op.create_table(
        "ledger_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("amount", MONEY, nullable=False),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("source_transaction_id", sa.String(length=64)),
        sa.Column(
            "obligation_id", sa.Integer(), sa.ForeignKey("recurring_obligations.id")
        ),
        sa.Column("occurrence_date", sa.Date()),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id",
            "obligation_id",
            "occurrence_date",
            name="uq_ledger_obligation_occurrence",
        ),
    )
    op.create_index("ix_ledger_user_date", "ledger_entries", ["user_id", "date"])
    op.create_index(
        "ix_ledger_user_category_date",
        "ledger_entries",
        ["user_id", "category_id", "date"],
    )
    op.create_index(
        "ix_ledger_obligation_date", "ledger_entries", ["obligation_id", "date"]
    )

    op.create_table(
        "budget_entries",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("allocated", MONEY, nullable=False, server_default="0"),
        sa.Column("spent", MONEY, nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "user_id", "category_id", "month", name="uq_budget_entry_user_cat_month"
        ),
    )
    op.create_index(
        "ix_budget_entry_user_month", "budget_entries", ["user_id", "month"]
    )

    op.create_table(
        "obligation_forecasts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "source_id",
            sa.Integer(),
            sa.ForeignKey("recurring_obligations.id"),
            nullable=False,
        ),
        sa.Column("user_id", sa.Integer(), nullable=False),
        sa.Column("month", sa.Date(), nullable=False),
        sa.Column("amount", MONEY, nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "source_id", "month", "user_id", name="uq_forecast_source_month_user"
        ),
    )
    op.create_index(
        "ix_forecast_user_month", "obligation_forecasts", ["user_id", "month"]
    )


def downgrade():
    op.drop_index("ix_forecast_user_month", table_name="obligation_forecasts")
    op.drop_table("obligation_forecasts")
    op.drop_index("ix_budget_entry_user_month", table_name="budget_entries")
    op.drop_table("budget_entries")
    op.drop_index("ix_ledger_obligation_date", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_category_date", table_name="ledger_entries")
    op.drop_index("ix_ledger_user_date", table_name="ledger_entries")
    op.drop_table("ledger_entries")
    op.drop_index("ix_obligation_user_status_next", table_name="recurring_obligations")
    op.drop_table("recurring_obligations")
    op.drop_table("categories")
