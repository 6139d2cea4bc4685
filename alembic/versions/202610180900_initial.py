"""initial schema

Revision ID: 202610180900
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""

from alembic import op
import sqlalchemy as sa


revision = "202610180900"
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        "users",
        sa.Column("id", sa.String(length=64), primary_key=True),
        sa.Column("email", sa.String(length=255), nullable=False),
        sa.Column(
            "currency",
            sa.Enum("SLE", "USD", "GBP", "EUR", "NGN", name="currencycode"),
            nullable=False,
            server_default="SLE",
        ),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("email"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=50), nullable=False),
        sa.Column(
            "color", sa.String(length=7), nullable=False, server_default="#6366f1"
        ),
        sa.Column(
            "is_savings", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column(
            "is_default", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_category_user_name"),
    )
    op.create_index(
        "ix_categories_user_sort", "categories", ["user_id", "sort_order"]
    )

    op.create_table(
        "budget_months",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(length=64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("year", sa.Integer(), nullable=False),
        sa.Column("month", sa.Integer(), nullable=False),
        sa.Column(
            "income", sa.Numeric(14, 2), nullable=False, server_default="0"
        ),
        sa.Column(
            "savings_rate", sa.Numeric(5, 4), nullable=False, server_default="0.2"
        ),
        sa.Column("adjustment_reason", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "user_id", "year", "month", name="uq_budget_month_user_month"
        ),
        sa.CheckConstraint("income >= 0", name="ck_budget_month_income_positive"),
        sa.CheckConstraint(
            "savings_rate >= 0 AND savings_rate <= 1",
            name="ck_budget_month_savings_rate_range",
        ),
        sa.CheckConstraint("month >= 1 AND month <= 12", name="ck_budget_month_month"),
    )

    op.create_table(
        "allocations",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "budget_month_id",
            sa.Integer(),
            sa.ForeignKey("budget_months.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Numeric(14, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "budget_month_id", "category_id", name="uq_allocation_month_category"
        ),
        sa.CheckConstraint("amount > 0", name="ck_allocation_amount_positive"),
    )


def downgrade():
    op.drop_table("allocations")
    op.drop_table("budget_months")
    op.drop_index("ix_categories_user_sort", table_name="categories")
    op.drop_table("categories")
    op.drop_table("users")
