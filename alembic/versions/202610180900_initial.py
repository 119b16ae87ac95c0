"""users, budgets and expenses

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
        sa.Column("email", sa.String(length=255)),
        sa.Column("name", sa.String(length=120)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    )

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("icon", sa.String(length=16), nullable=False),
        sa.Column("color", sa.String(length=9), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("user_id", "name", name="uq_budget_user_name"),
        sa.CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
    )
    op.create_index("ix_budgets_user_created", "budgets", ["user_id", "created_at"])

    op.create_table(
        "expenses",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "user_id", sa.String(length=64), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column(
            "budget_id", sa.Integer(), sa.ForeignKey("budgets.id"), nullable=False
        ),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents > 0", name="ck_expense_amount_positive"),
    )
    op.create_index("ix_expenses_user_created", "expenses", ["user_id", "created_at"])
    op.create_index("ix_expenses_budget", "expenses", ["budget_id"])


def downgrade():
    op.drop_index("ix_expenses_budget", table_name="expenses")
    op.drop_index("ix_expenses_user_created", table_name="expenses")
    op.drop_table("expenses")
    op.drop_index("ix_budgets_user_created", table_name="budgets")
    op.drop_table("budgets")
    op.drop_table("users")
