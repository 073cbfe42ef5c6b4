"""initial ledger schema

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


ACCOUNT_TYPES = (
    "cash",
    "checking",
    "savings",
    "credit_card",
    "physical_asset",
    "investment",
)


def upgrade():
    op.create_table(
        "accounts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column(
            "type", sa.Enum(*ACCOUNT_TYPES, name="accounttype"), nullable=False
        ),
        sa.Column("card_last4", sa.String(length=4)),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("name"),
    )

    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=64), nullable=False),
        sa.Column(
            "type", sa.Enum("expense", "income", name="categorytype"), nullable=False
        ),
        sa.Column("parent_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint(
            "type", "name", "parent_id", name="uq_category_type_name_parent"
        ),
        sa.CheckConstraint(
            "parent_id IS NULL OR parent_id <> id", name="ck_category_not_own_parent"
        ),
    )
    op.create_index("ix_categories_parent", "categories", ["parent_id"])
    # NULL parents never collide in the unique constraint above.
    op.create_index(
        "uq_category_top_level_type_name",
        "categories",
        ["type", "name"],
        unique=True,
        sqlite_where=sa.text("parent_id IS NULL"),
    )

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "type",
            sa.Enum("expense", "income", "transfer", name="transactiontype"),
            nullable=False,
        ),
        sa.Column(
            "account_id", sa.Integer(), sa.ForeignKey("accounts.id"), nullable=False
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("date", sa.Date(), nullable=False),
        sa.Column("reflection_date", sa.Date()),
        sa.Column("payee", sa.String(length=128)),
        sa.Column("description", sa.Text()),
        sa.Column("transfer_id", sa.Integer()),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.CheckConstraint("amount_cents >= 0", name="ck_transactions_amount_positive"),
        sa.CheckConstraint(
            "type <> 'transfer' OR category_id IS NULL",
            name="ck_transactions_transfer_uncategorized",
        ),
    )
    op.create_index("ix_transactions_date", "transactions", ["date"])
    op.create_index("ix_transactions_category", "transactions", ["category_id"])
    op.create_index("ix_transactions_account", "transactions", ["account_id"])
    op.create_index("ix_transactions_transfer", "transactions", ["transfer_id"])

    op.create_table(
        "budgets",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id", sa.Integer(), sa.ForeignKey("categories.id"), nullable=False
        ),
        sa.Column("month", sa.String(length=7), nullable=False),
        sa.Column("limit_cents", sa.Integer(), nullable=False),
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
        sa.UniqueConstraint("category_id", "month", name="uq_budget_category_month"),
        sa.CheckConstraint("limit_cents >= 0", name="ck_budget_limit_positive"),
    )
    op.create_index("ix_budgets_month", "budgets", ["month"])


def downgrade():
    op.drop_index("ix_budgets_month", table_name="budgets")
    op.drop_table("budgets")
    op.drop_index("ix_transactions_transfer", table_name="transactions")
    op.drop_index("ix_transactions_account", table_name="transactions")
    op.drop_index("ix_transactions_category", table_name="transactions")
    op.drop_index("ix_transactions_date", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("uq_category_top_level_type_name", table_name="categories")
    op.drop_index("ix_categories_parent", table_name="categories")
    op.drop_table("categories")
    op.drop_table("accounts")
