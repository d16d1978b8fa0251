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


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column("created_at", sa.DateTime(), nullable=False),
        sa.Column("updated_at", sa.DateTime(), nullable=False),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("username", sa.String(length=100)),
        *_timestamps(),
    )
    op.create_table(
        "categories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=100), nullable=False, unique=True),
        *_timestamps(),
    )
    op.create_table(
        "subcategories",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "category_id",
            sa.Integer(),
            sa.ForeignKey("categories.id"),
            nullable=False,
        ),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
        sa.UniqueConstraint(
            "category_id", "name", name="uq_subcategory_category_name"
        ),
    )
    op.create_table(
        "groups",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column(
            "kind", sa.String(length=20), nullable=False, server_default="family"
        ),
        *_timestamps(),
    )
    op.create_table(
        "group_members",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id"), nullable=False),
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column(
            "role",
            sa.Enum("owner", "member", name="memberrole"),
            nullable=False,
            server_default="member",
        ),
        *_timestamps(),
        sa.UniqueConstraint("group_id", "user_id", name="uq_group_member_pair"),
    )
    op.create_index("ix_group_members_user", "group_members", ["user_id"])

    op.create_table(
        "transactions",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("owner_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "operation_type",
            sa.Enum("expense", "income", name="operationtype"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), sa.ForeignKey("categories.id")),
        sa.Column("subcategory_id", sa.Integer(), sa.ForeignKey("subcategories.id")),
        sa.Column("timestamp", sa.DateTime(), nullable=False),
        sa.Column("group_id", sa.Integer(), sa.ForeignKey("groups.id")),
        sa.Column(
            "is_private", sa.Boolean(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "is_shared", sa.Boolean(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column(
            "income_type",
            sa.Enum(
                "salary",
                "debt_return",
                "prize",
                "gift",
                "refund",
                "other",
                name="incometype",
            ),
        ),
        sa.Column("related_debt_id", sa.Integer()),
        sa.Column("deleted_at", sa.DateTime()),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_timestamp_id", "transactions", ["timestamp", "id"]
    )
    op.create_index(
        "ix_transactions_owner_timestamp", "transactions", ["owner_id", "timestamp"]
    )
    op.create_index(
        "ix_transactions_group_timestamp", "transactions", ["group_id", "timestamp"]
    )
    op.create_index(
        "ix_transactions_owner_deleted", "transactions", ["owner_id", "deleted_at"]
    )

    op.create_table(
        "debts",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column(
            "from_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False
        ),
        sa.Column("to_user_id", sa.Integer(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column(
            "is_paid", sa.Boolean(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("paid_at", sa.DateTime()),
        sa.Column("transaction_id", sa.Integer(), sa.ForeignKey("transactions.id")),
        *_timestamps(),
        sa.CheckConstraint("amount_cents > 0", name="ck_debts_amount_positive"),
    )
    op.create_index("ix_debts_from_user", "debts", ["from_user_id"])
    op.create_index("ix_debts_to_user", "debts", ["to_user_id"])


def downgrade() -> None:
    op.drop_index("ix_debts_to_user", table_name="debts")
    op.drop_index("ix_debts_from_user", table_name="debts")
    op.drop_table("debts")
    op.drop_index("ix_transactions_owner_deleted", table_name="transactions")
    op.drop_index("ix_transactions_group_timestamp", table_name="transactions")
    op.drop_index("ix_transactions_owner_timestamp", table_name="transactions")
    op.drop_index("ix_transactions_timestamp_id", table_name="transactions")
    op.drop_table("transactions")
    op.drop_index("ix_group_members_user", table_name="group_members")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("subcategories")
    op.drop_table("categories")
    op.drop_table("users")
