"""initial ledger schema

Revision ID: 202610170000
Revises:
Create Date: 2026-10-17 00:00:00.000000

"""

from __future__ import annotations

import sqlalchemy as sa
from alembic import op


revision = "202610170000"
down_revision = None
branch_labels = None
depends_on = None


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
        sa.Column(
            "updated_at", sa.DateTime(), nullable=False, server_default=sa.func.now()
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.Integer(), primary_key=True),
        sa.Column("clock_millis", sa.BigInteger(), nullable=True),
        *_timestamps(),
    )
    op.create_table(
        "id_counters",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column(
            "kind",
            sa.Enum(
                "transaction",
                "category",
                "category_rule",
                "saving_goal",
                "payment_request",
                name="idkind",
            ),
            primary_key=True,
        ),
        sa.Column("last_id", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_table(
        "categories",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(length=100), nullable=False),
        *_timestamps(),
    )
    op.create_table(
        "transactions",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("date", sa.String(length=40), nullable=False),
        sa.Column("timestamp_millis", sa.BigInteger(), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column(
            "external_iban", sa.String(length=64), nullable=False, server_default=""
        ),
        sa.Column(
            "type",
            sa.Enum("deposit", "withdrawal", name="transactiontype"),
            nullable=False,
        ),
        sa.Column("category_id", sa.Integer(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["user_id", "category_id"],
            ["categories.user_id", "categories.id"],
            name="fk_transactions_category",
        ),
        sa.CheckConstraint("amount >= 0", name="ck_transactions_amount_positive"),
    )
    op.create_index(
        "ix_transactions_user_timestamp",
        "transactions",
        ["user_id", "timestamp_millis"],
    )
    op.create_table(
        "category_rules",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("iban", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("type", sa.String(length=20), nullable=False, server_default=""),
        sa.Column("category_id", sa.Integer(), nullable=False),
        sa.Column(
            "apply_on_history", sa.Boolean(), nullable=False, server_default=sa.false()
        ),
        *_timestamps(),
        sa.ForeignKeyConstraint(
            ["user_id", "category_id"],
            ["categories.user_id", "categories.id"],
            name="fk_category_rules_category",
        ),
    )
    op.create_table(
        "balance_history",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column(
            "timestamp_millis", sa.BigInteger(), primary_key=True, autoincrement=False
        ),
        sa.Column("open", sa.Float(), nullable=False),
        sa.Column("close", sa.Float(), nullable=False),
        sa.Column("volume", sa.Float(), nullable=False),
    )
    op.create_table(
        "saving_goals",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("goal", sa.Float(), nullable=False),
        sa.Column("save_per_month", sa.Float(), nullable=False),
        sa.Column(
            "min_balance_required", sa.Float(), nullable=False, server_default="0"
        ),
        sa.Column("balance", sa.Float(), nullable=False, server_default="0"),
        *_timestamps(),
        sa.CheckConstraint("save_per_month >= 0", name="ck_saving_goal_save_positive"),
    )
    op.create_table(
        "payment_requests",
        sa.Column("user_id", sa.Integer(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("due_date", sa.String(length=40), nullable=False),
        sa.Column("amount", sa.Float(), nullable=False),
        sa.Column("number_of_requests", sa.Integer(), nullable=False),
        sa.Column("filled", sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
        sa.CheckConstraint(
            "number_of_requests > 0", name="ck_payment_request_count_positive"
        ),
    )
    op.create_table(
        "payment_request_transactions",
        sa.Column("user_id", sa.Integer(), primary_key=True),
        sa.Column("payment_request_id", sa.Integer(), primary_key=True),
        sa.Column("transaction_id", sa.Integer(), primary_key=True),
        sa.ForeignKeyConstraint(
            ["user_id", "payment_request_id"],
            ["payment_requests.user_id", "payment_requests.id"],
        ),
        sa.ForeignKeyConstraint(
            ["user_id", "transaction_id"],
            ["transactions.user_id", "transactions.id"],
        ),
    )


def downgrade() -> None:
    op.drop_table("payment_request_transactions")
    op.drop_table("payment_requests")
    op.drop_table("saving_goals")
    op.drop_table("balance_history")
    op.drop_table("category_rules")
    op.drop_index("ix_transactions_user_timestamp", table_name="transactions")
    op.drop_table("transactions")
    op.drop_table("categories")
    op.drop_table("id_counters")
    op.drop_table("users")
