"""initial ledger schema

Revision ID: 0001
Revises: 
Create Date: 2026-10-18 00:00:00.000000
"""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "0001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("email", sa.Text(), unique=True),
        sa.Column("name", sa.Text()),
    )

    op.create_table(
        "groups",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("name", sa.Text(), nullable=False),
        sa.Column("description", sa.Text()),
        sa.Column("created_by", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("total_balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("custom_split_ratio", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "group_members",
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("balance_cents", sa.BigInteger(), nullable=False, server_default="0"),
        sa.Column("role", sa.Text(), nullable=False, server_default="member"),
        sa.Column("split_percent", sa.Numeric(7, 4)),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("role in ('admin','member')", name="group_members_role_check"),
        sa.CheckConstraint(
            "split_percent IS NULL OR (split_percent >= 0 AND split_percent <= 100)",
            name="group_members_split_percent_check",
        ),
    )

    op.create_table(
        "expenses",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("payer_id", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("date", sa.DateTime(timezone=True), nullable=False),
        sa.Column("split_type", sa.Text(), nullable=False, server_default="default"),
        sa.Column("note", sa.Text()),
        sa.Column("status", sa.Text(), nullable=False, server_default="active"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("amount_cents > 0", name="expenses_amount_positive"),
        sa.CheckConstraint("split_type in ('default','custom')", name="expenses_split_type_check"),
        sa.CheckConstraint("status in ('active','settled')", name="expenses_status_check"),
    )

    op.create_table(
        "expense_splits",
        sa.Column("expense_id", sa.BigInteger(), sa.ForeignKey("expenses.id", ondelete="CASCADE"), primary_key=True),
        sa.Column("user_id", sa.BigInteger(), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("amount_cents", sa.BigInteger(), nullable=False),
        sa.Column("settled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
    )

    op.create_table(
        "invitations",
        sa.Column("id", sa.BigInteger(), primary_key=True),
        sa.Column("group_id", sa.BigInteger(), sa.ForeignKey("groups.id", ondelete="CASCADE"), nullable=False),
        sa.Column("email", sa.Text(), nullable=False),
        sa.Column("invited_by", sa.BigInteger(), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("token", sa.Text(), nullable=False, unique=True),
        sa.Column("status", sa.Text(), nullable=False, server_default="pending"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("status in ('pending','accepted','expired')", name="invitations_status_check"),
    )

    op.create_index("idx_group_members_user", "group_members", ["user_id"])
    op.create_index("idx_expenses_group_status", "expenses", ["group_id", "status"])
    op.create_index("idx_expenses_payer", "expenses", ["payer_id"])
    op.create_index("idx_expense_splits_user", "expense_splits", ["user_id"])
    op.create_index("idx_invitations_email", "invitations", ["email"])
    op.create_index(
        "uq_invitations_pending",
        "invitations",
        ["group_id", "email"],
        unique=True,
        postgresql_where=sa.text("status = 'pending'"),
    )


def downgrade() -> None:
    op.drop_index("uq_invitations_pending", table_name="invitations")
    op.drop_index("idx_invitations_email", table_name="invitations")
    op.drop_index("idx_expense_splits_user", table_name="expense_splits")
    op.drop_index("idx_expenses_payer", table_name="expenses")
    op.drop_index("idx_expenses_group_status", table_name="expenses")
    op.drop_index("idx_group_members_user", table_name="group_members")

    op.drop_table("invitations")
    op.drop_table("expense_splits")
    op.drop_table("expenses")
    op.drop_table("group_members")
    op.drop_table("groups")
    op.drop_table("users")
