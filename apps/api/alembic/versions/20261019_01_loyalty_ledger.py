"""Create users mirror and loyalty ledger tables."""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


transaction_type = sa.Enum("earned", "redeemed", "expired", "adjusted", name="loyalty_transaction_type")
referral_status = sa.Enum("pending", "completed", "expired", name="loyalty_referral_status")


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("email", sa.String(), nullable=False),
        sa.Column("role", sa.String(length=16), nullable=False, server_default="user"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_users_external_id", "users", ["external_id"], unique=True)
    op.create_index("ix_users_email", "users", ["email"], unique=True)

    op.create_table(
        "loyalty_programs",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False, unique=True),
        sa.Column("description", sa.Text(), nullable=False),
        sa.Column("points_per_currency_unit", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("points_for_registration", sa.Integer(), nullable=False, server_default="100"),
        sa.Column("points_for_review", sa.Integer(), nullable=False, server_default="50"),
        sa.Column("points_for_referral", sa.Integer(), nullable=False, server_default="200"),
        sa.Column("expiry_months", sa.Integer(), nullable=False, server_default="24"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )

    op.create_table(
        "loyalty_tiers",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "program_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_programs.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("min_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("benefits", sa.JSON(), nullable=False),
        sa.UniqueConstraint("program_id", "name", name="uq_loyalty_tiers_program_name"),
    )

    op.create_table(
        "loyalty_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("external_id", sa.String(), nullable=False),
        sa.Column("total_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("available_points", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_redeemed", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("current_tier", sa.String(), nullable=False, server_default="Bronze"),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("joined_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("last_activity", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("user_id", name="uq_loyalty_accounts_user_id"),
        sa.UniqueConstraint("external_id", name="uq_loyalty_accounts_external_id"),
    )
    op.create_index("ix_loyalty_accounts_external_id", "loyalty_accounts", ["external_id"])

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id"),
            nullable=False,
        ),
        sa.Column("type", transaction_type, nullable=False),
        sa.Column("points", sa.Integer(), nullable=False),
        sa.Column("reason", sa.String(), nullable=False),
        sa.Column("order_id", sa.String(), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "expired_transaction_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_transactions.id"),
            nullable=True,
            unique=True,
        ),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_loyalty_transactions_account_id", "loyalty_transactions", ["account_id"])
    op.create_index("ix_loyalty_transactions_order_id", "loyalty_transactions", ["order_id"])

    op.create_table(
        "loyalty_referrals",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_accounts.id"),
            nullable=False,
        ),
        sa.Column("referral_code", sa.String(), nullable=False),
        sa.Column("status", referral_status, nullable=False, server_default="pending"),
        sa.Column("referred_user_id", postgresql.UUID(as_uuid=True), sa.ForeignKey("users.id"), nullable=True),
        sa.Column("points_awarded", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("completed_at", sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index("ix_loyalty_referrals_account_id", "loyalty_referrals", ["account_id"])
    op.create_index("ix_loyalty_referrals_referral_code", "loyalty_referrals", ["referral_code"], unique=True)


def downgrade() -> None:
    op.drop_index("ix_loyalty_referrals_referral_code", table_name="loyalty_referrals")
    op.drop_index("ix_loyalty_referrals_account_id", table_name="loyalty_referrals")
    op.drop_table("loyalty_referrals")
    op.drop_index("ix_loyalty_transactions_order_id", table_name="loyalty_transactions")
    op.drop_index("ix_loyalty_transactions_account_id", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")
    op.drop_index("ix_loyalty_accounts_external_id", table_name="loyalty_accounts")
    op.drop_table("loyalty_accounts")
    op.drop_table("loyalty_tiers")
    op.drop_table("loyalty_programs")
    op.drop_index("ix_users_email", table_name="users")
    op.drop_index("ix_users_external_id", table_name="users")
    op.drop_table("users")

    bind = op.get_bind()
    referral_status.drop(bind, checkfirst=True)
    transaction_type.drop(bind, checkfirst=True)
