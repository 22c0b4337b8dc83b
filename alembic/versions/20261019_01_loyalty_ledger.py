"""Loyalty points ledger, reward catalog, redemptions and settings versions.

Revision ID: 20261019_01
Revises:
Create Date: 2026-10-19
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


revision: str = "20261019_01"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


transaction_kind = sa.Enum("earn", "spend", "expire", "adjust", name="loyalty_transaction_kind")
transaction_direction = sa.Enum("credit", "debit", name="loyalty_transaction_direction")
reward_type = sa.Enum(
    "free_delivery",
    "order_discount",
    "delivery_discount",
    "product_discount",
    "gift",
    name="loyalty_reward_type",
)
discount_type = sa.Enum("percentage", "fixed", name="loyalty_discount_type")
reward_status = sa.Enum("active", "inactive", name="loyalty_reward_status")
redemption_status = sa.Enum("active", "used", "expired", name="loyalty_redemption_status")


def upgrade() -> None:
    op.create_table(
        "loyalty_points_accounts",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("customer_id", sa.String(), nullable=False),
        sa.Column("balance", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("lifetime_earned", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("last_activity_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("customer_id", name="uq_loyalty_points_accounts_customer_id"),
        sa.CheckConstraint("balance >= 0", name="ck_loyalty_points_accounts_balance_non_negative"),
        sa.CheckConstraint("lifetime_earned >= 0", name="ck_loyalty_points_accounts_lifetime_non_negative"),
    )
    op.create_index(
        "ix_loyalty_points_accounts_customer_id",
        "loyalty_points_accounts",
        ["customer_id"],
    )

    op.create_table(
        "loyalty_transactions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_points_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column("sequence", sa.Integer(), nullable=False),
        sa.Column("kind", transaction_kind, nullable=False),
        sa.Column("direction", transaction_direction, nullable=False),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("balance_after", sa.Integer(), nullable=False),
        sa.Column("description", sa.String(), nullable=True),
        sa.Column("related_redemption_id", postgresql.UUID(as_uuid=True), nullable=True),
        sa.Column("metadata", sa.JSON(), nullable=True),
        sa.Column("occurred_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("account_id", "sequence", name="uq_loyalty_transactions_account_sequence"),
        sa.CheckConstraint("amount > 0", name="ck_loyalty_transactions_amount_positive"),
    )
    op.create_index(
        "ix_loyalty_transactions_related_redemption",
        "loyalty_transactions",
        ["related_redemption_id"],
    )

    op.create_table(
        "loyalty_rewards",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("name", sa.String(), nullable=False),
        sa.Column("description", sa.Text(), nullable=True),
        sa.Column("points_cost", sa.Integer(), nullable=False),
        sa.Column("reward_type", reward_type, nullable=False),
        sa.Column("discount_type", discount_type, nullable=True),
        sa.Column("discount_value", sa.Numeric(12, 2), nullable=True),
        sa.Column("max_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("min_order_amount", sa.Numeric(12, 2), nullable=True),
        sa.Column("usage_limit", sa.Integer(), nullable=True),
        sa.Column("used_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("starts_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("ends_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("status", reward_status, nullable=False, server_default="active"),
        sa.Column("revision", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.CheckConstraint("points_cost > 0", name="ck_loyalty_rewards_points_cost_positive"),
        sa.CheckConstraint("ends_at >= starts_at", name="ck_loyalty_rewards_window_ordered"),
        sa.CheckConstraint(
            "usage_limit IS NULL OR used_count <= usage_limit",
            name="ck_loyalty_rewards_usage_within_limit",
        ),
    )

    op.create_table(
        "loyalty_redemptions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "account_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_points_accounts.id", ondelete="RESTRICT"),
            nullable=False,
        ),
        sa.Column(
            "reward_id",
            postgresql.UUID(as_uuid=True),
            sa.ForeignKey("loyalty_rewards.id"),
            nullable=False,
        ),
        sa.Column("points_spent", sa.Integer(), nullable=False),
        sa.Column("code", sa.String(), nullable=False),
        sa.Column("status", redemption_status, nullable=False, server_default="active"),
        sa.Column("reward_snapshot", sa.JSON(), nullable=False),
        sa.Column("order_reference", sa.String(), nullable=True),
        sa.Column("applied_discount", sa.Numeric(12, 2), nullable=True),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("used_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index("ix_loyalty_redemptions_code", "loyalty_redemptions", ["code"], unique=True)
    op.create_index(
        "ix_loyalty_redemptions_status_expires_at",
        "loyalty_redemptions",
        ["status", "expires_at"],
    )

    op.create_table(
        "loyalty_settings_versions",
        sa.Column("id", postgresql.UUID(as_uuid=True), primary_key=True),
        sa.Column("version", sa.Integer(), nullable=False),
        sa.Column("point_value", sa.Numeric(12, 4), nullable=False),
        sa.Column("min_points_redeem", sa.Integer(), nullable=False),
        sa.Column("points_expiry_days", sa.Integer(), nullable=False),
        sa.Column("points_per_currency", sa.Numeric(12, 4), nullable=False),
        sa.Column("min_order_points", sa.Numeric(12, 2), nullable=False),
        sa.Column("redemption_expiry_days", sa.Integer(), nullable=False),
        sa.Column("tiers", sa.JSON(), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint("version", name="uq_loyalty_settings_versions_version"),
    )


def downgrade() -> None:
    op.drop_table("loyalty_settings_versions")
    op.drop_index("ix_loyalty_redemptions_status_expires_at", table_name="loyalty_redemptions")
    op.drop_index("ix_loyalty_redemptions_code", table_name="loyalty_redemptions")
    op.drop_table("loyalty_redemptions")
    op.drop_table("loyalty_rewards")
    op.drop_index("ix_loyalty_transactions_related_redemption", table_name="loyalty_transactions")
    op.drop_table("loyalty_transactions")
    op.drop_index("ix_loyalty_points_accounts_customer_id", table_name="loyalty_points_accounts")
    op.drop_table("loyalty_points_accounts")

    bind = op.get_bind()
    for enum_type in (
        redemption_status,
        reward_status,
        discount_type,
        reward_type,
        transaction_direction,
        transaction_kind,
    ):
        enum_type.drop(bind, checkfirst=True)
