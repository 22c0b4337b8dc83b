"""Track points spent per account and index the program-wide activity feeds."""

from __future__ import annotations

from alembic import op
import sqlalchemy as sa


revision = "20261026_02"
down_revision = "20261019_01"
branch_labels = None
depends_on = None


def upgrade() -> None:
    with op.batch_alter_table("loyalty_points_accounts") as batch:
        batch.add_column(
            sa.Column("lifetime_spent", sa.Integer(), nullable=False, server_default="0")
        )
        batch.create_check_constraint(
            "ck_loyalty_points_accounts_spent_non_negative",
            "lifetime_spent >= 0",
        )

    op.get_bind().execute(
        sa.text(
            "UPDATE loyalty_points_accounts SET lifetime_spent = COALESCE(("
            "SELECT SUM(amount) FROM loyalty_transactions "
            "WHERE loyalty_transactions.account_id = loyalty_points_accounts.id "
            "AND loyalty_transactions.kind = 'spend'), 0)"
        )
    )

    op.create_index(
        "ix_loyalty_transactions_occurred_at",
        "loyalty_transactions",
        ["occurred_at", "id"],
    )
    op.create_index(
        "ix_loyalty_redemptions_created_at",
        "loyalty_redemptions",
        ["created_at", "id"],
    )


def downgrade() -> None:
    op.drop_index("ix_loyalty_redemptions_created_at", table_name="loyalty_redemptions")
    op.drop_index("ix_loyalty_transactions_occurred_at", table_name="loyalty_transactions")
    with op.batch_alter_table("loyalty_points_accounts") as batch:
        batch.drop_constraint("ck_loyalty_points_accounts_spent_non_negative", type_="check")
        batch.drop_column("lifetime_spent")
