"""add ledger sequence, refund claims and renewal retry state

Revision ID: 20261019_000002
Revises: 20261001_000001
Create Date: 2026-10-19 00:00:02.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "20261019_000002"
down_revision: Union[str, None] = "20261001_000001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.add_column("credit_transactions", sa.Column("sequence", sa.Integer(), nullable=True))
    op.execute(
        """
        UPDATE credit_transactions
        SET sequence = numbered.rn
        FROM (
            SELECT id, ROW_NUMBER() OVER (PARTITION BY account_id ORDER BY created_at, id) AS rn
            FROM credit_transactions
        ) AS numbered
        WHERE credit_transactions.id = numbered.id
        """
    )
    op.alter_column("credit_transactions", "sequence", nullable=False)
    op.create_unique_constraint(
        "uq_credit_transactions_account_sequence", "credit_transactions", ["account_id", "sequence"]
    )

    op.add_column("refund_requests", sa.Column("claimed_at", sa.DateTime(timezone=True), nullable=True))

    op.add_column(
        "subscriptions",
        sa.Column("renewal_retry_count", sa.Integer(), nullable=False, server_default="0"),
    )
    op.add_column("subscriptions", sa.Column("next_retry_at", sa.DateTime(timezone=True), nullable=True))
    op.add_column("subscriptions", sa.Column("last_renewal_error", sa.String(), nullable=True))
    op.create_index(op.f("ix_subscriptions_next_retry_at"), "subscriptions", ["next_retry_at"], unique=False)


def downgrade() -> None:
    op.drop_index(op.f("ix_subscriptions_next_retry_at"), table_name="subscriptions")
    op.drop_column("subscriptions", "last_renewal_error")
    op.drop_column("subscriptions", "next_retry_at")
    op.drop_column("subscriptions", "renewal_retry_count")
    op.drop_column("refund_requests", "claimed_at")
    op.drop_constraint("uq_credit_transactions_account_sequence", "credit_transactions", type_="unique")
    op.drop_column("credit_transactions", "sequence")
