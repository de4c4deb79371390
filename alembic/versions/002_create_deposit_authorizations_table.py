"""Create deposit_authorizations table.

Revision ID: 002_deposits
Revises: 001_auctions
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "002_deposits"
down_revision: str | None = "001_auctions"
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "deposit_authorizations",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("user_id", UUID(as_uuid=True), nullable=False),
        sa.Column(
            "auction_id",
            UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("processor_reference", sa.Text(), nullable=True, unique=True),
        sa.Column("amount_cad", sa.Numeric(12, 2), nullable=False),
        sa.Column("payment_method_id", sa.Text(), nullable=True),
        sa.Column("status", sa.Text(), nullable=False, server_default=sa.text("'pending'")),
        sa.Column("admin_hold", sa.Boolean(), nullable=False, server_default=sa.text("FALSE")),
        sa.Column("failure_reason", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("authorized_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("captured_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("cancelled_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("failed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("expired_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("refunded_at", sa.DateTime(timezone=True), nullable=True),
        sa.CheckConstraint(
            "status IN ('pending','authorized','captured','cancelled','failed','expired','refunded')",
            name="ck_deposit_status",
        ),
        sa.CheckConstraint("amount_cad >= 0", name="ck_deposit_amount"),
    )
    # At most one open hold per bidder and auction.
    op.create_index(
        "uq_deposit_open_per_user_auction", "deposit_authorizations", ["user_id", "auction_id"],
        unique=True, postgresql_where=sa.text("status IN ('pending','authorized')"),
    )
    op.create_index(
        "idx_deposits_auction_status", "deposit_authorizations", ["auction_id", "status"]
    )
    op.create_index(
        "idx_deposits_status_updated", "deposit_authorizations", ["status", "updated_at"]
    )


def downgrade() -> None:
    op.drop_index("idx_deposits_status_updated", table_name="deposit_authorizations")
    op.drop_index("idx_deposits_auction_status", table_name="deposit_authorizations")
    op.drop_index("uq_deposit_open_per_user_auction", table_name="deposit_authorizations")
    op.drop_table("deposit_authorizations")
