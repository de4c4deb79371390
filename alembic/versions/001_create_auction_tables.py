"""Create listings, auctions and bids tables.

Revision ID: 001_auctions
Revises:
Create Date: 2026-10-19
"""

from collections.abc import Sequence

import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID

from alembic import op

revision: str = "001_auctions"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None


def upgrade() -> None:
    op.create_table(
        "listings",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column("seller_id", UUID(as_uuid=True), nullable=False),
        sa.Column("title", sa.Text(), nullable=False),
        sa.Column("price_cad", sa.Numeric(12, 2), nullable=False),
        sa.Column("buy_now_cad", sa.Numeric(12, 2), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
    )
    op.create_index("ix_listings_seller_id", "listings", ["seller_id"])

    op.create_table(
        "auctions",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column(
            "listing_id",
            UUID(as_uuid=True),
            sa.ForeignKey("listings.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("start_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("end_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("min_increment_cad", sa.Numeric(12, 2), nullable=True),
        sa.Column("soft_close_seconds", sa.Integer(), nullable=True),
        sa.Column("extension_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("outcome", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("end_at > start_at", name="ck_auction_window"),
        sa.CheckConstraint(
            "outcome IS NULL OR outcome IN ('sold','no_bids')", name="ck_auction_outcome"
        ),
    )
    op.create_index("idx_auctions_unprocessed_end", "auctions", ["end_at", "processed_at"])

    op.create_table(
        "bids",
        sa.Column("id", UUID(as_uuid=True), server_default=sa.text("gen_random_uuid()"), primary_key=True),
        sa.Column(
            "auction_id",
            UUID(as_uuid=True),
            sa.ForeignKey("auctions.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("bidder_id", UUID(as_uuid=True), nullable=False),
        sa.Column("amount_cad", sa.Numeric(12, 2), nullable=False),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False, server_default=sa.text("NOW()")),
        sa.CheckConstraint("amount_cad > 0", name="ck_bid_amount_positive"),
    )
    op.create_index("idx_bids_auction_amount", "bids", ["auction_id", "amount_cad"])
    op.create_index("idx_bids_auction_created", "bids", ["auction_id", "created_at"])


def downgrade() -> None:
    op.drop_index("idx_bids_auction_created", table_name="bids")
    op.drop_index("idx_bids_auction_amount", table_name="bids")
    op.drop_table("bids")
    op.drop_index("idx_auctions_unprocessed_end", table_name="auctions")
    op.drop_table("auctions")
    op.drop_index("ix_listings_seller_id", table_name="listings")
    op.drop_table("listings")
