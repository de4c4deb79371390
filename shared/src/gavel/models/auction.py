"""Auction model - deadline, soft-close overrides and settlement marker."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING

from sqlalchemy import CheckConstraint, DateTime, ForeignKey, Index, Integer, Numeric, Text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, relationship

from gavel.models.base import Base, sql_in_list
from gavel.timeutils import utcnow

if TYPE_CHECKING:
    from gavel.models.listing import Listing

AUCTION_OUTCOMES = ("sold", "no_bids")


class Auction(Base):
    __tablename__ = "auctions"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    listing_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("listings.id", ondelete="CASCADE"), nullable=False
    )
    start_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Only moved forward by soft-close extension.
    end_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    # Per-auction overrides of the site-wide auction settings.
    min_increment_cad: Mapped[Decimal | None] = mapped_column(Numeric(12, 2))
    soft_close_seconds: Mapped[int | None] = mapped_column(Integer)
    extension_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    outcome: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    listing: Mapped[Listing] = relationship(lazy="joined", innerjoin=True)

    __table_args__ = (
        CheckConstraint("end_at > start_at", name="ck_auction_window"),
        CheckConstraint(
            f"outcome IS NULL OR outcome IN ({sql_in_list(AUCTION_OUTCOMES)})",
            name="ck_auction_outcome",
        ),
        Index("idx_auctions_unprocessed_end", "end_at", "processed_at"),
    )
