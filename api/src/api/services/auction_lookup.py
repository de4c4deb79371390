"""Shared auction/bid queries."""

from __future__ import annotations

import uuid

from gavel.models import Auction, Bid
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession


async def load_auction(
    db: AsyncSession, auction_id: uuid.UUID, *, for_update: bool = False
) -> Auction | None:
    stmt = select(Auction).where(Auction.id == auction_id)
    if for_update:
        stmt = stmt.with_for_update(of=Auction)
    result = await db.execute(stmt.execution_options(populate_existing=True))
    return result.scalars().first()


async def load_bids(db: AsyncSession, auction_id: uuid.UUID) -> list[Bid]:
    """All bids for an auction in ranking order (highest first, ties to the earliest)."""
    result = await db.execute(
        select(Bid)
        .where(Bid.auction_id == auction_id)
        .order_by(Bid.amount_cad.desc(), Bid.created_at.asc(), Bid.id.asc())
    )
    return list(result.scalars().all())
