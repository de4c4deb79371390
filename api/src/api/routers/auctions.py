"""Public auction endpoints: bidding and live state."""

from __future__ import annotations

import uuid
from decimal import Decimal

from fastapi import APIRouter, Depends
from gavel.services.auction_settings import load_auction_settings
from gavel.services.auction_state import (
    compute_auction_state,
    effective_settings,
    format_time_left,
)
from gavel.timeutils import utcnow
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    Bidder,
    get_db,
    get_locks,
    get_settings_cache,
    require_bidding_eligibility,
)
from api.errors import NotFoundError
from api.middleware.rate_limit import rate_limited
from api.services.auction_lookup import load_auction, load_bids
from api.services.bid_service import place_bid
from api.services.cache import ExpiringCache
from api.services.keyed_locks import KeyedLocks

router = APIRouter()

AUCTION_SETTINGS_CACHE_KEY = "auction_settings"


class BidRequest(BaseModel):
    amount_cad: Decimal = Field(gt=0, max_digits=12, decimal_places=2)


@router.post("/{auction_id}/bids")
async def create_bid(
    auction_id: uuid.UUID,
    req: BidRequest,
    bidder: Bidder = Depends(rate_limited("bid", require_bidding_eligibility)),
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
):
    placement = await place_bid(db, locks, auction_id, bidder.id, req.amount_cad)
    bid = placement.bid
    return {
        "success": True,
        "bid": {
            "id": str(bid.id),
            "auction_id": str(bid.auction_id),
            "bidder_id": str(bid.bidder_id),
            "amount_cad": str(bid.amount_cad),
            "created_at": bid.created_at.isoformat(),
        },
        "auction_state": placement.state.to_dict(),
        "soft_close_extended": placement.soft_close_extended,
        "new_end_time": placement.new_end_time.isoformat() if placement.new_end_time else None,
    }


@router.get("/{auction_id}/state")
async def get_auction_state(
    auction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    cache: ExpiringCache = Depends(get_settings_cache),
):
    auction = await load_auction(db, auction_id)
    if auction is None:
        raise NotFoundError("Auction not found", code="auction_not_found")
    # Display only; bid validation always reloads settings.
    settings = await cache.get_or_load(
        AUCTION_SETTINGS_CACHE_KEY, lambda: load_auction_settings(db)
    )
    bids = await load_bids(db, auction.id)
    state = compute_auction_state(
        auction, bids, settings, utcnow(), base_price=auction.listing.price_cad
    )
    return {
        "auction_id": str(auction.id),
        "listing_id": str(auction.listing_id),
        **state.to_dict(),
        "time_left_display": format_time_left(state.time_left),
        "soft_close_seconds": effective_settings(auction, settings).soft_close_seconds,
        "buy_now_cad": str(auction.listing.buy_now_cad) if auction.listing.buy_now_cad else None,
        "processed": auction.processed_at is not None,
        "outcome": auction.outcome,
    }
