"""Bid acceptance: validate against the live auction state and record the bid.

Read-validate-insert runs under a per-auction lock and a row lock on the auction,
so two bids for the same auction can never both be validated against the same
high bid. Soft-close extension is a separate, monotonic update after the bid is
committed; if it fails the bid still stands.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, replace
from datetime import datetime
from decimal import Decimal

from gavel.models import Auction, Bid
from gavel.services.auction_settings import AuctionSettings, load_auction_settings
from gavel.services.auction_state import (
    AuctionState,
    compute_auction_state,
    effective_settings,
    is_in_soft_close,
    soft_close_extension,
    winning_bid,
)
from gavel.timeutils import as_utc, utcnow
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import ForbiddenError, NotFoundError, StateConflictError, ValidationError
from api.services.auction_lookup import load_auction, load_bids
from api.services.audit import record_audit
from api.services.deposit_service import check_deposit_authorization
from api.services.keyed_locks import KeyedLocks
from api.services.notifications import notify

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AuctionWindow:
    """Plain copy of the timing fields of an auction, detached from the session."""

    start_at: datetime
    end_at: datetime
    min_increment_cad: Decimal | None
    soft_close_seconds: int | None

    @classmethod
    def of(cls, auction: Auction) -> AuctionWindow:
        return cls(
            start_at=as_utc(auction.start_at),
            end_at=as_utc(auction.end_at),
            min_increment_cad=auction.min_increment_cad,
            soft_close_seconds=auction.soft_close_seconds,
        )


@dataclass(frozen=True)
class BidSnapshot:
    amount_cad: Decimal
    created_at: datetime


@dataclass
class BidPlacement:
    bid: Bid
    state: AuctionState
    soft_close_extended: bool = False
    new_end_time: datetime | None = None


def _validate_amount(amount: Decimal) -> Decimal:
    amount = Decimal(amount)
    if amount <= 0:
        raise ValidationError("Bid amount must be positive", code="invalid_amount")
    if amount != amount.quantize(Decimal("0.01")):
        raise ValidationError(
            "Bid amount may have at most two decimal places", code="invalid_amount"
        )
    return amount


async def place_bid(
    db: AsyncSession,
    locks: KeyedLocks,
    auction_id: uuid.UUID,
    bidder_id: uuid.UUID,
    amount_cad: Decimal,
    clock: Callable[[], datetime] = utcnow,
) -> BidPlacement:
    amount = _validate_amount(amount_cad)

    async with locks.hold(("auction", auction_id)):
        settings = await load_auction_settings(db)
        auction = await load_auction(db, auction_id, for_update=True)
        if auction is None:
            raise NotFoundError("Auction not found", code="auction_not_found")
        listing = auction.listing

        if listing.seller_id == bidder_id:
            raise ForbiddenError("Sellers cannot bid on their own auction", code="self_bid")

        if settings.deposit_required and not await check_deposit_authorization(
            db, bidder_id, auction.id
        ):
            raise ForbiddenError(
                "An authorized deposit is required to bid on this auction",
                code="deposit_required",
            )

        bids = await load_bids(db, auction.id)
        now = as_utc(clock())
        state = compute_auction_state(auction, bids, settings, now, base_price=listing.price_cad)
        if not state.has_started:
            raise StateConflictError("Auction has not started", code="auction_not_started")
        if state.has_ended:
            raise StateConflictError("Auction has ended", code="auction_ended")
        if amount < state.min_next_bid:
            raise ValidationError(
                f"Bid must be at least ${state.min_next_bid:.2f} CAD",
                code="bid_too_low",
                minimum_bid=state.min_next_bid,
            )
        if listing.buy_now_cad is not None and amount >= listing.buy_now_cad:
            raise ValidationError(
                f"Bid cannot exceed Buy Now price of ${Decimal(listing.buy_now_cad):.2f} CAD",
                code="bid_exceeds_buy_now",
            )

        previous_leader = winning_bid(bids)
        bid = Bid(auction_id=auction.id, bidder_id=bidder_id, amount_cad=amount, created_at=now)
        db.add(bid)
        await db.flush()
        record_audit(
            db,
            action="bid.placed",
            reason="bid_placement",
            target_type="auction",
            target_id=auction.id,
            detail={"bid_id": str(bid.id), "amount_cad": str(amount)},
            actor_id=bidder_id,
        )
        await db.commit()
        logger.info("Bid %s accepted on auction %s: %s", bid.id, auction.id, amount)

        # Detach what the response needs: a failed extension rolls back and expires
        # every instance still attached to the session.
        window = AuctionWindow.of(auction)
        all_bids = [BidSnapshot(Decimal(b.amount_cad), as_utc(b.created_at)) for b in (*bids, bid)]
        db.expunge(bid)
        seller_id, title, base_price = listing.seller_id, listing.title, listing.price_cad
        outbid_id = previous_leader.bidder_id if previous_leader is not None else None

        new_end = await _maybe_extend(db, auction.id, window, settings, clock)
        if new_end is not None:
            window = replace(window, end_at=new_end)

        final_state = compute_auction_state(
            window, all_bids, settings, as_utc(clock()), base_price=base_price
        )

    if outbid_id is not None and outbid_id != bidder_id:
        notify(
            "outbid",
            outbid_id,
            auction_id=auction_id,
            listing_title=title,
            new_high_bid=amount,
            min_next_bid=final_state.min_next_bid,
        )
    notify("new_bid", seller_id, auction_id=auction_id, listing_title=title, amount_cad=amount)

    return BidPlacement(
        bid=bid,
        state=final_state,
        soft_close_extended=new_end is not None,
        new_end_time=new_end,
    )


async def _maybe_extend(
    db: AsyncSession,
    auction_id: uuid.UUID,
    window: AuctionWindow,
    settings: AuctionSettings,
    clock: Callable[[], datetime],
) -> datetime | None:
    seconds = effective_settings(window, settings).soft_close_seconds
    if seconds <= 0:
        return None
    placed_at = as_utc(clock())
    if not is_in_soft_close(window.end_at, seconds, placed_at):
        return None

    new_end = soft_close_extension(placed_at, seconds)
    try:
        result = await db.execute(
            update(Auction)
            .where(
                Auction.id == auction_id,
                Auction.end_at < new_end,
                Auction.processed_at.is_(None),
            )
            .values(
                end_at=new_end,
                extension_count=Auction.extension_count + 1,
                updated_at=placed_at,
            )
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except SQLAlchemyError:
        await db.rollback()
        logger.exception("Soft-close extension failed for auction %s; bid stands", auction_id)
        return None

    if result.rowcount == 0:
        return None
    logger.info("Auction %s extended to %s (soft close)", auction_id, new_end.isoformat())
    return new_end
