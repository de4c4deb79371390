"""End-of-auction settlement.

For every auction whose deadline has passed and that has not been processed:
pick the winner, capture the winner's deposit, release every other authorized
deposit and write the order. Each auction commits on its own so one failure never
blocks the rest of the batch. ``processed_at`` is only set once an auction settles
without errors; a re-run only touches deposits that are still ``authorized``.
"""

from __future__ import annotations

import logging
import uuid
from contextlib import AsyncExitStack
from dataclasses import asdict, dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any

from gavel.models import Auction, DepositAuthorization, Order
from gavel.services.auction_settings import AuctionSettings, load_auction_settings
from gavel.services.auction_state import winning_bid
from gavel.timeutils import as_utc, utcnow
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import ExternalProcessorError, NotFoundError
from api.services import stripe_service
from api.services.auction_lookup import load_auction, load_bids
from api.services.audit import record_audit
from api.services.keyed_locks import KeyedLocks
from api.services.notifications import notify

logger = logging.getLogger(__name__)


@dataclass
class AuctionSettlement:
    auction_id: str
    outcome: str | None = None
    winner_id: str | None = None
    winning_bid_cad: str | None = None
    captured: list[str] = field(default_factory=list)
    cancelled: list[str] = field(default_factory=list)
    held: list[str] = field(default_factory=list)
    order_id: str | None = None
    errors: list[str] = field(default_factory=list)
    processed: bool = False


@dataclass
class SettlementBatchResult:
    processed_count: int = 0
    successful_count: int = 0
    errors: list[dict[str, str]] = field(default_factory=list)
    auctions: list[AuctionSettlement] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "processed": self.processed_count,
            "successful": self.successful_count,
            "errors": self.errors,
            "auctions": [asdict(a) for a in self.auctions],
        }


async def find_ended_auctions(
    db: AsyncSession, now: datetime, auction_id: uuid.UUID | None = None
) -> list[uuid.UUID]:
    stmt = select(Auction.id).where(Auction.end_at < now, Auction.processed_at.is_(None))
    if auction_id is not None:
        stmt = stmt.where(Auction.id == auction_id)
    result = await db.execute(stmt.order_by(Auction.end_at))
    return list(result.scalars().all())


async def process_ended_auctions(
    db: AsyncSession,
    now: datetime | None = None,
    auction_id: uuid.UUID | None = None,
    *,
    locks: KeyedLocks | None = None,
) -> SettlementBatchResult:
    now = as_utc(now or utcnow())
    settings = await load_auction_settings(db)
    batch = SettlementBatchResult()

    for candidate_id in await find_ended_auctions(db, now, auction_id):
        batch.processed_count += 1
        try:
            async with AsyncExitStack() as stack:
                if locks is not None:
                    await stack.enter_async_context(locks.hold(("auction", candidate_id)))
                settlement = await settle_auction(db, candidate_id, now, settings)
        except Exception as exc:
            await db.rollback()
            logger.exception("Settlement failed for auction %s", candidate_id)
            batch.errors.append({"auction_id": str(candidate_id), "error": str(exc)})
            continue

        if settlement is None:
            continue
        batch.auctions.append(settlement)
        for message in settlement.errors:
            batch.errors.append({"auction_id": settlement.auction_id, "error": message})
        if settlement.processed:
            batch.successful_count += 1

    if batch.processed_count:
        logger.info(
            "Settlement run: %s processed, %s successful, %s errors",
            batch.processed_count,
            batch.successful_count,
            len(batch.errors),
        )
    return batch


async def settle_auction(
    db: AsyncSession,
    auction_id: uuid.UUID,
    now: datetime,
    settings: AuctionSettings,
) -> AuctionSettlement | None:
    """Settle one auction and commit. Returns None when it is not (or no longer) due."""
    auction = await load_auction(db, auction_id, for_update=True)
    if auction is None or auction.processed_at is not None or as_utc(auction.end_at) >= now:
        await db.rollback()
        return None

    listing = auction.listing
    result = AuctionSettlement(auction_id=str(auction.id))
    winner = winning_bid(await load_bids(db, auction.id))
    if winner is not None:
        result.winner_id = str(winner.bidder_id)
        result.winning_bid_cad = str(winner.amount_cad)

    deposits_result = await db.execute(
        select(DepositAuthorization)
        .where(DepositAuthorization.auction_id == auction.id)
        .order_by(DepositAuthorization.created_at)
        .execution_options(populate_existing=True)
    )
    deposits = list(deposits_result.scalars().all())

    released: list[DepositAuthorization] = []
    winner_deposit: DepositAuthorization | None = None
    for deposit in deposits:
        is_winner = winner is not None and deposit.user_id == winner.bidder_id
        if is_winner and deposit.status in ("authorized", "captured"):
            winner_deposit = deposit
        if deposit.status != "authorized":
            continue
        if deposit.admin_hold:
            result.held.append(str(deposit.id))
            continue
        try:
            if is_winner:
                await stripe_service.capture_hold(deposit.processor_reference)
                deposit.mark("captured", now=now)
                result.captured.append(str(deposit.id))
            else:
                await stripe_service.cancel_hold(deposit.processor_reference)
                deposit.mark("cancelled", now=now)
                result.cancelled.append(str(deposit.id))
                released.append(deposit)
        except ExternalProcessorError as exc:
            logger.warning("Settlement of deposit %s failed: %s", deposit.id, exc.message)
            result.errors.append(f"deposit {deposit.id}: {exc.message}")
            continue
        record_audit(
            db,
            action=f"deposit.{deposit.status}",
            reason="settlement",
            target_type="deposit",
            target_id=deposit.id,
            detail={"auction_id": str(auction.id), "amount_cad": str(deposit.amount_cad)},
        )

    order = None
    if winner is not None:
        order = await _ensure_order(db, auction, winner, winner_deposit, settings, now)
        if order is not None:
            result.order_id = str(order.id)
        elif winner_deposit is None and settings.deposit_required:
            logger.warning(
                "Auction %s winner %s holds no deposit; no order created",
                auction.id,
                winner.bidder_id,
            )

    result.outcome = "sold" if winner is not None else "no_bids"
    # Deposits under admin hold keep the auction open until an admin resolves them.
    if not result.errors and not result.held:
        auction.processed_at = now
        auction.outcome = result.outcome
        auction.updated_at = now
        result.processed = True
        record_audit(
            db,
            action=f"auction.{result.outcome}",
            reason="settlement",
            target_type="auction",
            target_id=auction.id,
            detail={
                "winner_id": result.winner_id,
                "winning_bid_cad": result.winning_bid_cad,
                "order_id": result.order_id,
                "captured": result.captured,
                "cancelled": result.cancelled,
                "held": result.held,
            },
        )
    await db.commit()

    for deposit in released:
        notify(
            "deposit_released",
            deposit.user_id,
            auction_id=auction.id,
            listing_title=listing.title,
            amount_cad=deposit.amount_cad,
        )
    if order is not None and result.processed:
        notify(
            "auction_won",
            order.buyer_id,
            auction_id=auction.id,
            listing_title=listing.title,
            winning_bid_cad=order.total_cad,
            remaining_balance_cad=order.remaining_balance_cad,
        )
    if result.processed:
        notify(
            "auction_sold" if result.outcome == "sold" else "auction_no_bids",
            listing.seller_id,
            auction_id=auction.id,
            listing_title=listing.title,
            winning_bid_cad=result.winning_bid_cad or "",
        )
    return result


async def _ensure_order(
    db: AsyncSession,
    auction: Auction,
    winner: Any,
    winner_deposit: DepositAuthorization | None,
    settings: AuctionSettings,
    now: datetime,
) -> Order | None:
    existing = await db.execute(select(Order).where(Order.auction_id == auction.id))
    order = existing.scalars().first()
    if order is not None:
        return order

    if winner_deposit is not None and winner_deposit.status == "captured":
        deposit_applied = Decimal(winner_deposit.amount_cad)
    elif winner_deposit is None and not settings.deposit_required:
        deposit_applied = Decimal("0.00")
    else:
        return None

    total = Decimal(winner.amount_cad)
    remaining = max(Decimal("0.00"), total - deposit_applied)
    paid = remaining == 0
    order = Order(
        auction_id=auction.id,
        listing_id=auction.listing_id,
        buyer_id=winner.bidder_id,
        seller_id=auction.listing.seller_id,
        total_cad=total,
        deposit_applied_cad=deposit_applied,
        remaining_balance_cad=remaining,
        status="paid" if paid else "pending_payment",
        paid_at=now if paid else None,
        created_at=now,
        updated_at=now,
    )
    db.add(order)
    await db.flush()
    record_audit(
        db,
        action="order.created",
        reason="settlement",
        target_type="order",
        target_id=order.id,
        detail={
            "auction_id": str(auction.id),
            "total_cad": str(total),
            "deposit_applied_cad": str(deposit_applied),
            "remaining_balance_cad": str(remaining),
        },
    )
    logger.info("Order %s created for auction %s (remaining %s)", order.id, auction.id, remaining)
    return order


async def get_settlement_status(db: AsyncSession, auction_id: uuid.UUID) -> dict[str, Any]:
    auction = await load_auction(db, auction_id)
    if auction is None:
        raise NotFoundError("Auction not found", code="auction_not_found")

    counts_result = await db.execute(
        select(DepositAuthorization.status, func.count())
        .where(DepositAuthorization.auction_id == auction_id)
        .group_by(DepositAuthorization.status)
    )
    deposit_counts = {status: int(count) for status, count in counts_result.all()}

    order_result = await db.execute(select(Order).where(Order.auction_id == auction_id))
    order = order_result.scalars().first()
    return {
        "auction_id": str(auction.id),
        "end_at": as_utc(auction.end_at).isoformat(),
        "processed": auction.processed_at is not None,
        "processed_at": as_utc(auction.processed_at).isoformat() if auction.processed_at else None,
        "outcome": auction.outcome,
        "deposits": deposit_counts,
        "order": None
        if order is None
        else {
            "id": str(order.id),
            "status": order.status,
            "total_cad": str(order.total_cad),
            "deposit_applied_cad": str(order.deposit_applied_cad),
            "remaining_balance_cad": str(order.remaining_balance_cad),
        },
    }
