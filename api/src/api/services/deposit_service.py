"""Deposit authorization: manual-capture holds that gate bidding on an auction.

Authorization is two-phase. A local ``pending`` row is committed first, then the
hold is created at Stripe with an idempotency key derived from the row id. If
Stripe times out the row stays pending and the reconciliation sweep retries the
create with the same key, so a retry can never produce a second hold.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any

from gavel.models import DepositAuthorization, Listing
from gavel.models.deposit_authorization import DEPOSIT_BIDDABLE_STATUSES, DEPOSIT_OPEN_STATUSES
from gavel.services.auction_settings import AuctionSettings, load_auction_settings
from gavel.services.auction_state import round_cents, winning_bid
from gavel.timeutils import as_utc, utcnow
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import (
    ExternalProcessorError,
    ForbiddenError,
    NotFoundError,
    PersistenceError,
    ProcessorTimeoutError,
    StateConflictError,
)
from api.services import stripe_service
from api.services.auction_lookup import load_auction, load_bids
from api.services.audit import record_audit
from api.services.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)

_REQUIRES_ACTION_STATUSES = {"requires_action", "requires_confirmation", "requires_payment_method"}


@dataclass
class DepositAuthorizationResult:
    deposit_id: uuid.UUID
    processor_reference: str | None
    client_secret: str | None
    amount_cad: Decimal
    status: str
    requires_action: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "deposit_id": str(self.deposit_id),
            "processor_reference": self.processor_reference,
            "client_secret": self.client_secret,
            "amount_cad": str(self.amount_cad),
            "status": self.status,
            "requires_action": self.requires_action,
        }


def calculate_deposit_amount(listing: Listing, settings: AuctionSettings) -> Decimal:
    """Deposit owed for a listing: percent of buy-now (or price) or a flat amount, floored."""
    base = Decimal(listing.buy_now_cad if listing.buy_now_cad is not None else listing.price_cad)
    if settings.deposit_strategy == "flat":
        amount = Decimal(settings.deposit_flat_amount)
    else:
        amount = base * Decimal(settings.deposit_percent)
    return round_cents(max(amount, Decimal(settings.deposit_minimum_cad)))


async def find_open_deposit(
    db: AsyncSession, user_id: uuid.UUID, auction_id: uuid.UUID
) -> DepositAuthorization | None:
    result = await db.execute(
        select(DepositAuthorization)
        .where(
            DepositAuthorization.user_id == user_id,
            DepositAuthorization.auction_id == auction_id,
            DepositAuthorization.status.in_(DEPOSIT_OPEN_STATUSES),
        )
        .execution_options(populate_existing=True)
    )
    return result.scalars().first()


async def check_deposit_authorization(
    db: AsyncSession, user_id: uuid.UUID, auction_id: uuid.UUID
) -> bool:
    result = await db.execute(
        select(DepositAuthorization.id).where(
            DepositAuthorization.user_id == user_id,
            DepositAuthorization.auction_id == auction_id,
            DepositAuthorization.status.in_(DEPOSIT_BIDDABLE_STATUSES),
        )
    )
    return result.first() is not None


async def get_deposit_status(
    db: AsyncSession, user_id: uuid.UUID, auction_id: uuid.UUID
) -> dict[str, Any]:
    result = await db.execute(
        select(DepositAuthorization)
        .where(
            DepositAuthorization.user_id == user_id,
            DepositAuthorization.auction_id == auction_id,
        )
        .order_by(DepositAuthorization.created_at.desc())
        .limit(1)
    )
    deposit = result.scalars().first()
    if deposit is None:
        return {"has_deposit": False, "authorized": False}
    return {
        "has_deposit": True,
        "authorized": deposit.status in DEPOSIT_BIDDABLE_STATUSES,
        "status": deposit.status,
        "amount_cad": str(deposit.amount_cad),
        "deposit_id": str(deposit.id),
    }


def _result(deposit: DepositAuthorization, intent: dict[str, Any] | None = None):
    client_secret = intent.get("client_secret") if intent else None
    intent_status = str(intent.get("status") or "") if intent else ""
    requires_action = deposit.status == "pending" and intent_status in _REQUIRES_ACTION_STATUSES
    return DepositAuthorizationResult(
        deposit_id=deposit.id,
        processor_reference=deposit.processor_reference,
        client_secret=client_secret if deposit.status == "pending" else None,
        amount_cad=Decimal(deposit.amount_cad),
        status=deposit.status,
        requires_action=requires_action,
    )


def apply_intent_status(
    deposit: DepositAuthorization, intent: dict[str, Any], *, now: datetime
) -> bool:
    """Move a deposit to the state its PaymentIntent implies; False when nothing changed."""
    target = stripe_service.deposit_status_from_intent(intent)
    if target is None or target == deposit.status:
        return False
    reason = stripe_service.failure_message(intent) if target == "failed" else None
    return deposit.mark(target, now=now, reason=reason)


async def authorize_deposit(
    db: AsyncSession,
    locks: KeyedLocks,
    user_id: uuid.UUID,
    auction_id: uuid.UUID,
    payment_method_id: str | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> DepositAuthorizationResult:
    async with locks.hold(("deposit", user_id, auction_id)):
        settings = await load_auction_settings(db)
        auction = await load_auction(db, auction_id)
        if auction is None:
            raise NotFoundError("Auction not found", code="auction_not_found")
        now = as_utc(clock())
        if auction.processed_at is not None or now >= as_utc(auction.end_at):
            raise StateConflictError("Auction has ended", code="auction_ended")
        if auction.listing.seller_id == user_id:
            raise ForbiddenError(
                "Sellers cannot place a deposit on their own auction", code="self_bid"
            )

        deposit = await find_open_deposit(db, user_id, auction_id)
        if deposit is not None:
            if deposit.status == "authorized":
                return _result(deposit)
            if deposit.processor_reference:
                intent = await stripe_service.retrieve_intent(deposit.processor_reference)
                if apply_intent_status(deposit, intent, now=now):
                    record_audit(
                        db,
                        action=f"deposit.{deposit.status}",
                        reason="deposit_authorization",
                        target_type="deposit",
                        target_id=deposit.id,
                    )
                    await db.commit()
                return _result(deposit, intent)
            # Pending without a reference: an earlier create timed out. Replay it with
            # the payment method it was first sent with.
            if payment_method_id and payment_method_id != deposit.payment_method_id:
                logger.info(
                    "Deposit %s retry ignores new payment method; replaying the original",
                    deposit.id,
                )
            return await _create_hold(db, deposit, clock)

        deposit = DepositAuthorization(
            user_id=user_id,
            auction_id=auction_id,
            amount_cad=calculate_deposit_amount(auction.listing, settings),
            payment_method_id=payment_method_id,
            status="pending",
            created_at=now,
            updated_at=now,
        )
        db.add(deposit)
        try:
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await find_open_deposit(db, user_id, auction_id)
            if existing is None:
                raise
            logger.info("Deposit for user %s auction %s already open", user_id, auction_id)
            return _result(existing)

        return await _create_hold(db, deposit, clock)


async def _create_hold(
    db: AsyncSession,
    deposit: DepositAuthorization,
    clock: Callable[[], datetime],
) -> DepositAuthorizationResult:
    deposit_id = deposit.id
    try:
        intent = await stripe_service.create_deposit_hold(
            deposit_id=str(deposit.id),
            user_id=str(deposit.user_id),
            auction_id=str(deposit.auction_id),
            amount_cad=Decimal(deposit.amount_cad),
            payment_method_id=deposit.payment_method_id,
        )
    except ProcessorTimeoutError:
        logger.warning("Deposit %s left pending after processor timeout", deposit_id)
        raise
    except ExternalProcessorError as exc:
        deposit.mark("failed", now=as_utc(clock()), reason=exc.message)
        record_audit(
            db,
            action="deposit.failed",
            reason="deposit_authorization",
            target_type="deposit",
            target_id=deposit_id,
            detail={"error": exc.message},
        )
        await db.commit()
        raise

    reference = str(intent.get("id") or "")
    try:
        deposit.processor_reference = reference or None
        deposit.updated_at = as_utc(clock())
        apply_intent_status(deposit, intent, now=as_utc(clock()))
        record_audit(
            db,
            action=f"deposit.{deposit.status}",
            reason="deposit_authorization",
            target_type="deposit",
            target_id=deposit_id,
            detail={"processor_reference": reference, "amount_cad": str(deposit.amount_cad)},
        )
        await db.commit()
    except SQLAlchemyError as exc:
        await db.rollback()
        logger.exception("Failed to record hold %s for deposit %s", reference, deposit_id)
        if reference:
            try:
                await stripe_service.cancel_hold(reference)
            except ExternalProcessorError:
                logger.error("Compensating cancel failed for hold %s", reference)
        raise PersistenceError(
            "Deposit could not be recorded; the hold has been released",
            code="deposit_not_recorded",
            deposit_id=deposit_id,
        ) from exc

    if deposit.status == "failed":
        raise ExternalProcessorError(
            deposit.failure_reason or "Deposit authorization failed",
            code="authorize_failed",
            deposit_id=deposit_id,
        )
    logger.info("Deposit %s is %s (%s)", deposit_id, deposit.status, reference)
    return _result(deposit, intent)


async def cancel_user_deposit(
    db: AsyncSession,
    locks: KeyedLocks,
    user_id: uuid.UUID,
    deposit_id: uuid.UUID,
    clock: Callable[[], datetime] = utcnow,
) -> DepositAuthorization:
    """Release a bidder's own hold before the auction ends."""
    deposit = await db.get(DepositAuthorization, deposit_id)
    if deposit is None:
        raise NotFoundError("Deposit not found", code="deposit_not_found")
    if deposit.user_id != user_id:
        raise ForbiddenError("Deposit belongs to another user", code="not_owner")

    # Auction lock first: a bid from this user must not land between the leader
    # check and the release.
    async with (
        locks.hold(("auction", deposit.auction_id)),
        locks.hold(("deposit", deposit.user_id, deposit.auction_id)),
    ):
        await db.refresh(deposit)
        auction = await load_auction(db, deposit.auction_id)
        now = as_utc(clock())
        if auction is not None and now >= as_utc(auction.end_at):
            raise StateConflictError("Auction has ended", code="auction_ended")
        leader = winning_bid(await load_bids(db, deposit.auction_id))
        if leader is not None and leader.bidder_id == user_id:
            raise StateConflictError(
                "The leading bidder cannot withdraw their deposit", code="leading_bidder"
            )
        if deposit.admin_hold:
            raise StateConflictError("Deposit is under review", code="deposit_on_hold")
        if deposit.status != "authorized" or not deposit.processor_reference:
            raise StateConflictError(
                "Only authorized deposits can be cancelled", code="deposit_not_cancellable"
            )

        await stripe_service.cancel_hold(deposit.processor_reference)
        deposit.mark("cancelled", now=now)
        record_audit(
            db,
            action="deposit.cancelled",
            reason="deposit_authorization",
            target_type="deposit",
            target_id=deposit.id,
            actor_id=user_id,
        )
        await db.commit()
    logger.info("Deposit %s cancelled by user %s", deposit.id, user_id)
    return deposit
