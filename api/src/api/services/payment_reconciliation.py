"""Periodic payment reconciliation sweep.

Webhooks can be lost or arrive out of order, and processor calls can time out
after taking effect. The sweep compares local deposit and order state against
Stripe and corrects drift:

1. pending deposits: query the intent (or replay the idempotent create when no
   reference was recorded);
2. authorized deposits not touched for ``stale_authorization_minutes``;
3. holds older than ``authorization_max_age_days`` are cancelled and expired;
4. ``pending_payment`` orders with a processor reference;
5. recent PaymentIntent events that never reached the webhook endpoint.
"""

from __future__ import annotations

import logging
from contextlib import nullcontext
from datetime import datetime, timedelta
from typing import Any

from gavel.config import get_settings
from gavel.models import Auction, AuditLog, DepositAuthorization, Order
from gavel.timeutils import as_utc, from_unix, utcnow
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import ExternalProcessorError
from api.services import stripe_service
from api.services.audit import record_audit
from api.services.deposit_service import apply_intent_status
from api.services.keyed_locks import KeyedLocks
from api.services.payment_events import process_event, transition_order

logger = logging.getLogger(__name__)

PENDING_GRACE = timedelta(minutes=2)
# Leave very recent events to the webhook endpoint.
REPLAY_GRACE = timedelta(minutes=5)
RECONCILIATION_REASONS = ("payment_reconciliation", "webhook_sync", "deposit_validation")


class _Sweep:
    def __init__(self, db: AsyncSession, now: datetime, locks: KeyedLocks | None) -> None:
        self.db = db
        self.now = now
        self.locks = locks
        self.counts: dict[str, int] = {
            "pending_checked": 0,
            "pending_updated": 0,
            "stale_checked": 0,
            "stale_updated": 0,
            "released": 0,
            "expired": 0,
            "orders_checked": 0,
            "orders_updated": 0,
            "events_seen": 0,
            "events_replayed": 0,
            "failures": 0,
        }

    async def _deposits(self, *conditions) -> list[DepositAuthorization]:
        result = await self.db.execute(
            select(DepositAuthorization)
            .where(*conditions)
            .order_by(DepositAuthorization.created_at)
            .execution_options(populate_existing=True)
        )
        return list(result.scalars().all())

    def _audit(self, deposit: DepositAuthorization, previous: str, reason: str, **detail) -> None:
        record_audit(
            self.db,
            action=f"deposit.{deposit.status}",
            reason=reason,
            target_type="deposit",
            target_id=deposit.id,
            detail={"from": previous, "processor_reference": deposit.processor_reference, **detail},
        )

    async def _release_if_settled(self, deposit: DepositAuthorization) -> None:
        """Cancel a hold that became authorized after its auction already settled."""
        if deposit.status != "authorized" or deposit.admin_hold:
            return
        auction = await self.db.get(Auction, deposit.auction_id)
        if auction is None or auction.processed_at is None:
            return
        await stripe_service.cancel_hold(deposit.processor_reference)
        deposit.mark("cancelled", now=self.now)
        self._audit(deposit, "authorized", "payment_reconciliation", note="auction_settled")
        self.counts["released"] += 1

    async def validate_pending(self) -> None:
        deposits = await self._deposits(
            DepositAuthorization.status == "pending",
            DepositAuthorization.updated_at < self.now - PENDING_GRACE,
        )
        for deposit in deposits:
            self.counts["pending_checked"] += 1
            try:
                async with self._lock(deposit):
                    if deposit.processor_reference:
                        intent = await stripe_service.retrieve_intent(deposit.processor_reference)
                    else:
                        # Same idempotency key as the original call: returns the same intent.
                        intent = await stripe_service.create_deposit_hold(
                            deposit_id=str(deposit.id),
                            user_id=str(deposit.user_id),
                            auction_id=str(deposit.auction_id),
                            amount_cad=deposit.amount_cad,
                            payment_method_id=deposit.payment_method_id,
                        )
                        deposit.processor_reference = str(intent.get("id") or "") or None
                    previous = deposit.status
                    if apply_intent_status(deposit, intent, now=self.now):
                        self._audit(
                            deposit,
                            previous,
                            "deposit_validation",
                            processor_status=intent.get("status"),
                        )
                        self.counts["pending_updated"] += 1
                    await self._release_if_settled(deposit)
                    await self.db.commit()
            except ExternalProcessorError as exc:
                self.counts["failures"] += 1
                logger.warning("Pending deposit %s validation failed: %s", deposit.id, exc)

    async def validate_stale_authorized(self) -> None:
        settings = get_settings()
        cutoff = self.now - timedelta(minutes=settings.stale_authorization_minutes)
        deposits = await self._deposits(
            DepositAuthorization.status == "authorized",
            DepositAuthorization.updated_at < cutoff,
        )
        for deposit in deposits:
            self.counts["stale_checked"] += 1
            try:
                async with self._lock(deposit):
                    intent = await stripe_service.retrieve_intent(deposit.processor_reference)
                    previous = deposit.status
                    if apply_intent_status(deposit, intent, now=self.now):
                        self._audit(
                            deposit,
                            previous,
                            "deposit_validation",
                            processor_status=intent.get("status"),
                        )
                        self.counts["stale_updated"] += 1
                    else:
                        deposit.updated_at = self.now
                    await self._release_if_settled(deposit)
                    await self.db.commit()
            except ExternalProcessorError as exc:
                self.counts["failures"] += 1
                logger.warning("Authorized deposit %s validation failed: %s", deposit.id, exc)

    async def expire_old_authorizations(self) -> None:
        settings = get_settings()
        cutoff = self.now - timedelta(days=settings.authorization_max_age_days)
        deposits = await self._deposits(
            DepositAuthorization.status.in_(("pending", "authorized")),
            DepositAuthorization.admin_hold.is_(False),
            DepositAuthorization.created_at < cutoff,
        )
        for deposit in deposits:
            try:
                async with self._lock(deposit):
                    if deposit.processor_reference:
                        await stripe_service.cancel_hold(deposit.processor_reference)
                    previous = deposit.status
                    deposit.mark("expired", now=self.now, reason="authorization_expired")
                    self._audit(deposit, previous, "payment_reconciliation")
                    self.counts["expired"] += 1
                    await self.db.commit()
            except ExternalProcessorError as exc:
                self.counts["failures"] += 1
                logger.warning("Expiring deposit %s failed: %s", deposit.id, exc)

    async def reconcile_orders(self) -> None:
        result = await self.db.execute(
            select(Order).where(
                Order.status == "pending_payment",
                Order.processor_reference.is_not(None),
            )
        )
        for order in result.scalars().all():
            self.counts["orders_checked"] += 1
            try:
                intent = await stripe_service.retrieve_intent(order.processor_reference)
            except ExternalProcessorError as exc:
                self.counts["failures"] += 1
                logger.warning("Order %s reconciliation failed: %s", order.id, exc)
                continue
            target = stripe_service.order_status_from_intent(intent)
            if target is None:
                continue
            outcome = transition_order(
                self.db,
                order,
                target,
                now=self.now,
                reason="payment_reconciliation",
                failure=stripe_service.failure_message(intent) if target == "failed" else None,
                detail={"processor_status": intent.get("status")},
            )
            if outcome == "applied":
                self.counts["orders_updated"] += 1
        await self.db.commit()

    async def replay_missed_events(self) -> None:
        settings = get_settings()
        since = self.now - timedelta(hours=settings.event_replay_hours)
        try:
            events = await stripe_service.list_recent_events(since)
        except ExternalProcessorError as exc:
            self.counts["failures"] += 1
            logger.warning("Listing recent Stripe events failed: %s", exc)
            return

        for event in events:
            self.counts["events_seen"] += 1
            created = from_unix(event.get("created"))
            if created is not None and created > self.now - REPLAY_GRACE:
                continue
            outcome = await process_event(self.db, event, now=self.now, source="sweep")
            await self.db.commit()
            if outcome != "duplicate":
                self.counts["events_replayed"] += 1
                logger.info("Replayed missed event %s: %s", event.get("id"), outcome)

    def _lock(self, deposit: DepositAuthorization):
        if self.locks is None:
            return nullcontext()
        return self.locks.hold(("deposit", deposit.user_id, deposit.auction_id))


async def run_payment_reconciliation(
    db: AsyncSession,
    now: datetime | None = None,
    *,
    trigger: str = "manual",
    locks: KeyedLocks | None = None,
) -> dict[str, Any]:
    now = as_utc(now or utcnow())
    try:
        stripe_service._get_stripe_client()
    except RuntimeError as exc:
        summary = {
            "status": "skipped",
            "reason": str(exc),
            "trigger": trigger,
            "started_at": now.isoformat(),
        }
        record_audit(
            db,
            action="reconciliation.skipped",
            reason="payment_reconciliation",
            target_type="system",
            detail=summary,
        )
        await db.commit()
        return summary

    sweep = _Sweep(db, now, locks)
    errors: list[str] = []
    for step in (
        sweep.validate_pending,
        sweep.validate_stale_authorized,
        sweep.expire_old_authorizations,
        sweep.reconcile_orders,
        sweep.replay_missed_events,
    ):
        try:
            await step()
        except Exception as exc:
            await db.rollback()
            logger.exception("Reconciliation step %s failed", step.__name__)
            errors.append(f"{step.__name__}: {exc}")

    summary = {
        "status": "ok" if not errors else "partial",
        "trigger": trigger,
        "started_at": now.isoformat(),
        "finished_at": utcnow().isoformat(),
        **sweep.counts,
        "errors": errors,
    }
    record_audit(
        db,
        action="reconciliation.run",
        reason="payment_reconciliation",
        target_type="system",
        detail=summary,
    )
    await db.commit()
    logger.info("Payment reconciliation (%s): %s", trigger, summary)
    return summary


async def get_reconciliation_metrics(db: AsyncSession) -> dict[str, Any]:
    deposit_counts = await db.execute(
        select(DepositAuthorization.status, func.count()).group_by(DepositAuthorization.status)
    )
    order_counts = await db.execute(select(Order.status, func.count()).group_by(Order.status))
    recent = await db.execute(
        select(AuditLog)
        .where(AuditLog.reason.in_(RECONCILIATION_REASONS))
        .order_by(AuditLog.created_at.desc())
        .limit(10)
    )
    return {
        "deposits": {status: int(count) for status, count in deposit_counts.all()},
        "orders": {status: int(count) for status, count in order_counts.all()},
        "recent_actions": [
            {
                "action": row.action,
                "reason": row.reason,
                "target_type": row.target_type,
                "target_id": row.target_id,
                "created_at": as_utc(row.created_at).isoformat(),
            }
            for row in recent.scalars().all()
        ],
    }
