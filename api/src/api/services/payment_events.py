"""Stripe webhook intake: verify, de-duplicate and apply PaymentIntent outcomes.

Stripe is the authority over money movement and delivers events at least once and
out of order. Each event id is recorded in ``processed_webhook_events`` in the same
transaction as its effects, so an event is applied exactly once. Transitions that
would move a deposit or order backwards are ignored and recorded as such.
"""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any

import stripe as stripe_sdk
from gavel.config import get_settings
from gavel.models import DepositAuthorization, Order, ProcessedWebhookEvent
from gavel.timeutils import as_utc, utcnow
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import ValidationError
from api.services import stripe_service
from api.services.audit import record_audit

logger = logging.getLogger(__name__)

DEPOSIT_EVENT_TARGETS = {
    "payment_intent.succeeded": "captured",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "cancelled",
    "payment_intent.amount_capturable_updated": "authorized",
}

ORDER_EVENT_TARGETS = {
    "payment_intent.succeeded": "paid",
    "payment_intent.payment_failed": "failed",
    "payment_intent.canceled": "cancelled",
}

ORDER_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending_payment": frozenset({"paid", "failed", "cancelled"}),
    "failed": frozenset({"paid", "cancelled"}),
    "paid": frozenset(),
    "cancelled": frozenset(),
}


def _parse_uuid(value: Any) -> uuid.UUID | None:
    raw = str(value or "").strip()
    if not raw:
        return None
    try:
        return uuid.UUID(raw)
    except ValueError:
        return None


async def _register_event(
    db: AsyncSession,
    event_id: str,
    event_type: str,
    *,
    source: str,
) -> ProcessedWebhookEvent | None:
    """Persist the event id; return None if it was already processed."""
    existing = await db.execute(
        select(ProcessedWebhookEvent.id).where(ProcessedWebhookEvent.event_id == event_id)
    )
    if existing.scalars().first() is not None:
        return None

    record = ProcessedWebhookEvent(event_id=event_id, event_type=event_type, source=source)
    db.add(record)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        return None
    return record


async def _find_deposit(db: AsyncSession, intent: dict[str, Any]) -> DepositAuthorization | None:
    reference = str(intent.get("id") or "")
    if reference:
        result = await db.execute(
            select(DepositAuthorization).where(
                DepositAuthorization.processor_reference == reference
            )
        )
        deposit = result.scalars().first()
        if deposit is not None:
            return deposit
    # A hold whose create call timed out has no reference recorded yet.
    deposit_id = _parse_uuid((intent.get("metadata") or {}).get("deposit_id"))
    if deposit_id is None:
        return None
    deposit = await db.get(DepositAuthorization, deposit_id)
    if deposit is not None and not deposit.processor_reference and reference:
        deposit.processor_reference = reference
    return deposit


async def apply_intent_event(
    db: AsyncSession,
    event_type: str,
    intent: dict[str, Any],
    *,
    now: datetime,
    reason: str,
) -> str:
    """Apply one PaymentIntent event to the deposit or order it references."""
    if event_type not in DEPOSIT_EVENT_TARGETS:
        return "ignored_type"
    reference = str(intent.get("id") or "")

    deposit = await _find_deposit(db, intent)
    if deposit is not None:
        target = DEPOSIT_EVENT_TARGETS[event_type]
        if deposit.status == target:
            return "already_applied"
        previous = deposit.status
        failure = stripe_service.failure_message(intent) if target == "failed" else None
        if not deposit.mark(target, now=now, reason=failure):
            logger.info(
                "Ignoring %s for deposit %s in status %s", event_type, deposit.id, previous
            )
            return "ignored_transition"
        record_audit(
            db,
            action=f"deposit.{target}",
            reason=reason,
            target_type="deposit",
            target_id=deposit.id,
            detail={"from": previous, "event_type": event_type, "processor_reference": reference},
        )
        return "applied"

    if not reference:
        return "unmatched"
    result = await db.execute(select(Order).where(Order.processor_reference == reference))
    order = result.scalars().first()
    if order is None or event_type not in ORDER_EVENT_TARGETS:
        logger.info("No local record for %s (%s)", reference, event_type)
        return "unmatched"

    target = ORDER_EVENT_TARGETS[event_type]
    return transition_order(
        db,
        order,
        target,
        now=now,
        reason=reason,
        failure=stripe_service.failure_message(intent) if target == "failed" else None,
        detail={"event_type": event_type, "processor_reference": reference},
    )


def transition_order(
    db: AsyncSession,
    order: Order,
    target: str,
    *,
    now: datetime,
    reason: str,
    failure: str | None = None,
    detail: dict[str, Any] | None = None,
) -> str:
    if order.status == target:
        return "already_applied"
    if target not in ORDER_TRANSITIONS.get(order.status, frozenset()):
        logger.info("Ignoring %s for order %s in status %s", target, order.id, order.status)
        return "ignored_transition"
    previous = order.status
    order.status = target
    order.updated_at = now
    if target == "paid":
        order.paid_at = now
    elif target == "failed":
        order.failure_reason = failure
    record_audit(
        db,
        action=f"order.{target}",
        reason=reason,
        target_type="order",
        target_id=order.id,
        detail={"from": previous, **(detail or {})},
    )
    return "applied"


def _event_parts(event: dict[str, Any]) -> tuple[str, str, dict[str, Any]]:
    event_id = str(event.get("id", "")).strip()
    event_type = str(event.get("type", "")).strip()
    event_data = event.get("data")
    if (
        not event_id
        or not event_type
        or not isinstance(event_data, dict)
        or not isinstance(event_data.get("object"), dict)
    ):
        raise ValidationError("Invalid webhook payload", code="invalid_payload")
    return event_id, event_type, event_data["object"]


async def process_event(
    db: AsyncSession,
    event: dict[str, Any],
    *,
    now: datetime,
    source: str = "webhook",
) -> str:
    """Register and apply one event. Returns the outcome, or ``duplicate``."""
    event_id, event_type, intent = _event_parts(event)
    record = await _register_event(db, event_id, event_type, source=source)
    if record is None:
        return "duplicate"
    outcome = await apply_intent_event(db, event_type, intent, now=now, reason="webhook_sync")
    record.outcome = outcome
    record.processed_at = now
    return outcome


async def handle_stripe_webhook(
    db: AsyncSession,
    payload: bytes,
    sig_header: str,
    now: datetime | None = None,
) -> dict[str, str]:
    settings = get_settings()
    now = as_utc(now or utcnow())
    tolerance = settings.webhook_tolerance_seconds

    timestamp = stripe_service.signature_timestamp(sig_header)
    if timestamp is None:
        raise ValidationError("Missing webhook signature timestamp", code="invalid_signature")
    if abs(now.timestamp() - timestamp) > tolerance:
        logger.warning("Rejected webhook with timestamp %s (outside %ss)", timestamp, tolerance)
        raise ValidationError("Webhook timestamp outside tolerance", code="stale_webhook")

    try:
        event = stripe_service.verify_webhook_signature(payload, sig_header, tolerance=tolerance)
    except (ValueError, stripe_sdk.SignatureVerificationError) as exc:
        raise ValidationError("Invalid webhook signature", code="invalid_signature") from exc

    outcome = await process_event(db, event, now=now)
    await db.commit()
    if outcome == "duplicate":
        logger.info("Stripe duplicate webhook ignored: %s", event.get("id"))
        return {"status": "duplicate_ignored"}
    logger.info("Stripe webhook %s: %s", event.get("type"), outcome)
    return {"status": "ok", "outcome": outcome}
