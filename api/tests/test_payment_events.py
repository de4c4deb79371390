"""Stripe webhook intake: signature/tolerance checks, de-duplication and transitions."""

from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from decimal import Decimal

import pytest
from api.errors import ValidationError
from api.services.payment_events import handle_stripe_webhook, process_event
from gavel.config import reset_settings_cache
from gavel.models import AuditLog, DepositAuthorization, Order, ProcessedWebhookEvent
from gavel.timeutils import utcnow
from sqlalchemy import select


def sign(event: dict, *, secret: str = "whsec_test", timestamp: int | None = None):
    body = json.dumps(event).encode()
    timestamp = int(time.time()) if timestamp is None else timestamp
    signature = hmac.new(
        secret.encode(), f"{timestamp}.{body.decode()}".encode(), hashlib.sha256
    ).hexdigest()
    return body, f"t={timestamp},v1={signature}"


def intent_event(event_type: str, intent_id: str, *, event_id: str | None = None, **intent):
    return {
        "id": event_id or f"evt_{uuid.uuid4().hex[:12]}",
        "type": event_type,
        "created": int(time.time()),
        "data": {"object": {"id": intent_id, "object": "payment_intent", **intent}},
    }


async def _deliver(db, event, **kwargs):
    body, header = sign(event, **kwargs)
    return await handle_stripe_webhook(db, body, header)


async def _reload(db, model, key):
    return await db.get(model, key, populate_existing=True)


@pytest.fixture
async def auction(make_auction):
    return await make_auction()


@pytest.mark.asyncio
async def test_capturable_update_authorizes_pending_deposit(db, auction, make_deposit):
    deposit = await make_deposit(auction, uuid.uuid4(), status="pending", reference="pi_100")
    event = intent_event(
        "payment_intent.amount_capturable_updated", "pi_100", status="requires_capture"
    )

    response = await _deliver(db, event)

    assert response == {"status": "ok", "outcome": "applied"}
    assert (await _reload(db, DepositAuthorization, deposit.id)).status == "authorized"
    record = (
        await db.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == event["id"])
        )
    ).scalars().one()
    assert record.outcome == "applied"
    assert record.source == "webhook"
    audit = (
        await db.execute(select(AuditLog).where(AuditLog.action == "deposit.authorized"))
    ).scalars().one()
    assert audit.reason == "webhook_sync"
    assert audit.detail["from"] == "pending"


@pytest.mark.asyncio
async def test_duplicate_event_is_applied_once(db, auction, make_deposit):
    deposit = await make_deposit(auction, uuid.uuid4(), status="authorized", reference="pi_200")
    event = intent_event("payment_intent.succeeded", "pi_200", status="succeeded")

    first = await _deliver(db, event)
    second = await _deliver(db, event)

    assert first["outcome"] == "applied"
    assert second == {"status": "duplicate_ignored"}
    assert (await _reload(db, DepositAuthorization, deposit.id)).status == "captured"
    audits = await db.execute(select(AuditLog).where(AuditLog.action == "deposit.captured"))
    assert len(audits.scalars().all()) == 1


@pytest.mark.asyncio
async def test_out_of_order_event_never_regresses(db, auction, make_deposit):
    deposit = await make_deposit(auction, uuid.uuid4(), status="captured", reference="pi_300")
    late = intent_event(
        "payment_intent.amount_capturable_updated", "pi_300", status="requires_capture"
    )

    response = await _deliver(db, late)

    assert response["outcome"] == "ignored_transition"
    assert (await _reload(db, DepositAuthorization, deposit.id)).status == "captured"


@pytest.mark.asyncio
async def test_failed_payment_records_reason(db, auction, make_deposit):
    deposit = await make_deposit(auction, uuid.uuid4(), status="pending", reference="pi_400")
    event = intent_event(
        "payment_intent.payment_failed",
        "pi_400",
        status="requires_payment_method",
        last_payment_error={"message": "Insufficient funds"},
    )

    await _deliver(db, event)

    refreshed = await _reload(db, DepositAuthorization, deposit.id)
    assert refreshed.status == "failed"
    assert refreshed.failure_reason == "Insufficient funds"


@pytest.mark.asyncio
async def test_matches_unreferenced_deposit_by_metadata(db, auction, make_deposit):
    deposit = await make_deposit(auction, uuid.uuid4(), status="pending")
    event = intent_event(
        "payment_intent.amount_capturable_updated",
        "pi_500",
        status="requires_capture",
        metadata={"deposit_id": str(deposit.id)},
    )

    response = await _deliver(db, event)

    assert response["outcome"] == "applied"
    refreshed = await _reload(db, DepositAuthorization, deposit.id)
    assert refreshed.processor_reference == "pi_500"
    assert refreshed.status == "authorized"


@pytest.mark.asyncio
async def test_order_payment_transitions(db, auction):
    order = Order(
        auction_id=auction.id,
        listing_id=auction.listing_id,
        buyer_id=uuid.uuid4(),
        seller_id=auction.listing.seller_id,
        total_cad=Decimal("1100.00"),
        deposit_applied_cad=Decimal("100.00"),
        remaining_balance_cad=Decimal("1000.00"),
        status="pending_payment",
        processor_reference="pi_order_1",
    )
    db.add(order)
    await db.commit()

    paid = await _deliver(db, intent_event("payment_intent.succeeded", "pi_order_1"))
    late_failure = await _deliver(
        db,
        intent_event(
            "payment_intent.payment_failed",
            "pi_order_1",
            last_payment_error={"message": "Card declined"},
        ),
    )

    assert paid["outcome"] == "applied"
    assert late_failure["outcome"] == "ignored_transition"
    refreshed = await _reload(db, Order, order.id)
    assert refreshed.status == "paid"
    assert refreshed.paid_at is not None
    assert refreshed.remaining_balance_cad == Decimal("1000.00")


@pytest.mark.asyncio
async def test_unmatched_and_unhandled_events_are_still_recorded(db):
    unmatched = await _deliver(db, intent_event("payment_intent.succeeded", "pi_unknown"))
    other = {
        "id": "evt_customer",
        "type": "customer.created",
        "data": {"object": {"id": "cus_1"}},
    }
    ignored = await _deliver(db, other)

    assert unmatched["outcome"] == "unmatched"
    assert ignored["outcome"] == "ignored_type"
    assert await _deliver(db, other) == {"status": "duplicate_ignored"}


@pytest.mark.asyncio
async def test_rejects_bad_signature(db):
    body, _ = sign(intent_event("payment_intent.succeeded", "pi_1"))
    _, forged = sign(intent_event("payment_intent.succeeded", "pi_1"), secret="whsec_other")

    with pytest.raises(ValidationError) as exc_info:
        await handle_stripe_webhook(db, body, forged)
    assert exc_info.value.code == "invalid_signature"


@pytest.mark.asyncio
async def test_rejects_stale_timestamp_before_verifying(db):
    old = int(time.time()) - 3600
    body, header = sign(intent_event("payment_intent.succeeded", "pi_1"), timestamp=old)

    with pytest.raises(ValidationError) as exc_info:
        await handle_stripe_webhook(db, body, header)
    assert exc_info.value.code == "stale_webhook"


@pytest.mark.asyncio
async def test_rejects_missing_timestamp(db):
    with pytest.raises(ValidationError) as exc_info:
        await handle_stripe_webhook(db, b"{}", "v1=abc")
    assert exc_info.value.code == "invalid_signature"


@pytest.mark.asyncio
async def test_rejects_payload_without_event_id(db):
    event = intent_event("payment_intent.succeeded", "pi_1")
    del event["id"]

    with pytest.raises(ValidationError) as exc_info:
        await _deliver(db, event)
    assert exc_info.value.code == "invalid_payload"


@pytest.mark.asyncio
async def test_unconfigured_secret_is_an_operational_error(db, monkeypatch):
    monkeypatch.setenv("STRIPE_WEBHOOK_SECRET", "")
    reset_settings_cache()
    body, header = sign(intent_event("payment_intent.succeeded", "pi_1"))

    with pytest.raises(RuntimeError):
        await handle_stripe_webhook(db, body, header)


@pytest.mark.asyncio
async def test_process_event_tags_source(db):
    event = intent_event("payment_intent.succeeded", "pi_sweep", event_id="evt_sweep")

    outcome = await process_event(db, event, now=utcnow(), source="sweep")
    await db.commit()

    assert outcome == "unmatched"
    record = (
        await db.execute(
            select(ProcessedWebhookEvent).where(ProcessedWebhookEvent.event_id == "evt_sweep")
        )
    ).scalars().one()
    assert record.source == "sweep"
    assert await process_event(db, event, now=utcnow()) == "duplicate"
