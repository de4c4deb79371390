"""Stripe SDK wrapper for deposit holds, captures and webhook verification.

The SDK is synchronous; every call runs in a worker thread under a bounded
timeout so a slow processor never stalls other requests. A timeout raises
:class:`ProcessorTimeoutError` and callers must leave local state pending for the
reconciliation sweep to resolve.
"""

from __future__ import annotations

import asyncio
import functools
import json
import logging
from collections.abc import Callable
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any

import stripe as stripe_sdk
from gavel.config import get_settings

from api.errors import ExternalProcessorError, ProcessorTimeoutError

logger = logging.getLogger(__name__)

PAYMENT_INTENT_EVENT_TYPES = (
    "payment_intent.succeeded",
    "payment_intent.payment_failed",
    "payment_intent.canceled",
    "payment_intent.amount_capturable_updated",
)


def _get_stripe_client(*, require_secret_key: bool = True):
    settings = get_settings()
    if require_secret_key and not settings.stripe_secret_key:
        raise RuntimeError("Stripe is not configured")
    if settings.stripe_secret_key:
        stripe_sdk.api_key = settings.stripe_secret_key
    return stripe_sdk


def _as_dict(obj: Any) -> Any:
    # SDK objects serialize to JSON via str(); services work with plain dicts.
    if obj is None or isinstance(obj, dict):
        return obj
    return json.loads(str(obj))


def to_minor_units(amount_cad: Decimal) -> int:
    return int((Decimal(amount_cad) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


async def _call_processor(
    operation: str,
    func: Callable[..., Any],
    *args: Any,
    reference: str | None = None,
    **kwargs: Any,
) -> Any:
    timeout = get_settings().stripe_timeout_seconds
    try:
        result = await asyncio.wait_for(
            asyncio.to_thread(functools.partial(func, *args, **kwargs)),
            timeout=timeout,
        )
    except TimeoutError as exc:
        logger.warning("Stripe %s timed out after %ss (ref=%s)", operation, timeout, reference)
        raise ProcessorTimeoutError(
            f"Payment processor did not answer {operation} in time",
            code=f"{operation}_timeout",
            reference=reference,
        ) from exc
    except stripe_sdk.StripeError as exc:
        message = getattr(exc, "user_message", None) or str(exc) or exc.__class__.__name__
        logger.warning("Stripe %s failed (ref=%s): %s", operation, reference, message)
        raise ExternalProcessorError(
            message,
            code=f"{operation}_failed",
            reference=reference,
        ) from exc
    return _as_dict(result)


async def create_deposit_hold(
    *,
    deposit_id: str,
    user_id: str,
    auction_id: str,
    amount_cad: Decimal,
    payment_method_id: str | None = None,
) -> dict[str, Any]:
    """Create a manual-capture PaymentIntent; idempotent per deposit id."""
    stripe_client = _get_stripe_client()
    settings = get_settings()
    payload: dict[str, Any] = {
        "amount": to_minor_units(amount_cad),
        "currency": settings.stripe_currency,
        "capture_method": "manual",
        "payment_method_types": ["card"],
        "metadata": {
            "type": "auction_deposit",
            "deposit_id": deposit_id,
            "user_id": user_id,
            "auction_id": auction_id,
        },
    }
    if payment_method_id:
        payload["payment_method"] = payment_method_id
        payload["confirm"] = True
    return await _call_processor(
        "authorize",
        stripe_client.PaymentIntent.create,
        idempotency_key=f"deposit:{deposit_id}",
        reference=deposit_id,
        **payload,
    )


async def capture_hold(reference: str) -> dict[str, Any]:
    stripe_client = _get_stripe_client()
    return await _call_processor(
        "capture",
        stripe_client.PaymentIntent.capture,
        reference,
        idempotency_key=f"capture:{reference}",
        reference=reference,
    )


async def cancel_hold(reference: str) -> dict[str, Any]:
    stripe_client = _get_stripe_client()
    return await _call_processor(
        "cancel",
        stripe_client.PaymentIntent.cancel,
        reference,
        idempotency_key=f"cancel:{reference}",
        reference=reference,
    )


async def retrieve_intent(reference: str) -> dict[str, Any]:
    stripe_client = _get_stripe_client()
    return await _call_processor(
        "retrieve",
        stripe_client.PaymentIntent.retrieve,
        reference,
        reference=reference,
    )


async def refund_capture(reference: str) -> dict[str, Any]:
    stripe_client = _get_stripe_client()
    return await _call_processor(
        "refund",
        stripe_client.Refund.create,
        payment_intent=reference,
        idempotency_key=f"refund:{reference}",
        reference=reference,
    )


async def list_recent_events(since: datetime, *, limit: int = 100) -> list[dict[str, Any]]:
    stripe_client = _get_stripe_client()
    events = await _call_processor(
        "list_events",
        stripe_client.Event.list,
        created={"gte": int(since.timestamp())},
        types=list(PAYMENT_INTENT_EVENT_TYPES),
        limit=limit,
    )
    return list(events.get("data") or [])


def signature_timestamp(sig_header: str) -> int | None:
    """Extract the ``t=`` element from a Stripe-Signature header."""
    for element in (sig_header or "").split(","):
        key, _, value = element.strip().partition("=")
        if key == "t":
            try:
                return int(value)
            except ValueError:
                return None
    return None


def verify_webhook_signature(payload: bytes, sig_header: str, *, tolerance: int) -> dict:
    """Verify Stripe webhook signature and return parsed event."""
    settings = get_settings()
    if not settings.stripe_webhook_secret:
        raise RuntimeError("Stripe webhook secret is not configured")
    stripe_client = _get_stripe_client(require_secret_key=False)
    stripe_client.Webhook.construct_event(
        payload, sig_header, settings.stripe_webhook_secret, tolerance=tolerance
    )
    return json.loads(payload)


def deposit_status_from_intent(intent: dict[str, Any]) -> str | None:
    """Map a PaymentIntent to the local deposit status it implies (None = still pending)."""
    status = str(intent.get("status") or "")
    if status == "requires_capture":
        return "authorized"
    if status == "succeeded":
        return "captured"
    if status == "canceled":
        return "cancelled"
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return "failed"
    return None


def order_status_from_intent(intent: dict[str, Any]) -> str | None:
    status = str(intent.get("status") or "")
    if status == "succeeded":
        return "paid"
    if status == "canceled":
        return "cancelled"
    if status == "requires_payment_method" and intent.get("last_payment_error"):
        return "failed"
    return None


def failure_message(intent: dict[str, Any]) -> str:
    error = intent.get("last_payment_error") or {}
    return str(error.get("message") or "Payment failed")
