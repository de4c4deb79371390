"""Stripe wrapper: amount conversion, status mapping and error translation."""

from __future__ import annotations

import time
from decimal import Decimal

import pytest
import stripe
from api.errors import ExternalProcessorError, ProcessorTimeoutError
from api.services import stripe_service
from gavel.config import reset_settings_cache


def test_minor_unit_conversion():
    assert stripe_service.to_minor_units(Decimal("100.00")) == 10000
    assert stripe_service.to_minor_units(Decimal("0.015")) == 2


@pytest.mark.parametrize(
    ("header", "expected"),
    [
        ("t=1700000000,v1=abc", 1700000000),
        ("v1=abc, t=42", 42),
        ("v1=abc", None),
        ("t=soon,v1=abc", None),
        ("", None),
    ],
)
def test_signature_timestamp(header, expected):
    assert stripe_service.signature_timestamp(header) == expected


@pytest.mark.parametrize(
    ("intent", "deposit_status", "order_status"),
    [
        ({"status": "requires_capture"}, "authorized", None),
        ({"status": "succeeded"}, "captured", "paid"),
        ({"status": "canceled"}, "cancelled", "cancelled"),
        ({"status": "processing"}, None, None),
        ({"status": "requires_payment_method"}, None, None),
        (
            {"status": "requires_payment_method", "last_payment_error": {"message": "Declined"}},
            "failed",
            "failed",
        ),
    ],
)
def test_status_mapping(intent, deposit_status, order_status):
    assert stripe_service.deposit_status_from_intent(intent) == deposit_status
    assert stripe_service.order_status_from_intent(intent) == order_status


def test_failure_message_defaults():
    assert stripe_service.failure_message({}) == "Payment failed"
    assert stripe_service.failure_message({"last_payment_error": {"message": "Expired card"}}) == (
        "Expired card"
    )


def test_sdk_objects_become_plain_dicts():
    obj = stripe.StripeObject("pi_1")
    obj["status"] = "succeeded"
    converted = stripe_service._as_dict(obj)
    assert converted["id"] == "pi_1"
    assert converted["status"] == "succeeded"


def test_missing_secret_key_is_reported(monkeypatch):
    monkeypatch.setenv("STRIPE_SECRET_KEY", "")
    reset_settings_cache()
    with pytest.raises(RuntimeError):
        stripe_service._get_stripe_client()


@pytest.mark.asyncio
async def test_processor_errors_are_translated():
    def declined(**kwargs):
        raise stripe.StripeError("Your card was declined.")

    with pytest.raises(ExternalProcessorError) as exc_info:
        await stripe_service._call_processor("capture", declined, reference="pi_1")
    assert exc_info.value.code == "capture_failed"
    assert exc_info.value.message == "Your card was declined."
    assert exc_info.value.context["reference"] == "pi_1"


@pytest.mark.asyncio
async def test_slow_processor_times_out(monkeypatch):
    monkeypatch.setenv("STRIPE_TIMEOUT_SECONDS", "0.05")
    reset_settings_cache()

    def slow():
        time.sleep(0.3)
        return {"id": "pi_1"}

    with pytest.raises(ProcessorTimeoutError) as exc_info:
        await stripe_service._call_processor("authorize", slow)
    assert exc_info.value.code == "authorize_timeout"
    assert isinstance(exc_info.value, ExternalProcessorError)


@pytest.mark.asyncio
async def test_capture_and_cancel_go_through_the_client(fake_stripe):
    intent = fake_stripe._create(amount=100, currency="cad")
    await stripe_service.capture_hold(intent["id"])
    await stripe_service.cancel_hold(intent["id"])
    assert fake_stripe.intents[intent["id"]]["status"] == "canceled"
    assert [op for op, _ in fake_stripe.calls] == ["create", "capture", "cancel"]
