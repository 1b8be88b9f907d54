# tests/services/test_payment_processor.py
from __future__ import annotations

import hashlib
import hmac
import json
import time
from types import SimpleNamespace

import pytest
import stripe

from bulkmart.services.errors import PaymentProviderRejected, PaymentProviderUnavailable
from bulkmart.services.payment_processor import (
    StripePaymentProcessor,
    WebhookSignatureError,
    normalize_event,
)

WEBHOOK_SECRET = "whsec_unit_test"


def _signed(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    ts = int(time.time())
    mac = hmac.new(secret.encode(), f"{ts}.".encode() + payload, hashlib.sha256).hexdigest()
    return f"t={ts},v1={mac}"


def _processor(**kw) -> StripePaymentProcessor:
    return StripePaymentProcessor(secret_key="sk_test_unit", webhook_secret=WEBHOOK_SECRET, **kw)


# ---------------------------------------------------------------------------
# normalize_event
# ---------------------------------------------------------------------------
def test_normalize_payment_intent_event():
    ev = normalize_event(
        {
            "id": "evt_1",
            "type": "payment_intent.succeeded",
            "data": {
                "object": {
                    "id": "pi_1",
                    "amount": 188,
                    "currency": "cad",
                    "status": "succeeded",
                    "metadata": {"reservation_id": "r-1"},
                }
            },
        }
    )
    assert (ev.event_id, ev.event_type, ev.payment_reference, ev.correlation_id) == (
        "evt_1",
        "payment_intent.succeeded",
        "pi_1",
        "r-1",
    )
    assert ev.data["amount"] == 188


@pytest.mark.parametrize("pi", ["pi_2", {"id": "pi_2", "object": "payment_intent"}])
def test_normalize_charge_event_uses_payment_intent(pi):
    ev = normalize_event(
        {
            "id": "evt_2",
            "type": "charge.refunded",
            "data": {"object": {"id": "ch_2", "payment_intent": pi, "amount": 188}},
        }
    )
    assert ev.payment_reference == "pi_2"
    assert ev.correlation_id is None
    assert ev.data["object_id"] == "ch_2"


def test_normalize_failed_event_reason():
    ev = normalize_event(
        {
            "id": "evt_3",
            "type": "payment_intent.payment_failed",
            "data": {"object": {"id": "pi_3", "last_payment_error": {"message": "card declined"}}},
        }
    )
    assert ev.data["reason"] == "card declined"


# ---------------------------------------------------------------------------
# webhook 签名
# ---------------------------------------------------------------------------
def test_parse_webhook_accepts_valid_signature():
    payload = json.dumps(
        {
            "id": "evt_sig",
            "object": "event",
            "type": "payment_intent.succeeded",
            "data": {"object": {"id": "pi_sig", "object": "payment_intent", "metadata": {}}},
        }
    ).encode()

    ev = _processor().parse_webhook(payload, _signed(payload))

    assert ev.event_id == "evt_sig"
    assert ev.payment_reference == "pi_sig"


@pytest.mark.parametrize(
    "signature",
    [None, "", "t=1,v1=bogus", "garbage"],
)
def test_parse_webhook_rejects_bad_signature(signature):
    payload = b'{"id": "evt_x", "type": "payment_intent.succeeded", "data": {"object": {}}}'
    with pytest.raises(WebhookSignatureError):
        _processor().parse_webhook(payload, signature)


def test_parse_webhook_rejects_signature_from_other_secret():
    payload = b'{"id": "evt_x", "object": "event", "type": "payment_intent.succeeded", "data": {"object": {}}}'
    with pytest.raises(WebhookSignatureError):
        _processor().parse_webhook(payload, _signed(payload, secret="whsec_other"))


# ---------------------------------------------------------------------------
# API 调用与错误映射
# ---------------------------------------------------------------------------
@pytest.mark.asyncio
async def test_create_payment_intent_passes_idempotency_and_metadata():
    seen = {}

    def _create(params, options):
        seen["params"], seen["options"] = params, options
        return SimpleNamespace(
            id="pi_new", client_secret="pi_new_secret", amount=params["amount"], currency="cad", status="requires_payment_method"
        )

    proc = _processor()
    proc.client = SimpleNamespace(payment_intents=SimpleNamespace(create=_create))

    handle = await proc.create_payment_intent(
        amount_minor=188, currency="CAD", correlation_id="r-9", idempotency_key="deposit-r-9"
    )

    assert handle.reference == "pi_new" and handle.amount_minor == 188
    assert seen["params"]["currency"] == "cad"
    assert seen["params"]["metadata"] == {"reservation_id": "r-9"}
    assert seen["options"] == {"idempotency_key": "deposit-r-9"}


@pytest.mark.asyncio
async def test_refund_maps_result():
    def _create(params, options):
        assert params == {"payment_intent": "pi_1", "amount": 188}
        return SimpleNamespace(id="re_1", status="succeeded", amount=188)

    proc = _processor()
    proc.client = SimpleNamespace(refunds=SimpleNamespace(create=_create))

    receipt = await proc.refund(reference="pi_1", amount_minor=188, idempotency_key="refund-r-1")
    assert (receipt.refund_id, receipt.status, receipt.amount_minor) == ("re_1", "succeeded", 188)


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc, expected",
    [
        (stripe.APIConnectionError("network down"), PaymentProviderUnavailable),
        (stripe.RateLimitError("slow down"), PaymentProviderUnavailable),
        (stripe.APIError("upstream 500"), PaymentProviderUnavailable),
        (stripe.InvalidRequestError("bad amount", "amount"), PaymentProviderRejected),
        (stripe.AuthenticationError("bad key"), PaymentProviderRejected),
    ],
)
async def test_stripe_errors_are_mapped(exc, expected):
    def _boom(*args, **kwargs):
        raise exc

    proc = _processor()
    proc.client = SimpleNamespace(payment_intents=SimpleNamespace(retrieve=_boom))

    with pytest.raises(expected):
        await proc.retrieve_payment_intent("pi_1")


@pytest.mark.asyncio
async def test_slow_processor_times_out_as_unavailable():
    def _slow(*args, **kwargs):
        time.sleep(0.3)

    proc = _processor(timeout=0.05)
    proc.client = SimpleNamespace(payment_intents=SimpleNamespace(retrieve=_slow))

    with pytest.raises(PaymentProviderUnavailable):
        await proc.retrieve_payment_intent("pi_1")
