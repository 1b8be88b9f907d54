# tests/fakes.py
from __future__ import annotations

import itertools
import json
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from bulkmart.services.errors import PaymentProviderRejected
from bulkmart.services.payment_processor import (
    PaymentIntentHandle,
    PaymentIntentStatus,
    RefundReceipt,
    WebhookEvent,
    WebhookSignatureError,
    normalize_event,
)

VALID_SIGNATURE = "t=1,v1=valid"


class FakeClock:
    """可手动推进的 UTC 时钟。"""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2026, 3, 2, 15, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingSink:
    """记录所有通知；fail=True 时模拟通知服务不可用。"""

    def __init__(self) -> None:
        self.events: List[Tuple[str, Dict[str, Any]]] = []
        self.fail = False

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        if self.fail:
            raise RuntimeError("notification service down")
        self.events.append((event, payload))

    def names(self) -> List[str]:
        return [name for name, _ in self.events]

    def of(self, event: str) -> List[Dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


class FakePaymentProcessor:
    """内存版支付处理方：按幂等键复用 intent / refund。"""

    def __init__(self) -> None:
        self._seq = itertools.count(1)
        self.intents: Dict[str, Dict[str, Any]] = {}
        self.refunds: List[Dict[str, Any]] = []
        self._by_key: Dict[str, Any] = {}
        self.fail_with: Optional[Exception] = None

    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key and idempotency_key in self._by_key:
            ref = self._by_key[idempotency_key]
        else:
            ref = f"pi_test_{next(self._seq)}"
            self.intents[ref] = {
                "amount": amount_minor,
                "currency": currency,
                "correlation_id": correlation_id,
                "status": "requires_payment_method",
            }
            if idempotency_key:
                self._by_key[idempotency_key] = ref
        intent = self.intents[ref]
        return PaymentIntentHandle(
            reference=ref,
            client_secret=f"{ref}_secret",
            amount_minor=intent["amount"],
            currency=intent["currency"],
            status=intent["status"],
        )

    async def retrieve_payment_intent(self, reference: str) -> PaymentIntentStatus:
        if self.fail_with is not None:
            raise self.fail_with
        intent = self.intents.get(reference)
        if intent is None:
            raise PaymentProviderRejected(op="retrieve_payment_intent")
        return PaymentIntentStatus(
            reference=reference,
            status=intent["status"],
            amount_minor=intent["amount"],
            currency=intent["currency"],
            correlation_id=intent["correlation_id"],
        )

    async def refund(
        self,
        *,
        reference: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundReceipt:
        if self.fail_with is not None:
            raise self.fail_with
        if idempotency_key and idempotency_key in self._by_key:
            return self._by_key[idempotency_key]
        receipt = RefundReceipt(
            refund_id=f"re_test_{next(self._seq)}",
            status="succeeded",
            amount_minor=amount_minor if amount_minor is not None else self.intents[reference]["amount"],
        )
        self.refunds.append({"reference": reference, "amount_minor": receipt.amount_minor})
        if idempotency_key:
            self._by_key[idempotency_key] = receipt
        return receipt

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if signature != VALID_SIGNATURE:
            raise WebhookSignatureError("invalid signature")
        return normalize_event(json.loads(payload))

    def mark(self, reference: str, status: str) -> None:
        self.intents[reference]["status"] = status


def stripe_event(
    event_id: str,
    event_type: str,
    *,
    reference: Optional[str],
    reservation_id: Optional[str] = None,
    **obj: Any,
) -> Dict[str, Any]:
    """构造与处理方同形的事件 JSON。"""
    metadata = {"reservation_id": reservation_id} if reservation_id else {}
    if event_type.startswith("payment_intent."):
        body = {"id": reference, "object": "payment_intent", "metadata": metadata, **obj}
    else:
        body = {"id": obj.pop("object_id", "ch_test"), "payment_intent": reference, "metadata": metadata, **obj}
    return {"id": event_id, "type": event_type, "data": {"object": body}}
