# bulkmart/services/payment_processor.py
from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Protocol, TypeVar

import stripe

from bulkmart.core.config import AppSettings, get_settings
from bulkmart.obs.metrics import payment_processor_errors_total
from bulkmart.services.errors import PaymentProviderRejected, PaymentProviderUnavailable

logger = logging.getLogger("bulkmart.payments.processor")

T = TypeVar("T")

PAYMENT_SUCCEEDED = "payment_intent.succeeded"
PAYMENT_FAILED = "payment_intent.payment_failed"
PAYMENT_CANCELED = "payment_intent.canceled"
CHARGE_REFUNDED = "charge.refunded"
DISPUTE_CREATED = "charge.dispute.created"

CORRELATION_KEY = "reservation_id"


class WebhookSignatureError(Exception):
    """回调签名校验失败 / 负载无法解析：在进入对账逻辑之前直接拒绝。"""


@dataclass(frozen=True)
class PaymentIntentHandle:
    reference: str
    client_secret: Optional[str]
    amount_minor: int
    currency: str
    status: str


@dataclass(frozen=True)
class PaymentIntentStatus:
    reference: str
    status: str
    amount_minor: int
    currency: str
    correlation_id: Optional[str] = None


@dataclass(frozen=True)
class RefundReceipt:
    refund_id: str
    status: str
    amount_minor: int


@dataclass(frozen=True)
class WebhookEvent:
    """
    归一后的支付事件：

    - event_id          处理方事件 id（幂等键）
    - payment_reference payment intent id（charge / dispute 事件取其 payment_intent 字段）
    - correlation_id    创建 intent 时写入 metadata 的 reservation id
    """

    event_id: str
    event_type: str
    payment_reference: Optional[str]
    correlation_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


class PaymentProcessor(Protocol):
    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle: ...

    async def retrieve_payment_intent(self, reference: str) -> PaymentIntentStatus: ...

    async def refund(
        self,
        *,
        reference: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundReceipt: ...

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent: ...


def normalize_event(raw: Dict[str, Any]) -> WebhookEvent:
    """把处理方原始事件 JSON 归一成 WebhookEvent（纯函数）。"""
    event_id = str(raw.get("id") or "")
    event_type = str(raw.get("type") or "")
    obj = (raw.get("data") or {}).get("object") or {}
    metadata = obj.get("metadata") or {}

    if event_type.startswith("payment_intent."):
        reference = obj.get("id")
    else:
        # charge / dispute：payment_intent 可能是 id 字符串，也可能被展开成对象
        pi = obj.get("payment_intent")
        reference = pi.get("id") if isinstance(pi, dict) else pi

    return WebhookEvent(
        event_id=event_id,
        event_type=event_type,
        payment_reference=str(reference) if reference else None,
        correlation_id=metadata.get(CORRELATION_KEY),
        data={
            "object_id": obj.get("id"),
            "amount": obj.get("amount"),
            "currency": obj.get("currency"),
            "status": obj.get("status"),
            "reason": obj.get("reason") or (obj.get("last_payment_error") or {}).get("message"),
            "charge": obj.get("charge"),
        },
    )


class StripePaymentProcessor:
    """
    Stripe 适配：

    - SDK 是同步的，统一放到线程里执行，并用 asyncio.wait_for 设上限
    - 超时 / 网络 / 限流 / 5xx → PaymentProviderUnavailable（可重试）
    - 其它 Stripe 拒绝（参数、鉴权、卡错误）→ PaymentProviderRejected
    """

    def __init__(self, *, secret_key: str, webhook_secret: str, timeout: float = 10.0) -> None:
        self._secret_key = secret_key
        self._client: Any = None
        self.webhook_secret = webhook_secret
        self.timeout = timeout

    @property
    def client(self) -> Any:
        # 首次调用处理方时才创建，未配置密钥的部署也能处理不涉及支付的请求
        if self._client is None:
            self._client = stripe.StripeClient(self._secret_key)
        return self._client

    @client.setter
    def client(self, value: Any) -> None:
        self._client = value

    @classmethod
    def from_settings(cls, settings: Optional[AppSettings] = None) -> "StripePaymentProcessor":
        s = settings or get_settings()
        return cls(
            secret_key=s.STRIPE_SECRET_KEY,
            webhook_secret=s.STRIPE_WEBHOOK_SECRET,
            timeout=s.PAYMENT_TIMEOUT_SECONDS,
        )

    async def _call(self, op: str, fn: Callable[[], T]) -> T:
        try:
            return await asyncio.wait_for(asyncio.to_thread(fn), timeout=self.timeout)
        except asyncio.TimeoutError as e:
            payment_processor_errors_total.labels(op).inc()
            logger.warning("stripe %s timed out after %ss", op, self.timeout)
            raise PaymentProviderUnavailable(op=op) from e
        except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
            payment_processor_errors_total.labels(op).inc()
            logger.warning("stripe %s unavailable: %s", op, e)
            raise PaymentProviderUnavailable(op=op) from e
        except stripe.StripeError as e:
            payment_processor_errors_total.labels(op).inc()
            logger.error("stripe %s rejected: %s", op, e)
            raise PaymentProviderRejected(op=op) from e

    async def create_payment_intent(
        self,
        *,
        amount_minor: int,
        currency: str,
        correlation_id: str,
        idempotency_key: Optional[str] = None,
    ) -> PaymentIntentHandle:
        params: Dict[str, Any] = {
            "amount": int(amount_minor),
            "currency": currency.lower(),
            "metadata": {CORRELATION_KEY: correlation_id},
            "automatic_payment_methods": {"enabled": True},
            "description": f"Reservation deposit {correlation_id}",
        }
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        pi = await self._call(
            "create_payment_intent",
            lambda: self.client.payment_intents.create(params=params, options=options),
        )
        return PaymentIntentHandle(
            reference=pi.id,
            client_secret=pi.client_secret,
            amount_minor=int(pi.amount),
            currency=str(pi.currency),
            status=str(pi.status),
        )

    async def retrieve_payment_intent(self, reference: str) -> PaymentIntentStatus:
        pi = await self._call(
            "retrieve_payment_intent", lambda: self.client.payment_intents.retrieve(reference)
        )
        metadata = getattr(pi, "metadata", None) or {}
        return PaymentIntentStatus(
            reference=pi.id,
            status=str(pi.status),
            amount_minor=int(pi.amount),
            currency=str(pi.currency),
            correlation_id=metadata.get(CORRELATION_KEY),
        )

    async def refund(
        self,
        *,
        reference: str,
        amount_minor: Optional[int] = None,
        idempotency_key: Optional[str] = None,
    ) -> RefundReceipt:
        params: Dict[str, Any] = {"payment_intent": reference}
        if amount_minor is not None:
            params["amount"] = int(amount_minor)
        options: Dict[str, Any] = {}
        if idempotency_key:
            options["idempotency_key"] = idempotency_key

        rf = await self._call("refund", lambda: self.client.refunds.create(params=params, options=options))
        return RefundReceipt(refund_id=rf.id, status=str(rf.status), amount_minor=int(rf.amount))

    def parse_webhook(self, payload: bytes, signature: Optional[str]) -> WebhookEvent:
        if not signature or not self.webhook_secret:
            raise WebhookSignatureError("missing signature")
        try:
            stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        except stripe.SignatureVerificationError as e:
            raise WebhookSignatureError("invalid signature") from e
        except ValueError as e:
            raise WebhookSignatureError("invalid payload") from e
        return normalize_event(json.loads(payload))
