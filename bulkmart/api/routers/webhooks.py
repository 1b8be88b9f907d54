# bulkmart/api/routers/webhooks.py
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import get_payment_adapter, get_session
from bulkmart.api.problem import raise_400
from bulkmart.core.audit import new_trace
from bulkmart.schemas.payment import WebhookAckOut
from bulkmart.services.payment_processor import WebhookSignatureError
from bulkmart.services.payment_reconciliation import PaymentReconciliationAdapter

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

logger = logging.getLogger("bulkmart.webhooks")


@router.post("/stripe", response_model=WebhookAckOut, operation_id="webhook_stripe")
async def stripe_webhook(
    request: Request,
    session: AsyncSession = Depends(get_session),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    """
    - 签名校验失败 → 400，不进入对账逻辑
    - 校验通过的事件（含重复 / 无匹配 / NOOP）一律 200，避免处理方重试风暴
    """
    payload = await request.body()
    try:
        event = adapter.processor.parse_webhook(payload, request.headers.get("stripe-signature"))
    except WebhookSignatureError as e:
        logger.warning("webhook rejected: %s", e)
        raise_400("invalid_signature", "回调签名无效")

    outcome = await adapter.handle_event(session, event, trace=new_trace(f"stripe:{event.event_type}"))
    return WebhookAckOut(event_id=outcome.event_id, outcome=outcome.outcome)
