# bulkmart/services/alerts.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.obs.metrics import reconciliation_alerts_total
from bulkmart.services.audit_writer import AuditEventWriter

logger = logging.getLogger("bulkmart.alerts")

# 资金与库存不一致：已收定金但扣库存失败，需人工退款
INVENTORY_CONFLICT_AFTER_PAYMENT = "inventory_conflict_after_payment"
# 预约已终结（取消/未到场）却收到付款成功
PAYMENT_FOR_TERMINAL_RESERVATION = "payment_for_terminal_reservation"
# 已向处理方退款，但预约在退款期间被核销 / 已终结，状态没有随之取消
REFUND_FOR_NON_CONFIRMED_RESERVATION = "refund_for_non_confirmed_reservation"
# 拒付 / 争议，需要人工裁决
DISPUTE_CREATED = "dispute_created"


class ReconciliationAlerts:
    """人工对账告警：ERROR 日志 + audit_events(ALERT) + 计数器。"""

    @staticmethod
    async def raise_alert(
        session: AsyncSession,
        *,
        kind: str,
        ref: str,
        trace_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload = dict(meta or {})
        logger.error("RECONCILIATION_ALERT kind=%s ref=%s meta=%s", kind, ref, payload)
        reconciliation_alerts_total.labels(kind).inc()
        await AuditEventWriter.write(
            session,
            flow="ALERT",
            event=kind,
            ref=ref,
            trace_id=trace_id,
            meta=payload,
        )
