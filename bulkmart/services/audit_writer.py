# bulkmart/services/audit_writer.py
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.models.audit_event import AuditEvent
from bulkmart.utils.time import utc_now

logger = logging.getLogger("bulkmart.audit")


class AuditEventWriter:
    """
    统一审计写入器：

    - 唯一职责：往 audit_events 表写一行，与业务写入处于同一事务。
    - 语义约定：
        * category = flow（RESERVATION / PAYMENT / PICKUP / RATING / ALERT）
        * ref      = 业务引用（reservation id / 支付事件 id）
        * meta     = json，至少包含 flow / event，其余字段任意扩展
        * trace_id = 链路 ID
    """

    @staticmethod
    async def write(
        session: AsyncSession,
        *,
        flow: str,
        event: str,
        ref: str,
        trace_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        payload: Dict[str, Any] = dict(meta or {})
        payload.setdefault("flow", flow)
        payload.setdefault("event", event)

        await session.execute(
            insert(AuditEvent).values(
                category=flow,
                ref=str(ref),
                meta=payload,
                trace_id=trace_id,
                created_at=utc_now(),
            )
        )
        logger.debug("audit %s/%s ref=%s trace=%s", flow, event, ref, trace_id)
