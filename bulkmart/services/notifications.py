# bulkmart/services/notifications.py
from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Set

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.core.config import AppSettings, get_settings
from bulkmart.services._tx import defer_after_commit

logger = logging.getLogger("bulkmart.notifications")

RESERVATION_CREATED = "reservation.created"
RESERVATION_CONFIRMED = "reservation.confirmed"
RESERVATION_CANCELLED = "reservation.cancelled"
PICKUP_COMPLETED = "pickup.completed"
REFUND_PROCESSED = "refund.processed"
RATINGS_REVEALED = "ratings.revealed"


class NotificationSink(Protocol):
    async def send(self, event: str, payload: Dict[str, Any]) -> None: ...


class LoggingNotificationSink:
    """未配置通知服务时的默认实现：只写日志。"""

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        logger.info("[notify] %s %s", event, json.dumps(payload, ensure_ascii=False, default=str))


class HttpNotificationSink:
    """POST {event, payload} 到外部通知服务（邮件 / 短信由对方负责）。"""

    def __init__(self, url: str, *, timeout: float = 3.0) -> None:
        self.url = url
        self.timeout = timeout

    async def send(self, event: str, payload: Dict[str, Any]) -> None:
        body = json.loads(json.dumps({"event": event, "payload": payload}, default=str))
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            resp = await client.post(self.url, json=body)
            resp.raise_for_status()


def build_sink(settings: Optional[AppSettings] = None) -> NotificationSink:
    s = settings or get_settings()
    if s.NOTIFICATION_WEBHOOK_URL:
        return HttpNotificationSink(s.NOTIFICATION_WEBHOOK_URL, timeout=s.NOTIFICATION_TIMEOUT_SECONDS)
    return LoggingNotificationSink()


class Notifier:
    """
    fire-and-forget 通知：

    - notify() 只登记，真正发送发生在所属事务提交之后；事务回滚则不发送
    - 发送失败只记 WARNING，绝不影响已经提交的状态迁移
    - background=True：提交后用 asyncio.create_task 投递，调用方（HTTP 响应、
      处理方回调应答）不等待通知服务；drain() 等待尚未完成的投递
    """

    def __init__(self, sink: Optional[NotificationSink] = None, *, background: bool = False) -> None:
        self.sink = sink or LoggingNotificationSink()
        self.background = background
        self._tasks: Set[asyncio.Task] = set()

    def notify(self, session: AsyncSession, event: str, payload: Dict[str, Any]) -> None:
        async def _deliver() -> None:
            if self.background:
                task = asyncio.create_task(self.deliver(event, payload))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
            else:
                await self.deliver(event, payload)

        defer_after_commit(session, _deliver)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def drain(self) -> None:
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def deliver(self, event: str, payload: Dict[str, Any]) -> None:
        try:
            await self.sink.send(event, payload)
        except Exception as e:
            logger.warning("notification %s failed: %s", event, e)
