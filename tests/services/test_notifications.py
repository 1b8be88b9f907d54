# tests/services/test_notifications.py
from __future__ import annotations

import asyncio

import pytest

from bulkmart.core.config import AppSettings
from bulkmart.services._tx import run_in_tx
from bulkmart.services.notifications import (
    HttpNotificationSink,
    LoggingNotificationSink,
    Notifier,
    build_sink,
)
from tests.fakes import RecordingSink

pytestmark = pytest.mark.asyncio


async def test_notify_is_sent_only_after_commit(maker):
    sink = RecordingSink()
    notifier = Notifier(sink)

    async with maker() as s:

        async def _ok():
            notifier.notify(s, "reservation.created", {"reservation_id": "r-1"})
            assert sink.events == []

        await run_in_tx(s, _ok)

    assert sink.events == [("reservation.created", {"reservation_id": "r-1"})]


async def test_notify_is_dropped_on_rollback(maker):
    sink = RecordingSink()
    notifier = Notifier(sink)

    async with maker() as s:

        async def _boom():
            notifier.notify(s, "reservation.created", {"reservation_id": "r-2"})
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            await run_in_tx(s, _boom)

        # 同一 session 的下一个事务不会带出上一次的残留
        await run_in_tx(s, _noop)

    assert sink.events == []


async def _noop():
    return None


async def test_deliver_swallows_sink_errors(caplog):
    sink = RecordingSink()
    sink.fail = True
    await Notifier(sink).deliver("pickup.completed", {"reservation_id": "r-3"})
    assert "pickup.completed" in caplog.text


def test_build_sink_by_settings():
    assert isinstance(build_sink(AppSettings(NOTIFICATION_WEBHOOK_URL=None)), LoggingNotificationSink)
    sink = build_sink(AppSettings(NOTIFICATION_WEBHOOK_URL="http://notify.local/hook"))
    assert isinstance(sink, HttpNotificationSink)
    assert sink.url == "http://notify.local/hook"


class _SlowSink(RecordingSink):
    def __init__(self) -> None:
        super().__init__()
        self.release = asyncio.Event()

    async def send(self, event, payload) -> None:
        await self.release.wait()
        await super().send(event, payload)


async def test_background_delivery_does_not_block_commit(maker):
    """
    background=True：
      1) 事务提交后 run_in_tx 立即返回，通知服务还没响应
      2) 放行后 drain() 等到投递完成，任务集合清空
    """
    sink = _SlowSink()
    notifier = Notifier(sink, background=True)

    async with maker() as s:

        async def _ok():
            notifier.notify(s, "reservation.confirmed", {"reservation_id": "r-4"})

        await asyncio.wait_for(run_in_tx(s, _ok), timeout=1.0)

    assert sink.events == []
    assert notifier.pending == 1

    sink.release.set()
    await notifier.drain()

    assert sink.events == [("reservation.confirmed", {"reservation_id": "r-4"})]
    assert notifier.pending == 0
