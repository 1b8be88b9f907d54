# bulkmart/services/reservation_sweep.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.core.audit import new_trace
from bulkmart.services._tx import run_in_tx
from bulkmart.services.reservation_state import ReservationStateMachine

logger = logging.getLogger("bulkmart.sweep")


@dataclass
class SweepReport:
    expired: int = 0
    no_show: int = 0
    skipped: int = 0
    failed: int = 0

    def as_dict(self) -> dict:
        return {
            "expired": self.expired,
            "no_show": self.no_show,
            "skipped": self.skipped,
            "failed": self.failed,
        }


async def sweep_reservations(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    batch_size: int = 100,
    state_machine: Optional[ReservationStateMachine] = None,
) -> SweepReport:
    """
    扫描并处理到期预约。

    语义：
      - PENDING   且 expires_at < now       → expire（CANCELLED，不动库存）
      - CONFIRMED 且 pickup_deadline < now  → mark_no_show（NO_SHOW，不回补）
      - 候选集扫描是只读短事务；每个候选在自己的事务里做 CAS 迁移，
        与并发的付款回调竞争时，输的一方得到 NOOP（计入 skipped）
      - 单行迁移抛错（例如数据库错误）只回滚该行的事务，记日志计入 failed，
        继续处理后面的候选

    参数：
      now        : 基准时间，便于测试固定时间；None 时取状态机时钟
      batch_size : 单次扫描最多取多少个 id
    """
    sm = state_machine or ReservationStateMachine()
    now = now or sm.clock()
    trace = new_trace("sweep")
    report = SweepReport()

    seen: Set[str] = set()
    while True:
        ids = await run_in_tx(session, lambda: sm.find_expired(session, now=now, limit=batch_size))
        fresh = [rid for rid in ids if rid not in seen]
        if not fresh:
            break
        for rid in fresh:
            seen.add(rid)
            try:
                result = await sm.expire(session, reservation_id=rid, now=now, trace=trace)
            except Exception:
                logger.exception("sweep expire failed rid=%s", rid)
                report.failed += 1
                continue
            if result.applied:
                report.expired += 1
            else:
                report.skipped += 1
        if len(ids) < batch_size:
            break

    while True:
        ids = await run_in_tx(session, lambda: sm.find_no_show_due(session, now=now, limit=batch_size))
        fresh = [rid for rid in ids if rid not in seen]
        if not fresh:
            break
        for rid in fresh:
            seen.add(rid)
            try:
                result = await sm.mark_no_show(session, reservation_id=rid, now=now, trace=trace)
            except Exception:
                logger.exception("sweep no-show failed rid=%s", rid)
                report.failed += 1
                continue
            if result.applied:
                report.no_show += 1
            else:
                report.skipped += 1
        if len(ids) < batch_size:
            break

    logger.info("sweep done at %s: %s", now.isoformat(), report.as_dict())
    return report
