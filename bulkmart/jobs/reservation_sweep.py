# bulkmart/jobs/reservation_sweep.py
"""
预约清扫 Job（外部调度器调用）

目标：
  - PENDING 超过付款窗口 → CANCELLED(expired)
  - CONFIRMED 超过取货期限 → NO_SHOW
  - 并发安全 & 幂等由 ReservationStateMachine 的 CAS 迁移保证

用法：
  - 本地/生产均可使用：
        python -m bulkmart.jobs.reservation_sweep
  - 也可以由 HTTP 触发：POST /internal/sweep（Bearer CRON_SECRET）
"""

from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

from bulkmart.core.config import get_settings, policy_from_settings
from bulkmart.core.logging import setup_logging
from bulkmart.db.engine import create_async_engine_safe
from bulkmart.db.session import normalize_async_dsn
from bulkmart.services.notifications import Notifier, build_sink
from bulkmart.services.reservation_state import ReservationStateMachine
from bulkmart.services.reservation_sweep import sweep_reservations

logger = logging.getLogger("bulkmart.jobs.sweep")


async def main() -> None:
    """
    独立运行入口：

      - 连接与应用相同的 DATABASE_URL（NullPool，跑完即走）；
      - 调用 sweep_reservations；
      - 打印处理数量。
    """
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)

    engine = create_async_engine_safe(normalize_async_dsn(settings.DATABASE_URL), poolclass=NullPool)
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    sm = ReservationStateMachine(
        policy=policy_from_settings(settings),
        notifier=Notifier(build_sink(settings)),
    )

    try:
        async with maker() as session:
            report = await sweep_reservations(
                session,
                batch_size=settings.SWEEP_BATCH_SIZE,
                state_machine=sm,
            )
            print(
                f"[Sweep] expired={report.expired} no_show={report.no_show} "
                f"skipped={report.skipped} failed={report.failed} (batch_size={settings.SWEEP_BATCH_SIZE})"
            )
    finally:
        await engine.dispose()


if __name__ == "__main__":
    asyncio.run(main())
