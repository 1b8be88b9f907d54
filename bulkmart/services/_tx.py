# bulkmart/services/_tx.py
from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, List, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger("bulkmart.tx")

T = TypeVar("T")

_PENDING_KEY = "bulkmart.after_commit"


async def run_in_tx(session: AsyncSession, fn: Callable[[], Awaitable[T]]) -> T:
    """
    在“已有事务”和“无事务”两种情况之间统一处理：

    - session 已在事务中：直接执行 fn，提交由外层负责；
    - 否则用 session.begin() 包裹 fn，提交后冲刷 defer_after_commit 注册的回调，
      回滚时丢弃这些回调。
    """
    if session.in_transaction():
        return await fn()
    try:
        async with session.begin():
            result = await fn()
    except BaseException:
        discard_after_commit(session)
        raise
    await flush_after_commit(session)
    return result


def defer_after_commit(session: AsyncSession, fn: Callable[[], Awaitable[Any]]) -> None:
    """登记一个“提交后才执行”的回调（通知等 fire-and-forget 动作）。"""
    pending: List[Callable[[], Awaitable[Any]]] = session.info.setdefault(_PENDING_KEY, [])
    pending.append(fn)


def discard_after_commit(session: AsyncSession) -> None:
    session.info.pop(_PENDING_KEY, None)


async def flush_after_commit(session: AsyncSession) -> None:
    """
    执行并清空已登记的回调；单个回调失败只记日志。
    外层自行管理事务（例如 FastAPI 依赖提交后）时也可直接调用。
    """
    pending = session.info.pop(_PENDING_KEY, None) or []
    for fn in pending:
        try:
            await fn()
        except Exception:
            logger.exception("after-commit callback failed")
