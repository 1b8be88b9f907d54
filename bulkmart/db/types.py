# bulkmart/db/types.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from sqlalchemy import DateTime
from sqlalchemy.types import TypeDecorator

from bulkmart.utils.time import as_utc


class UTCDateTime(TypeDecorator):
    """
    统一 UTC-aware 时间列：
    - 写入：naive 视为 UTC，aware 转成 UTC
    - 读出：SQLite 返回 naive，这里补回 tzinfo=UTC；PG timestamptz 原样转 UTC
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return as_utc(value)

    def process_result_value(self, value: Optional[datetime], dialect: Any) -> Optional[datetime]:
        return as_utc(value)
