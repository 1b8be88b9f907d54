# bulkmart/utils/time.py
from __future__ import annotations

from datetime import datetime, timezone

UTC = timezone.utc


def utc_now() -> datetime:
    return datetime.now(UTC)


def as_utc(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    if dt.tzinfo is None:
        # 假定传入是 UTC naive（SQLite 读回的时间不带时区）
        return dt.replace(tzinfo=UTC)
    return dt.astimezone(UTC)
