# bulkmart/models/audit_event.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime


class AuditEvent(Base):
    """审计流水：category=流程大类，ref=业务引用（reservation id / event id）"""

    __tablename__ = "audit_events"

    id: Mapped[int] = mapped_column(sa.BigInteger().with_variant(sa.Integer, "sqlite"), primary_key=True, autoincrement=True)
    category: Mapped[str] = mapped_column(sa.String(32), nullable=False)
    ref: Mapped[str] = mapped_column(sa.String(255), nullable=False)
    meta: Mapped[dict[str, Any]] = mapped_column(sa.JSON, nullable=False, default=dict)
    trace_id: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        sa.Index("ix_audit_events_ref", "ref"),
        sa.Index("ix_audit_events_trace_id", "trace_id"),
    )

    def __repr__(self) -> str:
        return f"<AuditEvent id={self.id} category={self.category} ref={self.ref}>"
