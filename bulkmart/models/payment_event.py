# bulkmart/models/payment_event.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime


class PaymentEvent(Base):
    """支付回调去重表：按处理方的 event id 幂等（同一事件只处理一次）。"""

    __tablename__ = "payment_events"

    event_id: Mapped[str] = mapped_column(sa.String(255), primary_key=True)
    event_type: Mapped[str] = mapped_column(sa.String(64), nullable=False)
    payment_reference: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)
    reservation_id: Mapped[Optional[str]] = mapped_column(sa.String(36), nullable=True)
    outcome: Mapped[str] = mapped_column(sa.String(32), nullable=False, default="RECEIVED")
    received_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (sa.Index("ix_payment_events_reference", "payment_reference"),)

    def __repr__(self) -> str:
        return f"<PaymentEvent id={self.event_id} type={self.event_type} outcome={self.outcome}>"
