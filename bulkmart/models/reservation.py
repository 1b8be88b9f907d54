# bulkmart/models/reservation.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime
from bulkmart.models.enums import ReservationStatus


class Reservation(Base):
    """
    预约头：价格快照 + 取货凭证 + 状态机

    只允许三个写入方：
      - PaymentReconciliationAdapter（status + payment_reference）
      - PickupCredentialService（status + completed_at）
      - 外部清扫任务（超时 / 未到场）
    """

    __tablename__ = "reservations"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    listing_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("listings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    buyer_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    quantity_reserved: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    # 价格快照：创建时锁定，后续改价不影响在途订单
    unit_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    currency: Mapped[str] = mapped_column(sa.String(8), nullable=False, default="cad")

    status: Mapped[str] = mapped_column(
        sa.String(16), nullable=False, default=ReservationStatus.PENDING.value
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(sa.String(64), nullable=True)

    payment_reference: Mapped[Optional[str]] = mapped_column(sa.String(255), nullable=True)

    # 取货凭证：二维码哈希 + 6 位人工码，全局唯一
    qr_code_hash: Mapped[str] = mapped_column(sa.String(128), nullable=False, unique=True)
    verification_code: Mapped[str] = mapped_column(sa.String(6), nullable=False, unique=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    confirmed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    pickup_deadline: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("quantity_reserved >= 1", name="ck_reservations_qty_positive"),
        sa.Index("ix_reservations_status_expires", "status", "expires_at"),
        sa.Index("ix_reservations_status_pickup", "status", "pickup_deadline"),
        sa.Index("ix_reservations_payment_reference", "payment_reference"),
    )

    listing = relationship("Listing", lazy="raise")

    @property
    def balance_due(self) -> Decimal:
        return Decimal(self.total_price) - Decimal(self.deposit_amount)

    def __repr__(self) -> str:
        return (
            f"<Reservation id={self.id} listing={self.listing_id} "
            f"qty={self.quantity_reserved} status={self.status}>"
        )
