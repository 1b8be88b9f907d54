# bulkmart/models/listing.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column, relationship

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime
from bulkmart.models.enums import ListingStatus


class Listing(Base):
    """
    卖家挂牌（CRUD / 审核由外部 listing 服务负责）

    - quantity_available 只允许经 InventoryLedger 的原子语句变动
    - 0 <= quantity_available <= quantity_total 由 CHECK 约束兜底
    """

    __tablename__ = "listings"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    seller_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("users.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    title: Mapped[str] = mapped_column(sa.String(200), nullable=False)
    status: Mapped[str] = mapped_column(
        sa.String(32), nullable=False, default=ListingStatus.DRAFT.value
    )
    is_active: Mapped[bool] = mapped_column(sa.Boolean, nullable=False, default=True)

    price_per_unit: Mapped[Decimal] = mapped_column(sa.Numeric(12, 2), nullable=False)
    quantity_total: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    quantity_available: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    min_per_buyer: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)
    max_per_buyer: Mapped[Optional[int]] = mapped_column(sa.Integer, nullable=True)

    pickup_address: Mapped[str] = mapped_column(sa.Text, nullable=False, default="")
    pickup_instructions: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, server_default=sa.func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    __table_args__ = (
        sa.CheckConstraint("quantity_available >= 0", name="ck_listings_available_non_negative"),
        sa.CheckConstraint(
            "quantity_available <= quantity_total", name="ck_listings_available_le_total"
        ),
        sa.Index("ix_listings_status", "status"),
    )

    seller = relationship("User", lazy="raise")

    @property
    def is_purchasable(self) -> bool:
        return bool(self.is_active) and self.status == ListingStatus.PUBLISHED.value

    def __repr__(self) -> str:
        return (
            f"<Listing id={self.id} status={self.status} "
            f"available={self.quantity_available}/{self.quantity_total}>"
        )
