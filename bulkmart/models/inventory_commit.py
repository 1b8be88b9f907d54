# bulkmart/models/inventory_commit.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime


class InventoryCommit(Base):
    """
    库存提交幂等表：主键 = reservation_id

    - 一张 reservation 最多扣一次库存（重复 commit 命中主键即 NOOP）
    - restored_at 非空表示已回补，回补同样只发生一次
    """

    __tablename__ = "inventory_commits"

    reservation_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("reservations.id", ondelete="RESTRICT"),
        primary_key=True,
    )
    listing_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("listings.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )
    qty: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    committed_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)
    restored_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return (
            f"<InventoryCommit rid={self.reservation_id} listing={self.listing_id} "
            f"qty={self.qty} restored={self.restored_at is not None}>"
        )
