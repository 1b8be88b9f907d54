# bulkmart/models/user.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime


class User(Base):
    """
    用户（账号体系由外部服务维护）：

    本子系统只读联系方式，只写信誉聚合列；
    聚合值只由 BlindRatingCoordinator 基于“双方都已评价”的评分重算。
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    name: Mapped[Optional[str]] = mapped_column(sa.String(200), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(sa.String(320), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(sa.String(32), nullable=True)

    # 总体（兼容旧字段）
    rating_average: Mapped[Decimal] = mapped_column(
        sa.Numeric(4, 2), nullable=False, default=Decimal("0")
    )
    rating_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    # 作为买家 / 卖家分别收到的评价
    buyer_rating_average: Mapped[Decimal] = mapped_column(
        sa.Numeric(4, 2), nullable=False, default=Decimal("0")
    )
    buyer_rating_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)
    seller_rating_average: Mapped[Decimal] = mapped_column(
        sa.Numeric(4, 2), nullable=False, default=Decimal("0")
    )
    seller_rating_count: Mapped[int] = mapped_column(sa.Integer, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(), nullable=False, server_default=sa.func.now()
    )
    updated_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime(), nullable=True)

    def __repr__(self) -> str:
        return f"<User id={self.id} rating={self.rating_average}/{self.rating_count}>"
