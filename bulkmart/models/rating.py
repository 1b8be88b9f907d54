# bulkmart/models/rating.py
from __future__ import annotations

from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.orm import Mapped, mapped_column

from bulkmart.db.base import Base
from bulkmart.db.types import UTCDateTime


class Rating(Base):
    """
    盲评：每个 (reservation, rater) 至多一条，只插入不修改不删除。
    双方都提交之前，对方不可见。
    """

    __tablename__ = "ratings"

    id: Mapped[str] = mapped_column(sa.String(36), primary_key=True)
    reservation_id: Mapped[str] = mapped_column(
        sa.String(36),
        sa.ForeignKey("reservations.id", ondelete="RESTRICT"),
        nullable=False,
    )
    rater_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    ratee_id: Mapped[str] = mapped_column(
        sa.String(36), sa.ForeignKey("users.id", ondelete="RESTRICT"), nullable=False
    )
    rating_type: Mapped[str] = mapped_column(sa.String(16), nullable=False)
    score: Mapped[int] = mapped_column(sa.Integer, nullable=False)
    comment: Mapped[Optional[str]] = mapped_column(sa.Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False)

    __table_args__ = (
        sa.UniqueConstraint("reservation_id", "rater_id", name="uq_ratings_reservation_rater"),
        sa.CheckConstraint("score >= 1 AND score <= 5", name="ck_ratings_score_range"),
        sa.Index("ix_ratings_ratee", "ratee_id", "rating_type"),
    )

    def __repr__(self) -> str:
        return f"<Rating rid={self.reservation_id} rater={self.rater_id} score={self.score}>"
