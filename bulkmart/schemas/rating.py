# bulkmart/schemas/rating.py
from __future__ import annotations

from datetime import datetime
from typing import Annotated, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class RatingSubmitIn(BaseModel):
    reservation_id: Annotated[str, Field(min_length=1, max_length=36)]
    # 范围由服务层校验（InvalidScore），这里只要求是整数
    score: int
    comment: Annotated[Optional[str], Field(max_length=1000)] = None


class RatingOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    reservation_id: str
    rater_id: str
    ratee_id: str
    rating_type: str
    score: int
    comment: Optional[str] = None
    created_at: datetime


class RatingVisibilityOut(BaseModel):
    """counterpart 在双方都提交前为 null（不提供任何占位信息）。"""

    reservation_id: str
    own: Optional[RatingOut] = None
    counterpart: Optional[RatingOut] = None
    revealed: bool


class RatingEligibilityOut(BaseModel):
    reservation_id: str
    can_rate: bool
    reason: Optional[str] = None
    deadline: Optional[datetime] = None


class UserRatingsOut(BaseModel):
    user_id: str
    items: List[RatingOut]
    limit: int
    offset: int
