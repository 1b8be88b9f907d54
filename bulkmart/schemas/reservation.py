# bulkmart/schemas/reservation.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, ConfigDict, Field


class ReservationCreateIn(BaseModel):
    listing_id: Annotated[str, Field(min_length=1, max_length=36)]
    quantity: Annotated[int, Field(ge=1)]


class ReservationCancelIn(BaseModel):
    reason: Annotated[Optional[str], Field(max_length=64)] = None


class ReservationOut(BaseModel):
    """
    预约视图：
    - verification_code / qr_code_hash 只对买家（和管理员）返回，卖家侧为 None
    """

    model_config = ConfigDict(from_attributes=True)

    id: str
    listing_id: str
    buyer_id: str
    quantity_reserved: int
    unit_price: Decimal
    total_price: Decimal
    deposit_amount: Decimal
    currency: str
    status: str
    cancel_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    verification_code: Optional[str] = None
    qr_code_hash: Optional[str] = None
    created_at: datetime
    expires_at: datetime
    confirmed_at: Optional[datetime] = None
    pickup_deadline: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None


class TransitionOut(BaseModel):
    transition: str
    outcome: str  # APPLIED / NOOP / CONFLICT
    reconciliation_required: bool = False
    reservation: ReservationOut
