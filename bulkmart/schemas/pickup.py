# bulkmart/schemas/pickup.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, Field


class RedeemCodeIn(BaseModel):
    code: Annotated[str, Field(min_length=1, max_length=32)]


class RedeemQrIn(BaseModel):
    qr_hash: Annotated[str, Field(min_length=1, max_length=128)]


class BuyerContactOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[str] = None
    phone: Optional[str] = None


class RedemptionOut(BaseModel):
    reservation_id: str
    listing_id: str
    quantity: int
    balance_due: Decimal
    currency: str
    completed_at: datetime
    buyer: BuyerContactOut
