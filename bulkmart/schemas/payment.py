# bulkmart/schemas/payment.py
from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Annotated, Optional

from pydantic import BaseModel, Field


class DepositCreateIn(BaseModel):
    reservation_id: Annotated[str, Field(min_length=1, max_length=36)]


class DepositOut(BaseModel):
    reservation_id: str
    payment_reference: str
    client_secret: Optional[str] = None
    amount: Decimal
    currency: str
    expires_at: datetime


class PaymentStatusOut(BaseModel):
    reservation_id: str
    reservation_status: str
    payment_status: str  # no_payment / requires_payment_method / processing / succeeded / canceled ...
    deposit_paid: bool
    amount: Decimal
    currency: str
    payment_reference: Optional[str] = None


class RefundIn(BaseModel):
    reason: Annotated[Optional[str], Field(max_length=64)] = None


class RefundOut(BaseModel):
    reservation_id: str
    outcome: str
    status: str
    reconciliation_required: bool = False
    refund_id: Optional[str] = None
    refund_status: Optional[str] = None


class WebhookAckOut(BaseModel):
    received: bool = True
    event_id: str
    outcome: str


class PaymentVerifyIn(BaseModel):
    payment_reference: Annotated[Optional[str], Field(max_length=255)] = None


class PaymentVerifyOut(BaseModel):
    reservation_id: str
    payment_reference: str
    payment_status: str
    outcome: str  # CONFIRMED / NOOP / ALERTED / RECONCILIATION_REQUIRED
    reservation_status: str
    reconciliation_required: bool = False
