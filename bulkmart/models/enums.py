# bulkmart/models/enums.py
from __future__ import annotations

from enum import StrEnum


class ReservationStatus(StrEnum):
    """
    预约状态机：

    - PENDING    已创建，等待定金（只做可用量校验，不扣库存）
    - CONFIRMED  定金到账，库存已提交扣减，取货凭证生效
    - COMPLETED  卖家核销取货码（终态）
    - CANCELLED  买家/管理员取消、支付取消、超时未付、或管理员退款（终态）
    - NO_SHOW    确认后超过取货期限未核销（终态，不回补库存）
    """

    PENDING = "PENDING"
    CONFIRMED = "CONFIRMED"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    NO_SHOW = "NO_SHOW"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ReservationStatus.COMPLETED, ReservationStatus.CANCELLED, ReservationStatus.NO_SHOW}
)
ACTIVE_STATUSES = frozenset({ReservationStatus.PENDING, ReservationStatus.CONFIRMED})


class ListingStatus(StrEnum):
    DRAFT = "DRAFT"
    PENDING_REVIEW = "PENDING_REVIEW"
    PUBLISHED = "PUBLISHED"
    RESERVED = "RESERVED"
    COMPLETED = "COMPLETED"
    EXPIRED = "EXPIRED"
    CANCELLED = "CANCELLED"


class RatingType(StrEnum):
    """被评价方在这笔交易中的角色。"""

    AS_BUYER = "AS_BUYER"
    AS_SELLER = "AS_SELLER"


class CancelReason(StrEnum):
    BUYER_CANCELLED = "buyer_cancelled"
    ADMIN_CANCELLED = "admin_cancelled"
    PAYMENT_CANCELED = "payment_canceled"
    EXPIRED = "expired"
    INVENTORY_CONFLICT = "inventory_conflict"
    ADMIN_REFUND = "admin_refund"
