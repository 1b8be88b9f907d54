# bulkmart/services/errors.py
from __future__ import annotations

from typing import Any, Dict, Optional

# 错误类别（对应 HTTP 层的处理方式）
VALIDATION = "validation"
NOT_FOUND = "not_found"
FORBIDDEN = "forbidden"
CONFLICT = "conflict"
EXTERNAL = "external"


class ReservationError(Exception):
    """
    预约子系统领域异常基类：

    - error_code : 稳定的机器可读错误码（前端据此给出具体提示）
    - http_status: HTTP 层映射
    - kind       : validation / not_found / forbidden / conflict / external
    - context    : 附加信息（例如 available=3），会原样回给调用方
    """

    error_code = "reservation_error"
    http_status = 400
    kind = VALIDATION
    default_message = "请求被拒绝"

    def __init__(self, message: Optional[str] = None, **context: Any) -> None:
        self.message = message or self.default_message
        self.context: Dict[str, Any] = {k: v for k, v in context.items() if v is not None}
        super().__init__(self.message)

    @property
    def retryable(self) -> bool:
        return self.kind == EXTERNAL


# ---------------------------- validation (422) ----------------------------


class _Validation(ReservationError):
    http_status = 422
    kind = VALIDATION


class InvalidQuantity(_Validation):
    error_code = "invalid_quantity"
    default_message = "预约数量不合法"


class ListingNotPurchasable(_Validation):
    error_code = "listing_not_purchasable"
    default_message = "该商品当前不可预约"


class InvalidTransition(_Validation):
    error_code = "invalid_transition"
    default_message = "当前状态不允许该操作"


class NotConfirmed(_Validation):
    error_code = "not_confirmed"
    default_message = "预约尚未确认付款，不能取货"


class NotEligible(_Validation):
    error_code = "not_eligible"
    default_message = "当前不能评价该预约"


class WindowExpired(_Validation):
    error_code = "window_expired"
    default_message = "评价窗口已关闭"


class InvalidScore(_Validation):
    error_code = "invalid_score"
    default_message = "评分必须是 1 到 5 的整数"


class PaymentWindowClosed(_Validation):
    error_code = "payment_window_closed"
    default_message = "付款时间已过，请重新预约"


class PaymentNotCompleted(_Validation):
    error_code = "payment_not_completed"
    default_message = "定金尚未支付成功"


# ---------------------------- not found (404) -----------------------------


class _NotFound(ReservationError):
    http_status = 404
    kind = NOT_FOUND


class ReservationNotFound(_NotFound):
    error_code = "reservation_not_found"
    default_message = "预约不存在"


class ListingNotFound(_NotFound):
    error_code = "listing_not_found"
    default_message = "商品不存在"


class CredentialNotFound(_NotFound):
    error_code = "credential_not_found"
    default_message = "取货码无效"


# ---------------------------- forbidden (403) -----------------------------


class _Forbidden(ReservationError):
    http_status = 403
    kind = FORBIDDEN


class WrongSeller(_Forbidden):
    error_code = "wrong_seller"
    default_message = "该取货码不属于你的商品"


class NotReservationParty(_Forbidden):
    error_code = "not_reservation_party"
    default_message = "你不是该预约的参与方"


# ---------------------------- conflict (409) ------------------------------


class _Conflict(ReservationError):
    http_status = 409
    kind = CONFLICT


class InsufficientInventory(_Conflict):
    error_code = "insufficient_inventory"
    default_message = "库存不足"

    def __init__(self, message: Optional[str] = None, *, available: Optional[int] = None, **context: Any) -> None:
        if message is None and available is not None:
            message = f"仅剩 {available} 件"
        super().__init__(message, available=available, **context)
        self.available = available


class AlreadyRedeemed(_Conflict):
    error_code = "already_redeemed"
    default_message = "该取货码已被使用"


class AlreadyRated(_Conflict):
    error_code = "already_rated"
    default_message = "你已评价过该预约"


# ---------------------------- external (5xx) ------------------------------


class PaymentProviderUnavailable(ReservationError):
    """支付处理方超时 / 网络错误 / 5xx / 限流：可重试，预约保持 PENDING。"""

    error_code = "payment_provider_unavailable"
    http_status = 503
    kind = EXTERNAL
    default_message = "支付服务暂时不可用，请稍后重试"


class PaymentProviderRejected(ReservationError):
    error_code = "payment_provider_rejected"
    http_status = 502
    kind = EXTERNAL
    default_message = "支付服务拒绝了请求，请稍后重试"
