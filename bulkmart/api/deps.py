# bulkmart/api/deps.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, Request
from bulkmart.api.problem import raise_401, raise_403
from bulkmart.db.session import get_session  # noqa: F401  路由统一从这里取依赖
from bulkmart.services.blind_rating import BlindRatingCoordinator
from bulkmart.services.payment_processor import PaymentProcessor, StripePaymentProcessor
from bulkmart.services.payment_reconciliation import PaymentReconciliationAdapter
from bulkmart.services.pickup_credentials import PickupCredentialService
from bulkmart.services.reservation_state import ReservationStateMachine


# ---------------------------
# 身份：由上游网关注入
# ---------------------------
@dataclass(frozen=True)
class CurrentUser:
    id: str
    is_admin: bool = False


async def get_current_user(
    x_user_id: Optional[str] = Header(default=None),
    x_user_role: Optional[str] = Header(default=None),
) -> CurrentUser:
    """
    - 必须带 X-User-Id（认证由网关完成），缺失 → 401
    - X-User-Role: admin 视为管理员
    """
    user_id = (x_user_id or "").strip()
    if not user_id:
        raise_401()
    return CurrentUser(id=user_id, is_admin=(x_user_role or "").strip().lower() == "admin")


async def require_admin(user: CurrentUser = Depends(get_current_user)) -> CurrentUser:
    if not user.is_admin:
        raise_403("admin_required", "需要管理员权限")
    return user


# ---------------------------
# 服务实例：挂在 app.state 上，测试可整体替换
# ---------------------------
def get_state_machine(request: Request) -> ReservationStateMachine:
    return request.app.state.state_machine


def get_payment_processor(request: Request) -> PaymentProcessor:
    processor = getattr(request.app.state, "payment_processor", None)
    if processor is None:
        processor = StripePaymentProcessor.from_settings()
        request.app.state.payment_processor = processor
    return processor


def get_payment_adapter(
    sm: ReservationStateMachine = Depends(get_state_machine),
    processor: PaymentProcessor = Depends(get_payment_processor),
) -> PaymentReconciliationAdapter:
    return PaymentReconciliationAdapter(processor, state_machine=sm)


def get_pickup_service(
    sm: ReservationStateMachine = Depends(get_state_machine),
) -> PickupCredentialService:
    return PickupCredentialService(sm)


def get_rating_coordinator(
    sm: ReservationStateMachine = Depends(get_state_machine),
) -> BlindRatingCoordinator:
    return BlindRatingCoordinator(sm)
