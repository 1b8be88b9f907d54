# bulkmart/api/routers/payments.py
from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import (
    CurrentUser,
    get_current_user,
    get_payment_adapter,
    get_session,
    require_admin,
)
from bulkmart.core.audit import new_trace
from bulkmart.schemas.payment import (
    DepositCreateIn,
    DepositOut,
    PaymentStatusOut,
    PaymentVerifyIn,
    PaymentVerifyOut,
    RefundIn,
    RefundOut,
)
from bulkmart.services.payment_reconciliation import PaymentReconciliationAdapter

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "/deposit",
    response_model=DepositOut,
    status_code=status.HTTP_201_CREATED,
    operation_id="payment_create_deposit",
)
async def create_deposit(
    payload: DepositCreateIn,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    handle = await adapter.create_deposit(
        session,
        reservation_id=payload.reservation_id,
        buyer_id=user.id,
        trace=new_trace("http:/payments/deposit"),
    )
    return DepositOut(
        reservation_id=handle.reservation_id,
        payment_reference=handle.payment_reference,
        client_secret=handle.client_secret,
        amount=handle.amount,
        currency=handle.currency,
        expires_at=handle.expires_at,
    )


@router.get(
    "/{reservation_id}/status",
    response_model=PaymentStatusOut,
    operation_id="payment_status",
)
async def payment_status(
    reservation_id: str,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    view = await adapter.get_payment_status(
        session,
        reservation_id=reservation_id,
        user_id=user.id,
        is_admin=user.is_admin,
    )
    return PaymentStatusOut(**asdict(view))


@router.post(
    "/{reservation_id}/verify",
    response_model=PaymentVerifyOut,
    operation_id="payment_verify",
)
async def verify_payment(
    reservation_id: str,
    payload: PaymentVerifyIn | None = None,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    """买家付款完成后主动核验；与回调互为兜底，重复调用幂等。"""
    verification = await adapter.verify_payment(
        session,
        reservation_id=reservation_id,
        buyer_id=user.id,
        payment_reference=payload.payment_reference if payload else None,
        trace=new_trace(f"http:/payments/{reservation_id}/verify"),
    )
    return PaymentVerifyOut(**asdict(verification))


@router.post(
    "/{reservation_id}/refund",
    response_model=RefundOut,
    operation_id="payment_refund",
)
async def refund_deposit(
    reservation_id: str,
    payload: RefundIn | None = None,
    admin: CurrentUser = Depends(require_admin),
    session: AsyncSession = Depends(get_session),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    outcome = await adapter.refund_deposit(
        session,
        reservation_id=reservation_id,
        admin_id=admin.id,
        reason=payload.reason if payload else None,
        trace=new_trace(f"http:/payments/{reservation_id}/refund"),
    )
    return RefundOut(
        reservation_id=reservation_id,
        outcome=outcome.transition.outcome,
        status=outcome.transition.status,
        reconciliation_required=outcome.transition.reconciliation_required,
        refund_id=outcome.refund.refund_id if outcome.refund else None,
        refund_status=outcome.refund.status if outcome.refund else None,
    )
