# bulkmart/api/routers/reservations.py
from __future__ import annotations

from fastapi import APIRouter, Depends, status
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import (
    CurrentUser,
    get_current_user,
    get_payment_adapter,
    get_session,
    get_state_machine,
)
from bulkmart.core.audit import new_trace
from bulkmart.models.enums import ReservationStatus
from bulkmart.models.reservation import Reservation
from bulkmart.schemas.reservation import (
    ReservationCancelIn,
    ReservationCreateIn,
    ReservationOut,
    TransitionOut,
)
from bulkmart.services.errors import NotReservationParty
from bulkmart.services.payment_reconciliation import PaymentReconciliationAdapter
from bulkmart.services.reservation_state import ReservationStateMachine, TransitionResult

router = APIRouter(prefix="/reservations", tags=["reservations"])


def to_out(r: Reservation, *, show_credentials: bool) -> ReservationOut:
    out = ReservationOut.model_validate(r)
    if not show_credentials:
        out = out.model_copy(update={"verification_code": None, "qr_code_hash": None})
    return out


def transition_out(result: TransitionResult, *, show_credentials: bool) -> TransitionOut:
    return TransitionOut(
        transition=result.transition,
        outcome=result.outcome,
        reconciliation_required=result.reconciliation_required,
        reservation=to_out(result.reservation, show_credentials=show_credentials),
    )


@router.post(
    "",
    response_model=ReservationOut,
    status_code=status.HTTP_201_CREATED,
    operation_id="reservation_create",
)
async def create_reservation(
    payload: ReservationCreateIn,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    sm: ReservationStateMachine = Depends(get_state_machine),
):
    r = await sm.create(
        session,
        listing_id=payload.listing_id,
        buyer_id=user.id,
        quantity=payload.quantity,
        trace=new_trace("http:/reservations"),
    )
    return to_out(r, show_credentials=True)


@router.get("/{reservation_id}", response_model=ReservationOut, operation_id="reservation_get")
async def get_reservation(
    reservation_id: str,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    sm: ReservationStateMachine = Depends(get_state_machine),
):
    r = await sm.get(session, reservation_id)
    is_buyer = r.buyer_id == user.id
    if not (is_buyer or user.is_admin) and await sm.seller_of(session, r) != user.id:
        raise NotReservationParty(reservation_id=reservation_id)
    return to_out(r, show_credentials=is_buyer or user.is_admin)


@router.post(
    "/{reservation_id}/cancel",
    response_model=TransitionOut,
    operation_id="reservation_cancel",
)
async def cancel_reservation(
    reservation_id: str,
    payload: ReservationCancelIn | None = None,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    sm: ReservationStateMachine = Depends(get_state_machine),
    adapter: PaymentReconciliationAdapter = Depends(get_payment_adapter),
):
    """
    - 买家：仅 PENDING 可取消；已取消 / 已终结重复取消返回 NOOP
    - 管理员：PENDING 直接取消；CONFIRMED 走“先退定金，再取消并回补库存”
    """
    reason = payload.reason if payload else None
    trace = new_trace(f"http:/reservations/{reservation_id}/cancel")

    r = await sm.get(session, reservation_id)
    if user.is_admin and r.status == ReservationStatus.CONFIRMED.value:
        outcome = await adapter.refund_deposit(
            session,
            reservation_id=reservation_id,
            admin_id=user.id,
            reason=reason,
            trace=trace,
        )
        result = outcome.transition
    else:
        result = await sm.cancel(
            session,
            reservation_id=reservation_id,
            reason=reason,
            actor_id=user.id,
            is_admin=user.is_admin,
            trace=trace,
        )
    return transition_out(result, show_credentials=result.reservation.buyer_id == user.id or user.is_admin)
