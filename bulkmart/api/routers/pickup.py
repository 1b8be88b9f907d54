# bulkmart/api/routers/pickup.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import CurrentUser, get_current_user, get_pickup_service, get_session
from bulkmart.core.audit import new_trace
from bulkmart.schemas.pickup import BuyerContactOut, RedeemCodeIn, RedeemQrIn, RedemptionOut
from bulkmart.services.pickup_credentials import PickupCredentialService, RedemptionResult

router = APIRouter(prefix="/pickup", tags=["pickup"])


def _out(result: RedemptionResult) -> RedemptionOut:
    return RedemptionOut(
        reservation_id=result.reservation_id,
        listing_id=result.listing_id,
        quantity=result.quantity,
        balance_due=result.balance_due,
        currency=result.currency,
        completed_at=result.completed_at,
        buyer=BuyerContactOut(**result.buyer),
    )


@router.post("/redeem", response_model=RedemptionOut, operation_id="pickup_redeem")
async def redeem(
    payload: RedeemCodeIn,
    seller: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    svc: PickupCredentialService = Depends(get_pickup_service),
):
    result = await svc.redeem(
        session, code=payload.code, seller_id=seller.id, trace=new_trace("http:/pickup/redeem")
    )
    return _out(result)


@router.post("/redeem-qr", response_model=RedemptionOut, operation_id="pickup_redeem_qr")
async def redeem_qr(
    payload: RedeemQrIn,
    seller: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    svc: PickupCredentialService = Depends(get_pickup_service),
):
    result = await svc.redeem_qr(
        session, qr_hash=payload.qr_hash, seller_id=seller.id, trace=new_trace("http:/pickup/redeem-qr")
    )
    return _out(result)
