# bulkmart/services/pickup_credentials.py
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.core.audit import TraceContext, ensure_trace
from bulkmart.models.enums import ReservationStatus
from bulkmart.models.reservation import Reservation
from bulkmart.services._tx import run_in_tx
from bulkmart.services.errors import AlreadyRedeemed, CredentialNotFound, NotConfirmed, WrongSeller
from bulkmart.services.notifications import PICKUP_COMPLETED
from bulkmart.services.pickup_tokens import CODE_LENGTH, normalize_code
from bulkmart.services.reservation_state import ReservationStateMachine

logger = logging.getLogger("bulkmart.pickup")


@dataclass
class RedemptionResult:
    """核销成功后返回给卖家：买家联系方式 + 现场应收尾款。"""

    reservation_id: str
    listing_id: str
    quantity: int
    balance_due: Decimal
    currency: str
    completed_at: datetime
    buyer: Dict[str, Any] = field(default_factory=dict)


class PickupCredentialService:
    """
    取货核销：

    - 凭证（二维码哈希 + 6 位码）在创建预约时生成，见 pickup_tokens
    - redeem / redeem_qr：CONFIRMED → COMPLETED，单次有效
      并发核销由状态 CAS 串行化：只有一个调用能把 CONFIRMED 改成 COMPLETED，
      另一个读到 COMPLETED 后报 AlreadyRedeemed
    """

    def __init__(self, state_machine: Optional[ReservationStateMachine] = None) -> None:
        self.sm = state_machine or ReservationStateMachine()

    async def redeem(
        self,
        session: AsyncSession,
        *,
        code: str,
        seller_id: str,
        trace: Optional[TraceContext] = None,
    ) -> RedemptionResult:
        trace = ensure_trace(trace, "pickup:redeem")
        normalized = normalize_code(code)

        async def _inner() -> RedemptionResult:
            if len(normalized) != CODE_LENGTH:
                raise CredentialNotFound()
            r = await self._lookup(session, Reservation.verification_code == normalized)
            return await self._redeem(session, r, seller_id, trace, method="code")

        return await run_in_tx(session, _inner)

    async def redeem_qr(
        self,
        session: AsyncSession,
        *,
        qr_hash: str,
        seller_id: str,
        trace: Optional[TraceContext] = None,
    ) -> RedemptionResult:
        trace = ensure_trace(trace, "pickup:redeem_qr")
        qr_hash = (qr_hash or "").strip().lower()

        async def _inner() -> RedemptionResult:
            if not qr_hash:
                raise CredentialNotFound()
            r = await self._lookup(session, Reservation.qr_code_hash == qr_hash)
            return await self._redeem(session, r, seller_id, trace, method="qr")

        return await run_in_tx(session, _inner)

    async def _lookup(self, session: AsyncSession, cond) -> Reservation:
        res = await session.execute(
            sa.select(Reservation).where(cond).execution_options(populate_existing=True)
        )
        r = res.scalar_one_or_none()
        if r is None:
            raise CredentialNotFound()
        return r

    async def _redeem(
        self,
        session: AsyncSession,
        r: Reservation,
        seller_id: str,
        trace: TraceContext,
        *,
        method: str,
    ) -> RedemptionResult:
        contacts = await self.sm.contacts(session, r)
        listing = contacts["listing"]
        if listing.seller_id != seller_id:
            raise WrongSeller(reservation_id=r.id)

        if r.status == ReservationStatus.COMPLETED.value:
            raise AlreadyRedeemed(reservation_id=r.id, completed_at=_iso(r.completed_at))
        if r.status != ReservationStatus.CONFIRMED.value:
            raise NotConfirmed(reservation_id=r.id, status=r.status)

        done = await self.sm.complete(
            session, reservation_id=r.id, trace=trace, meta={"method": method, "seller_id": seller_id}
        )
        if done is None:
            # CAS 输给了并发核销（或清扫）
            latest = await self.sm.get(session, r.id)
            if latest.status == ReservationStatus.COMPLETED.value:
                raise AlreadyRedeemed(reservation_id=r.id, completed_at=_iso(latest.completed_at))
            raise NotConfirmed(reservation_id=r.id, status=latest.status)

        result = RedemptionResult(
            reservation_id=done.id,
            listing_id=done.listing_id,
            quantity=done.quantity_reserved,
            balance_due=done.balance_due,
            currency=done.currency,
            completed_at=done.completed_at,
            buyer=contacts["buyer"],
        )
        logger.info("pickup redeemed rid=%s seller=%s method=%s", done.id, seller_id, method)
        self.sm.notifier.notify(
            session,
            PICKUP_COMPLETED,
            {
                "reservation_id": done.id,
                "listing_id": done.listing_id,
                "buyer": contacts["buyer"],
                "seller": contacts["seller"],
                "completed_at": done.completed_at.isoformat(),
            },
        )
        return result


def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt is not None else None
