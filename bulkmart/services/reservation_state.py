# bulkmart/services/reservation_state.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.core.audit import TraceContext, ensure_trace
from bulkmart.core.config import ReservationPolicy
from bulkmart.models.enums import ACTIVE_STATUSES, CancelReason, ReservationStatus
from bulkmart.models.listing import Listing
from bulkmart.models.reservation import Reservation
from bulkmart.models.user import User
from bulkmart.obs.metrics import reservation_transitions_total
from bulkmart.services import alerts
from bulkmart.services._tx import run_in_tx
from bulkmart.services.audit_writer import AuditEventWriter
from bulkmart.services.errors import (
    InsufficientInventory,
    InvalidQuantity,
    InvalidTransition,
    ListingNotFound,
    ListingNotPurchasable,
    NotReservationParty,
    ReservationNotFound,
)
from bulkmart.services.inventory_ledger import InventoryLedger
from bulkmart.services.notifications import (
    RESERVATION_CANCELLED,
    RESERVATION_CONFIRMED,
    RESERVATION_CREATED,
    Notifier,
)
from bulkmart.services.pickup_tokens import generate_credential
from bulkmart.services.reservation_pricing import compute_price_snapshot
from bulkmart.utils.time import utc_now

logger = logging.getLogger("bulkmart.reservations")

APPLIED = "APPLIED"
NOOP = "NOOP"
CONFLICT = "CONFLICT"

S = ReservationStatus


@dataclass
class TransitionResult:
    """
    一次状态迁移的结果：

    - APPLIED : 本次调用完成了迁移
    - NOOP    : 已处于目标状态 / 已进入其它终态 / 尚未到期，未做任何修改
    - CONFLICT: confirm 时库存提交输给了并发方，预约被取消，需要人工退款
    """

    transition: str
    outcome: str
    reservation: Reservation
    reconciliation_required: bool = False

    @property
    def applied(self) -> bool:
        return self.outcome == APPLIED

    @property
    def status(self) -> str:
        return self.reservation.status


class ReservationStateMachine:
    """
    预约生命周期：

        PENDING ──confirm──▶ CONFIRMED ──complete──▶ COMPLETED
           │                    │
           │ cancel/expire      │ admin refund（回补库存）
           ▼                    ▼
        CANCELLED           CANCELLED
                                │
        CONFIRMED ──pickup deadline──▶ NO_SHOW（不回补）

    每个迁移都是一条 `UPDATE ... WHERE status = :expected`（CAS），
    影响 0 行说明别的调用方已经先迁移，重新读取后按“幂等 NOOP”返回。
    迁移与其库存副作用 / 审计写入处于同一事务。
    """

    def __init__(
        self,
        *,
        policy: Optional[ReservationPolicy] = None,
        ledger: Optional[InventoryLedger] = None,
        notifier: Optional[Notifier] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.policy = policy or ReservationPolicy()
        self.ledger = ledger or InventoryLedger()
        self.notifier = notifier or Notifier()
        self.clock = clock or utc_now

    # ------------------------------------------------------------------
    # 读
    # ------------------------------------------------------------------
    async def load(self, session: AsyncSession, reservation_id: str) -> Optional[Reservation]:
        res = await session.execute(
            sa.select(Reservation)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        return res.scalar_one_or_none()

    async def get(self, session: AsyncSession, reservation_id: str) -> Reservation:
        """读取预约；session 不在事务中时自行开/关一个只读事务。"""

        async def _inner() -> Reservation:
            r = await self.load(session, reservation_id)
            if r is None:
                raise ReservationNotFound(reservation_id=reservation_id)
            return r

        return await run_in_tx(session, _inner)

    async def seller_of(self, session: AsyncSession, r: Reservation) -> str:
        async def _inner() -> str:
            res = await session.execute(sa.select(Listing.seller_id).where(Listing.id == r.listing_id))
            return res.scalar_one()

        return await run_in_tx(session, _inner)

    async def find_by_payment_reference(
        self, session: AsyncSession, payment_reference: str
    ) -> Optional[Reservation]:
        res = await session.execute(
            sa.select(Reservation)
            .where(Reservation.payment_reference == payment_reference)
            .execution_options(populate_existing=True)
        )
        return res.scalars().first()

    async def find_expired(
        self, session: AsyncSession, *, now: Optional[datetime] = None, limit: int = 100
    ) -> List[str]:
        now = now or self.clock()
        res = await session.execute(
            sa.select(Reservation.id)
            .where(Reservation.status == S.PENDING.value, Reservation.expires_at < now)
            .order_by(Reservation.expires_at)
            .limit(limit)
        )
        return [str(x) for x in res.scalars().all()]

    async def find_no_show_due(
        self, session: AsyncSession, *, now: Optional[datetime] = None, limit: int = 100
    ) -> List[str]:
        now = now or self.clock()
        res = await session.execute(
            sa.select(Reservation.id)
            .where(
                Reservation.status == S.CONFIRMED.value,
                Reservation.pickup_deadline.is_not(None),
                Reservation.pickup_deadline < now,
            )
            .order_by(Reservation.pickup_deadline)
            .limit(limit)
        )
        return [str(x) for x in res.scalars().all()]

    # ------------------------------------------------------------------
    # create
    # ------------------------------------------------------------------
    async def create(
        self,
        session: AsyncSession,
        *,
        listing_id: str,
        buyer_id: str,
        quantity: int,
        trace: Optional[TraceContext] = None,
    ) -> Reservation:
        trace = ensure_trace(trace, "reservation:create")

        async def _inner() -> Reservation:
            if not isinstance(quantity, int) or isinstance(quantity, bool) or quantity < 1:
                raise InvalidQuantity("预约数量至少为 1", requested=quantity)

            listing = (
                await session.execute(
                    sa.select(Listing)
                    .where(Listing.id == listing_id)
                    .execution_options(populate_existing=True)
                )
            ).scalar_one_or_none()
            if listing is None:
                raise ListingNotFound(listing_id=listing_id)
            if not listing.is_purchasable:
                raise ListingNotPurchasable(listing_id=listing_id, status=listing.status)
            if listing.seller_id == buyer_id:
                raise ListingNotPurchasable("不能预约自己的商品", listing_id=listing_id)

            await self._check_buyer_bounds(session, listing, buyer_id, quantity)

            hold = await self.ledger.try_hold(session, listing.id, quantity)
            if not hold.ok:
                raise InsufficientInventory(
                    available=hold.available, requested=quantity, listing_id=listing.id
                )

            snap = compute_price_snapshot(listing.price_per_unit, quantity, self.policy.deposit_rate)
            cred = await generate_credential(session)
            now = self.clock()

            r = Reservation(
                id=str(uuid.uuid4()),
                listing_id=listing.id,
                buyer_id=buyer_id,
                quantity_reserved=quantity,
                unit_price=snap.unit_price,
                total_price=snap.total_price,
                deposit_amount=snap.deposit_amount,
                currency=self.policy.currency,
                status=S.PENDING.value,
                qr_code_hash=cred.qr_code_hash,
                verification_code=cred.verification_code,
                created_at=now,
                updated_at=now,
                expires_at=now + self.policy.payment_window,
            )
            session.add(r)
            await session.flush()

            await AuditEventWriter.write(
                session,
                flow="RESERVATION",
                event="CREATED",
                ref=r.id,
                trace_id=trace.trace_id,
                meta={
                    "listing_id": listing.id,
                    "buyer_id": buyer_id,
                    "quantity": quantity,
                    "total_price": str(snap.total_price),
                    "deposit_amount": str(snap.deposit_amount),
                },
            )
            self._record("create", APPLIED, r.id, None, S.PENDING.value)
            self.notifier.notify(
                session,
                RESERVATION_CREATED,
                {
                    "reservation_id": r.id,
                    "listing_id": listing.id,
                    "listing_title": listing.title,
                    "buyer_id": buyer_id,
                    "seller_id": listing.seller_id,
                    "quantity": quantity,
                    "deposit_amount": str(snap.deposit_amount),
                    "currency": r.currency,
                    "expires_at": r.expires_at.isoformat(),
                },
            )
            return r

        return await run_in_tx(session, _inner)

    async def _check_buyer_bounds(
        self, session: AsyncSession, listing: Listing, buyer_id: str, quantity: int
    ) -> None:
        if listing.min_per_buyer is not None and quantity < listing.min_per_buyer:
            raise InvalidQuantity(
                f"每位买家至少预约 {listing.min_per_buyer} 件",
                requested=quantity,
                min_per_buyer=listing.min_per_buyer,
            )

        max_per_buyer = listing.max_per_buyer or self.policy.max_per_buyer_default
        if max_per_buyer is None:
            return

        held = await session.execute(
            sa.select(sa.func.coalesce(sa.func.sum(Reservation.quantity_reserved), 0)).where(
                Reservation.listing_id == listing.id,
                Reservation.buyer_id == buyer_id,
                Reservation.status.in_([s.value for s in ACTIVE_STATUSES]),
            )
        )
        already = int(held.scalar_one() or 0)
        if already + quantity > max_per_buyer:
            raise InvalidQuantity(
                f"每位买家最多预约 {max_per_buyer} 件",
                requested=quantity,
                max_per_buyer=max_per_buyer,
                already_reserved=already,
            )

    # ------------------------------------------------------------------
    # confirm
    # ------------------------------------------------------------------
    async def confirm(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        payment_reference: Optional[str],
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """
        PENDING → CONFIRMED，并提交库存扣减（一次且仅一次）。

        - 已是 CONFIRMED（无论 reference 是否相同）/ 其它终态：NOOP，不再修改
        - 扣减输给并发方：改为 CANCELLED(inventory_conflict)，发对账告警，
          返回 CONFLICT + reconciliation_required（钱可能已经到账）
        """
        trace = ensure_trace(trace, "reservation:confirm")

        async def _inner() -> TransitionResult:
            r = await self.get(session, reservation_id)
            if r.status != S.PENDING.value:
                return self.noop("confirm", r)

            now = self.clock()
            values: Dict[str, Any] = {
                "status": S.CONFIRMED.value,
                "confirmed_at": now,
                "pickup_deadline": now + self.policy.pickup_window,
                "updated_at": now,
            }
            if payment_reference:
                values["payment_reference"] = payment_reference
            if not await self._cas(session, reservation_id, [S.PENDING], values):
                return self.noop("confirm", await self.get(session, reservation_id))

            try:
                await self.ledger.commit_decrement(
                    session,
                    listing_id=r.listing_id,
                    quantity=r.quantity_reserved,
                    reservation_id=reservation_id,
                )
            except InsufficientInventory as e:
                return await self._cancel_after_lost_commit(session, reservation_id, e, trace)

            r = await self.get(session, reservation_id)
            await self._audit(session, "CONFIRMED", r, trace, {"payment_reference": r.payment_reference})
            self._record("confirm", APPLIED, r.id, S.PENDING.value, S.CONFIRMED.value)
            await self._notify_confirmed(session, r)
            return TransitionResult("confirm", APPLIED, r)

        return await run_in_tx(session, _inner)

    async def _cancel_after_lost_commit(
        self,
        session: AsyncSession,
        reservation_id: str,
        err: InsufficientInventory,
        trace: TraceContext,
    ) -> TransitionResult:
        now = self.clock()
        await self._cas(
            session,
            reservation_id,
            [S.CONFIRMED],
            {
                "status": S.CANCELLED.value,
                "cancel_reason": CancelReason.INVENTORY_CONFLICT.value,
                "cancelled_at": now,
                "updated_at": now,
            },
        )
        r = await self.get(session, reservation_id)
        meta = {
            "listing_id": r.listing_id,
            "quantity": r.quantity_reserved,
            "available": err.available,
            "payment_reference": r.payment_reference,
            "deposit_amount": str(r.deposit_amount),
        }
        await self._audit(session, "CANCELLED", r, trace, {"reason": r.cancel_reason, **meta})
        await alerts.ReconciliationAlerts.raise_alert(
            session,
            kind=alerts.INVENTORY_CONFLICT_AFTER_PAYMENT,
            ref=r.id,
            trace_id=trace.trace_id,
            meta=meta,
        )
        self._record("confirm", CONFLICT, r.id, S.PENDING.value, S.CANCELLED.value)
        self._notify_cancelled(session, r)
        return TransitionResult("confirm", CONFLICT, r, reconciliation_required=True)

    # ------------------------------------------------------------------
    # cancel
    # ------------------------------------------------------------------
    async def cancel(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        reason: Optional[str] = None,
        actor_id: Optional[str] = None,
        is_admin: bool = False,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """
        通用取消入口，按当前状态分派到两条命名路径：

          PENDING   → cancel_pending（不涉及库存）
          CONFIRMED → admin_refund_from_confirmed（回补库存，仅管理员 / 系统）
          终态      → NOOP

        actor_id 为空表示系统调用（不做归属校验）。
        """
        r = await self.get(session, reservation_id)
        if actor_id is not None and not is_admin and r.buyer_id != actor_id:
            raise NotReservationParty(reservation_id=reservation_id)

        if S(r.status).is_terminal:
            return self.noop("cancel", r)

        if r.status == S.PENDING.value:
            default = CancelReason.ADMIN_CANCELLED if is_admin else CancelReason.BUYER_CANCELLED
            return await self.cancel_pending(
                session, reservation_id=reservation_id, reason=reason or default.value, trace=trace
            )

        if actor_id is not None and not is_admin:
            raise InvalidTransition(
                "已确认的预约需由管理员退款取消", reservation_id=reservation_id, status=r.status
            )
        return await self.admin_refund_from_confirmed(
            session,
            reservation_id=reservation_id,
            reason=reason or CancelReason.ADMIN_REFUND.value,
            trace=trace,
        )

    async def cancel_pending(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        reason: str,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """PENDING → CANCELLED。未提交过库存，因此不回补；非 PENDING 一律 NOOP。"""
        trace = ensure_trace(trace, "reservation:cancel_pending")

        async def _inner() -> TransitionResult:
            now = self.clock()
            ok = await self._cas(
                session,
                reservation_id,
                [S.PENDING],
                {
                    "status": S.CANCELLED.value,
                    "cancel_reason": reason,
                    "cancelled_at": now,
                    "updated_at": now,
                },
            )
            r = await self.get(session, reservation_id)
            if not ok:
                return self.noop("cancel", r)
            await self._audit(session, "CANCELLED", r, trace, {"reason": reason, "from": S.PENDING.value})
            self._record("cancel", APPLIED, r.id, S.PENDING.value, S.CANCELLED.value)
            self._notify_cancelled(session, r)
            return TransitionResult("cancel", APPLIED, r)

        return await run_in_tx(session, _inner)

    async def admin_refund_from_confirmed(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        reason: str = CancelReason.ADMIN_REFUND.value,
        trace: Optional[TraceContext] = None,
        meta: Optional[Dict[str, Any]] = None,
    ) -> TransitionResult:
        """CONFIRMED → CANCELLED，同一事务内回补库存。PENDING 不走这条路径。"""
        trace = ensure_trace(trace, "reservation:admin_refund")

        async def _inner() -> TransitionResult:
            now = self.clock()
            ok = await self._cas(
                session,
                reservation_id,
                [S.CONFIRMED],
                {
                    "status": S.CANCELLED.value,
                    "cancel_reason": reason,
                    "cancelled_at": now,
                    "updated_at": now,
                },
            )
            r = await self.get(session, reservation_id)
            if not ok:
                if r.status == S.PENDING.value:
                    raise InvalidTransition(
                        "未确认的预约无需退款，请直接取消",
                        reservation_id=reservation_id,
                        status=r.status,
                    )
                return self.noop("admin_refund", r)

            restored = await self.ledger.restore(
                session,
                listing_id=r.listing_id,
                quantity=r.quantity_reserved,
                reservation_id=r.id,
            )
            await self._audit(
                session,
                "CANCELLED",
                r,
                trace,
                {
                    "reason": reason,
                    "from": S.CONFIRMED.value,
                    "inventory_restored": restored.applied,
                    **(meta or {}),
                },
            )
            self._record("admin_refund", APPLIED, r.id, S.CONFIRMED.value, S.CANCELLED.value)
            self._notify_cancelled(session, r)
            return TransitionResult("admin_refund", APPLIED, r)

        return await run_in_tx(session, _inner)

    # ------------------------------------------------------------------
    # sweep：expire / no-show
    # ------------------------------------------------------------------
    async def expire(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        now: Optional[datetime] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """仅当仍为 PENDING 且 now > expires_at 时迁移到 CANCELLED(expired)。"""
        trace = ensure_trace(trace, "sweep:expire")
        now = now or self.clock()

        async def _inner() -> TransitionResult:
            res = await session.execute(
                sa.update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.status == S.PENDING.value,
                    Reservation.expires_at < now,
                )
                .values(
                    status=S.CANCELLED.value,
                    cancel_reason=CancelReason.EXPIRED.value,
                    cancelled_at=now,
                    updated_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            r = await self.get(session, reservation_id)
            if res.rowcount != 1:
                return self.noop("expire", r)
            await self._audit(session, "EXPIRED", r, trace, {"expires_at": r.expires_at.isoformat()})
            self._record("expire", APPLIED, r.id, S.PENDING.value, S.CANCELLED.value)
            self._notify_cancelled(session, r)
            return TransitionResult("expire", APPLIED, r)

        return await run_in_tx(session, _inner)

    async def mark_no_show(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        now: Optional[datetime] = None,
        trace: Optional[TraceContext] = None,
    ) -> TransitionResult:
        """仅当仍为 CONFIRMED 且取货期限已过时迁移到 NO_SHOW；不回补库存。"""
        trace = ensure_trace(trace, "sweep:no_show")
        now = now or self.clock()

        async def _inner() -> TransitionResult:
            res = await session.execute(
                sa.update(Reservation)
                .where(
                    Reservation.id == reservation_id,
                    Reservation.status == S.CONFIRMED.value,
                    Reservation.pickup_deadline < now,
                )
                .values(status=S.NO_SHOW.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            r = await self.get(session, reservation_id)
            if res.rowcount != 1:
                return self.noop("no_show", r)
            await self._audit(session, "NO_SHOW", r, trace, {"pickup_deadline": r.pickup_deadline.isoformat()})
            self._record("no_show", APPLIED, r.id, S.CONFIRMED.value, S.NO_SHOW.value)
            return TransitionResult("no_show", APPLIED, r)

        return await run_in_tx(session, _inner)

    # ------------------------------------------------------------------
    # complete（由 PickupCredentialService 驱动，事务由调用方持有）
    # ------------------------------------------------------------------
    async def complete(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        trace: TraceContext,
        meta: Optional[Dict[str, Any]] = None,
    ) -> Optional[Reservation]:
        """CONFIRMED → COMPLETED；CAS 失败返回 None，由调用方决定错误类型。"""
        now = self.clock()
        ok = await self._cas(
            session,
            reservation_id,
            [S.CONFIRMED],
            {"status": S.COMPLETED.value, "completed_at": now, "updated_at": now},
        )
        if not ok:
            self._record("complete", CONFLICT, reservation_id, S.CONFIRMED.value, None)
            return None
        r = await self.get(session, reservation_id)
        await self._audit(session, "COMPLETED", r, trace, meta)
        self._record("complete", APPLIED, r.id, S.CONFIRMED.value, S.COMPLETED.value)
        return r

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _cas(
        self,
        session: AsyncSession,
        reservation_id: str,
        expected: Iterable[ReservationStatus],
        values: Dict[str, Any],
    ) -> bool:
        res = await session.execute(
            sa.update(Reservation)
            .where(
                Reservation.id == reservation_id,
                Reservation.status.in_([s.value for s in expected]),
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        return res.rowcount == 1

    def noop(self, transition: str, r: Reservation) -> TransitionResult:
        self._record(transition, NOOP, r.id, r.status, r.status)
        return TransitionResult(transition, NOOP, r)

    def _record(
        self,
        transition: str,
        outcome: str,
        reservation_id: str,
        from_status: Optional[str],
        to_status: Optional[str],
    ) -> None:
        reservation_transitions_total.labels(transition, outcome).inc()
        logger.info(
            "reservation %s %s %s->%s outcome=%s",
            reservation_id,
            transition,
            from_status,
            to_status,
            outcome,
        )

    async def _audit(
        self,
        session: AsyncSession,
        event: str,
        r: Reservation,
        trace: TraceContext,
        meta: Optional[Dict[str, Any]] = None,
    ) -> None:
        await AuditEventWriter.write(
            session,
            flow="RESERVATION",
            event=event,
            ref=r.id,
            trace_id=trace.trace_id,
            meta={"status": r.status, "source": trace.source, **(meta or {})},
        )

    async def contacts(self, session: AsyncSession, r: Reservation) -> Dict[str, Any]:
        listing = (
            await session.execute(sa.select(Listing).where(Listing.id == r.listing_id))
        ).scalar_one()
        users = (
            await session.execute(sa.select(User).where(User.id.in_([r.buyer_id, listing.seller_id])))
        ).scalars().all()
        by_id = {u.id: u for u in users}
        return {
            "listing": listing,
            "buyer": _contact(by_id.get(r.buyer_id), r.buyer_id),
            "seller": _contact(by_id.get(listing.seller_id), listing.seller_id),
        }

    async def _notify_confirmed(self, session: AsyncSession, r: Reservation) -> None:
        c = await self.contacts(session, r)
        listing: Listing = c["listing"]
        self.notifier.notify(
            session,
            RESERVATION_CONFIRMED,
            {
                "reservation_id": r.id,
                "listing_id": listing.id,
                "listing_title": listing.title,
                "quantity": r.quantity_reserved,
                "buyer": c["buyer"],
                "seller": c["seller"],
                "pickup_address": listing.pickup_address,
                "pickup_instructions": listing.pickup_instructions,
                "pickup_deadline": r.pickup_deadline.isoformat() if r.pickup_deadline else None,
                "verification_code": r.verification_code,
                "qr_code_hash": r.qr_code_hash,
                "balance_due": str(r.balance_due),
                "currency": r.currency,
            },
        )

    def _notify_cancelled(self, session: AsyncSession, r: Reservation) -> None:
        self.notifier.notify(
            session,
            RESERVATION_CANCELLED,
            {
                "reservation_id": r.id,
                "listing_id": r.listing_id,
                "buyer_id": r.buyer_id,
                "reason": r.cancel_reason,
            },
        )


def _contact(user: Optional[User], user_id: str) -> Dict[str, Any]:
    if user is None:
        return {"id": user_id}
    return {"id": user.id, "name": user.name, "email": user.email, "phone": user.phone}
