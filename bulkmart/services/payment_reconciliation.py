# bulkmart/services/payment_reconciliation.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Dict, Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.core.audit import TraceContext, ensure_trace
from bulkmart.models.enums import CancelReason, ReservationStatus
from bulkmart.models.payment_event import PaymentEvent
from bulkmart.models.reservation import Reservation
from bulkmart.obs.metrics import payment_webhook_events_total
from bulkmart.services import alerts
from bulkmart.services._tx import run_in_tx
from bulkmart.services.audit_writer import AuditEventWriter
from bulkmart.services.errors import (
    InvalidTransition,
    NotReservationParty,
    PaymentNotCompleted,
    PaymentWindowClosed,
)
from bulkmart.services.notifications import REFUND_PROCESSED
from bulkmart.services.payment_processor import (
    CHARGE_REFUNDED,
    DISPUTE_CREATED,
    PAYMENT_CANCELED,
    PAYMENT_FAILED,
    PAYMENT_SUCCEEDED,
    PaymentProcessor,
    RefundReceipt,
    WebhookEvent,
)
from bulkmart.services.reservation_pricing import to_minor_units
from bulkmart.services.reservation_state import (
    APPLIED,
    CONFLICT,
    ReservationStateMachine,
    TransitionResult,
)

logger = logging.getLogger("bulkmart.payments")

S = ReservationStatus

# 回调处理结论（写入 payment_events.outcome，同时作为指标 label）
CONFIRMED = "CONFIRMED"
CANCELLED = "CANCELLED"
NOOP = "NOOP"
DUPLICATE = "DUPLICATE"
UNMATCHED = "UNMATCHED"
LOGGED = "LOGGED"
ALERTED = "ALERTED"
IGNORED = "IGNORED"
RECONCILIATION_REQUIRED = "RECONCILIATION_REQUIRED"

_PAID_STATUSES = {S.CONFIRMED.value, S.COMPLETED.value, S.NO_SHOW.value}


@dataclass(frozen=True)
class DepositHandle:
    reservation_id: str
    payment_reference: str
    client_secret: Optional[str]
    amount: Decimal
    currency: str
    expires_at: datetime


@dataclass(frozen=True)
class WebhookOutcome:
    event_id: str
    event_type: str
    outcome: str
    reservation_id: Optional[str] = None


@dataclass(frozen=True)
class PaymentStatusView:
    reservation_id: str
    reservation_status: str
    payment_status: str
    deposit_paid: bool
    amount: Decimal
    currency: str
    payment_reference: Optional[str] = None


@dataclass(frozen=True)
class PaymentVerification:
    reservation_id: str
    payment_reference: str
    payment_status: str
    outcome: str
    reservation_status: str
    reconciliation_required: bool = False


@dataclass(frozen=True)
class RefundOutcome:
    transition: TransitionResult
    refund: Optional[RefundReceipt] = None


class PaymentReconciliationAdapter:
    """
    支付处理方 ⇄ 状态机 的桥：

    - 处理方回调是 at-least-once / 乱序 / 可重复的
    - 每个事件 id 先登记到 payment_events（主键去重），登记与状态迁移同一事务；
      同一事件重放只返回 DUPLICATE，不会二次扣库存或二次发通知
    - 所有“已在目标状态 / 已在其它终态”的情况都是 NOOP，回调一律 200
    """

    def __init__(
        self,
        processor: PaymentProcessor,
        *,
        state_machine: Optional[ReservationStateMachine] = None,
    ) -> None:
        self.processor = processor
        self.sm = state_machine or ReservationStateMachine()
        self._handlers: Dict[str, Callable[[AsyncSession, WebhookEvent, TraceContext], Awaitable[tuple]]] = {
            PAYMENT_SUCCEEDED: self._on_succeeded,
            PAYMENT_FAILED: self._on_failed,
            PAYMENT_CANCELED: self._on_canceled,
            CHARGE_REFUNDED: self._on_refunded,
            DISPUTE_CREATED: self._on_dispute,
        }

    # ------------------------------------------------------------------
    # createDeposit
    # ------------------------------------------------------------------
    async def create_deposit(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        buyer_id: Optional[str] = None,
        trace: Optional[TraceContext] = None,
    ) -> DepositHandle:
        """
        为 PENDING 预约创建定金 payment intent。

        网络调用不在数据库事务内进行：先读校验（短事务），再调用处理方，
        最后用 CAS 把 reference 写回（仍要求 PENDING）。
        重复调用使用同一个幂等键，处理方返回同一个 intent。
        """
        trace = ensure_trace(trace, "payments:create_deposit")

        r = await self.sm.get(session, reservation_id)
        if buyer_id is not None and r.buyer_id != buyer_id:
            raise NotReservationParty(reservation_id=reservation_id)
        if r.status != S.PENDING.value:
            raise InvalidTransition("只有待付款的预约可以支付定金", reservation_id=r.id, status=r.status)
        if self.sm.clock() > r.expires_at:
            raise PaymentWindowClosed(reservation_id=r.id, expires_at=r.expires_at.isoformat())

        handle = await self.processor.create_payment_intent(
            amount_minor=to_minor_units(r.deposit_amount),
            currency=r.currency,
            correlation_id=r.id,
            idempotency_key=f"deposit-{r.id}",
        )

        async def _attach() -> None:
            res = await session.execute(
                sa.update(Reservation)
                .where(Reservation.id == r.id, Reservation.status == S.PENDING.value)
                .values(payment_reference=handle.reference, updated_at=self.sm.clock())
                .execution_options(synchronize_session=False)
            )
            if res.rowcount != 1:
                latest = await self.sm.load(session, r.id)
                raise InvalidTransition(
                    "预约状态已变化，请刷新后重试",
                    reservation_id=r.id,
                    status=latest.status if latest else None,
                )
            await AuditEventWriter.write(
                session,
                flow="PAYMENT",
                event="INTENT_CREATED",
                ref=r.id,
                trace_id=trace.trace_id,
                meta={"payment_reference": handle.reference, "amount_minor": handle.amount_minor},
            )

        await run_in_tx(session, _attach)
        logger.info("deposit intent rid=%s ref=%s amount=%s", r.id, handle.reference, r.deposit_amount)
        return DepositHandle(
            reservation_id=r.id,
            payment_reference=handle.reference,
            client_secret=handle.client_secret,
            amount=Decimal(r.deposit_amount),
            currency=r.currency,
            expires_at=r.expires_at,
        )

    # ------------------------------------------------------------------
    # getPaymentStatus
    # ------------------------------------------------------------------
    async def get_payment_status(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        user_id: Optional[str] = None,
        is_admin: bool = False,
    ) -> PaymentStatusView:
        r = await self.sm.get(session, reservation_id)
        if user_id is not None and not is_admin and r.buyer_id != user_id:
            if await self.sm.seller_of(session, r) != user_id:
                raise NotReservationParty(reservation_id=reservation_id)

        if not r.payment_reference:
            return PaymentStatusView(
                reservation_id=r.id,
                reservation_status=r.status,
                payment_status="no_payment",
                deposit_paid=r.status in _PAID_STATUSES,
                amount=Decimal(r.deposit_amount),
                currency=r.currency,
            )

        intent = await self.processor.retrieve_payment_intent(r.payment_reference)
        return PaymentStatusView(
            reservation_id=r.id,
            reservation_status=r.status,
            payment_status=intent.status,
            deposit_paid=intent.status == "succeeded",
            amount=Decimal(r.deposit_amount),
            currency=r.currency,
            payment_reference=r.payment_reference,
        )

    # ------------------------------------------------------------------
    # verifyPayment：买家付款后主动核验（回调延迟时的兜底确认路径）
    # ------------------------------------------------------------------
    async def verify_payment(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        buyer_id: str,
        payment_reference: Optional[str] = None,
        trace: Optional[TraceContext] = None,
    ) -> PaymentVerification:
        """
        1) 只允许预约的买家调用
        2) 向处理方查询 intent，必须是 succeeded，且 metadata 关联到本预约
        3) 与 payment_intent.succeeded 回调走同一条 confirm 路径：
           先到的一方完成扣减，后到的一方得到 NOOP，库存只扣一次
        """
        trace = ensure_trace(trace, "payments:verify")

        r = await self.sm.get(session, reservation_id)
        if r.buyer_id != buyer_id:
            raise NotReservationParty(reservation_id=reservation_id)
        reference = payment_reference or r.payment_reference
        if not reference:
            raise InvalidTransition("该预约还没有支付记录", reservation_id=r.id, status=r.status)

        intent = await self.processor.retrieve_payment_intent(reference)
        if intent.correlation_id and intent.correlation_id != r.id:
            raise InvalidTransition("支付记录与预约不匹配", reservation_id=r.id, payment_reference=reference)
        if intent.status != "succeeded":
            raise PaymentNotCompleted(reservation_id=r.id, payment_status=intent.status)

        async def _inner() -> str:
            latest = await self.sm.get(session, r.id)
            outcome = await self._apply_success(
                session, latest, reference, trace, meta={"verified_by": buyer_id}
            )
            await AuditEventWriter.write(
                session,
                flow="PAYMENT",
                event="VERIFIED",
                ref=r.id,
                trace_id=trace.trace_id,
                meta={"payment_reference": reference, "outcome": outcome},
            )
            return outcome

        outcome = await run_in_tx(session, _inner)
        latest = await self.sm.get(session, r.id)
        logger.info("payment verified rid=%s ref=%s outcome=%s", r.id, reference, outcome)
        return PaymentVerification(
            reservation_id=r.id,
            payment_reference=reference,
            payment_status=intent.status,
            outcome=outcome,
            reservation_status=latest.status,
            reconciliation_required=outcome in (RECONCILIATION_REQUIRED, ALERTED),
        )

    # ------------------------------------------------------------------
    # 管理员退款：先退钱，再走 admin-refund-from-confirmed
    # ------------------------------------------------------------------
    async def refund_deposit(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        admin_id: str,
        reason: Optional[str] = None,
        trace: Optional[TraceContext] = None,
    ) -> RefundOutcome:
        """
        处理方退款失败（超时 / 拒绝）时直接抛出，预约保持 CONFIRMED，可重试；
        退款幂等键固定为 refund-<reservation id>，重试不会重复退款。
        退款成功后预约已不是 CONFIRMED（例如刚被核销）：状态不动，发对账告警，
        结果带 reconciliation_required。
        """
        trace = ensure_trace(trace, "payments:refund")
        r = await self.sm.get(session, reservation_id)
        if S(r.status).is_terminal:
            return RefundOutcome(self.sm.noop("admin_refund", r))
        if r.status != S.CONFIRMED.value:
            raise InvalidTransition("未确认的预约无需退款，请直接取消", reservation_id=r.id, status=r.status)
        if not r.payment_reference:
            raise InvalidTransition("该预约没有支付记录", reservation_id=r.id)

        receipt = await self.processor.refund(
            reference=r.payment_reference,
            amount_minor=to_minor_units(r.deposit_amount),
            idempotency_key=f"refund-{r.id}",
        )

        async def _inner() -> TransitionResult:
            result = await self.sm.admin_refund_from_confirmed(
                session,
                reservation_id=r.id,
                reason=reason or CancelReason.ADMIN_REFUND.value,
                trace=trace,
                meta={"admin_id": admin_id, "refund_id": receipt.refund_id},
            )
            if not result.applied and result.status != S.CANCELLED.value:
                # 退款已发出，但预约在此期间被核销 / 清扫：钱与状态不一致，交人工处理
                await alerts.ReconciliationAlerts.raise_alert(
                    session,
                    kind=alerts.REFUND_FOR_NON_CONFIRMED_RESERVATION,
                    ref=r.id,
                    trace_id=trace.trace_id,
                    meta={
                        "status": result.status,
                        "payment_reference": r.payment_reference,
                        "refund_id": receipt.refund_id,
                        "amount_minor": receipt.amount_minor,
                        "admin_id": admin_id,
                    },
                )
                result.reconciliation_required = True
            elif result.applied:
                self.sm.notifier.notify(
                    session,
                    REFUND_PROCESSED,
                    {
                        "reservation_id": r.id,
                        "buyer_id": r.buyer_id,
                        "refund_id": receipt.refund_id,
                        "amount": str(r.deposit_amount),
                        "currency": r.currency,
                    },
                )
            return result

        result = await run_in_tx(session, _inner)
        return RefundOutcome(result, receipt)

    # ------------------------------------------------------------------
    # 回调入口
    # ------------------------------------------------------------------
    async def handle_event(
        self,
        session: AsyncSession,
        event: WebhookEvent,
        *,
        trace: Optional[TraceContext] = None,
    ) -> WebhookOutcome:
        trace = ensure_trace(trace, f"stripe:{event.event_type}")

        async def _inner() -> WebhookOutcome:
            if not await self._register(session, event):
                return WebhookOutcome(event.event_id, event.event_type, DUPLICATE)

            handler = self._handlers.get(event.event_type)
            if handler is None:
                outcome, rid = IGNORED, None
            else:
                outcome, rid = await handler(session, event, trace)

            await session.execute(
                sa.update(PaymentEvent)
                .where(PaymentEvent.event_id == event.event_id)
                .values(outcome=outcome, reservation_id=rid)
                .execution_options(synchronize_session=False)
            )
            await AuditEventWriter.write(
                session,
                flow="PAYMENT",
                event=event.event_type,
                ref=event.event_id,
                trace_id=trace.trace_id,
                meta={
                    "payment_reference": event.payment_reference,
                    "reservation_id": rid,
                    "outcome": outcome,
                },
            )
            return WebhookOutcome(event.event_id, event.event_type, outcome, rid)

        result = await run_in_tx(session, _inner)
        payment_webhook_events_total.labels(event.event_type, result.outcome).inc()
        logger.info(
            "webhook %s type=%s ref=%s outcome=%s",
            event.event_id,
            event.event_type,
            event.payment_reference,
            result.outcome,
        )
        return result

    async def _register(self, session: AsyncSession, event: WebhookEvent) -> bool:
        """登记事件 id；已存在返回 False。"""
        seen = await session.execute(
            sa.select(PaymentEvent.event_id).where(PaymentEvent.event_id == event.event_id)
        )
        if seen.first() is not None:
            return False
        try:
            async with session.begin_nested():
                await session.execute(
                    sa.insert(PaymentEvent).values(
                        event_id=event.event_id,
                        event_type=event.event_type,
                        payment_reference=event.payment_reference,
                        outcome="RECEIVED",
                        received_at=self.sm.clock(),
                    )
                )
        except IntegrityError:
            return False
        return True

    # 具名入口（与回调同一套去重）
    async def on_payment_succeeded(
        self,
        session: AsyncSession,
        *,
        external_event_id: str,
        payment_reference: str,
        correlation_id: Optional[str] = None,
    ) -> WebhookOutcome:
        return await self.handle_event(
            session, WebhookEvent(external_event_id, PAYMENT_SUCCEEDED, payment_reference, correlation_id)
        )

    async def on_payment_failed(
        self,
        session: AsyncSession,
        *,
        external_event_id: str,
        payment_reference: str,
        correlation_id: Optional[str] = None,
    ) -> WebhookOutcome:
        return await self.handle_event(
            session, WebhookEvent(external_event_id, PAYMENT_FAILED, payment_reference, correlation_id)
        )

    async def on_payment_canceled(
        self,
        session: AsyncSession,
        *,
        external_event_id: str,
        payment_reference: str,
        correlation_id: Optional[str] = None,
    ) -> WebhookOutcome:
        return await self.handle_event(
            session, WebhookEvent(external_event_id, PAYMENT_CANCELED, payment_reference, correlation_id)
        )

    async def on_charge_refunded(
        self,
        session: AsyncSession,
        *,
        external_event_id: str,
        payment_reference: str,
    ) -> WebhookOutcome:
        return await self.handle_event(
            session, WebhookEvent(external_event_id, CHARGE_REFUNDED, payment_reference)
        )

    async def on_dispute_created(
        self,
        session: AsyncSession,
        *,
        external_event_id: str,
        payment_reference: Optional[str],
        data: Optional[dict] = None,
    ) -> WebhookOutcome:
        return await self.handle_event(
            session,
            WebhookEvent(external_event_id, DISPUTE_CREATED, payment_reference, data=dict(data or {})),
        )

    # ------------------------------------------------------------------
    # handlers：返回 (outcome, reservation_id)
    # ------------------------------------------------------------------
    async def _resolve(self, session: AsyncSession, event: WebhookEvent) -> Optional[Reservation]:
        if event.payment_reference:
            r = await self.sm.find_by_payment_reference(session, event.payment_reference)
            if r is not None:
                return r
        if event.correlation_id:
            return await self.sm.load(session, event.correlation_id)
        return None

    async def _on_succeeded(self, session: AsyncSession, event: WebhookEvent, trace: TraceContext):
        r = await self._resolve(session, event)
        if r is None:
            logger.warning(
                "payment succeeded for unknown reference=%s event=%s", event.payment_reference, event.event_id
            )
            return UNMATCHED, None
        outcome = await self._apply_success(
            session, r, event.payment_reference, trace, meta={"event_id": event.event_id}
        )
        return outcome, r.id

    async def _apply_success(
        self,
        session: AsyncSession,
        r: Reservation,
        payment_reference: Optional[str],
        trace: TraceContext,
        *,
        meta: Optional[dict] = None,
    ) -> str:
        """回调与买家主动核验共用：定金已到账 → confirm（幂等）。"""
        if r.status in (S.CONFIRMED.value, S.COMPLETED.value):
            return NOOP

        if r.status in (S.CANCELLED.value, S.NO_SHOW.value):
            await alerts.ReconciliationAlerts.raise_alert(
                session,
                kind=alerts.PAYMENT_FOR_TERMINAL_RESERVATION,
                ref=r.id,
                trace_id=trace.trace_id,
                meta={
                    "status": r.status,
                    "payment_reference": payment_reference,
                    "deposit_amount": str(r.deposit_amount),
                    **(meta or {}),
                },
            )
            return ALERTED

        result = await self.sm.confirm(
            session,
            reservation_id=r.id,
            payment_reference=payment_reference,
            trace=trace,
        )
        if result.outcome == APPLIED:
            return CONFIRMED
        if result.outcome == CONFLICT:
            return RECONCILIATION_REQUIRED
        return NOOP

    async def _on_failed(self, session: AsyncSession, event: WebhookEvent, trace: TraceContext):
        # 只记录：失败不取消预约，买家可在付款窗口内重试；放弃由清扫负责
        r = await self._resolve(session, event)
        logger.info(
            "payment failed ref=%s rid=%s reason=%s",
            event.payment_reference,
            r.id if r else None,
            event.data.get("reason"),
        )
        return LOGGED, r.id if r else None

    async def _on_canceled(self, session: AsyncSession, event: WebhookEvent, trace: TraceContext):
        r = await self._resolve(session, event)
        if r is None:
            logger.warning("payment canceled for unknown reference=%s", event.payment_reference)
            return UNMATCHED, None
        result = await self.sm.cancel_pending(
            session,
            reservation_id=r.id,
            reason=CancelReason.PAYMENT_CANCELED.value,
            trace=trace,
        )
        return (CANCELLED if result.applied else NOOP), r.id

    async def _on_refunded(self, session: AsyncSession, event: WebhookEvent, trace: TraceContext):
        # 只审计：取消 + 回补库存只走管理员退款入口
        r = await self._resolve(session, event)
        logger.info("charge refunded ref=%s rid=%s", event.payment_reference, r.id if r else None)
        return LOGGED, r.id if r else None

    async def _on_dispute(self, session: AsyncSession, event: WebhookEvent, trace: TraceContext):
        r = await self._resolve(session, event)
        await alerts.ReconciliationAlerts.raise_alert(
            session,
            kind=alerts.DISPUTE_CREATED,
            ref=r.id if r else (event.payment_reference or event.event_id),
            trace_id=trace.trace_id,
            meta={
                "event_id": event.event_id,
                "payment_reference": event.payment_reference,
                "status": r.status if r else None,
                "amount": event.data.get("amount"),
                "reason": event.data.get("reason"),
            },
        )
        return ALERTED, r.id if r else None
