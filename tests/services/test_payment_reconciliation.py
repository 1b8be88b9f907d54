# tests/services/test_payment_reconciliation.py
from __future__ import annotations

from decimal import Decimal

import pytest
import sqlalchemy as sa

from bulkmart.models.audit_event import AuditEvent
from bulkmart.models.enums import CancelReason, ReservationStatus
from bulkmart.models.payment_event import PaymentEvent
from bulkmart.services import alerts
from bulkmart.services import payment_reconciliation as pr
from bulkmart.services.errors import (
    InvalidTransition,
    NotReservationParty,
    PaymentNotCompleted,
    PaymentProviderUnavailable,
    PaymentWindowClosed,
)
from bulkmart.services.payment_processor import normalize_event
from bulkmart.services.reservation_state import APPLIED, NOOP
from tests.factories import Market, count_rows, get_reservation
from tests.fakes import stripe_event

pytestmark = pytest.mark.asyncio

S = ReservationStatus


async def _pending_with_deposit(maker, sm, payments, *, qty: int = 3, total: int = 10):
    m = await Market(maker, sm).setup(quantity_total=total, price="12.50")
    buyer = await m.buyer()
    r = await m.reserve(buyer, qty)
    async with maker() as s:
        handle = await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)
    return m, buyer, r, handle


async def _succeed(maker, payments, event_id: str, reference: str, correlation_id=None):
    async with maker() as s:
        return await payments.on_payment_succeeded(
            s, external_event_id=event_id, payment_reference=reference, correlation_id=correlation_id
        )


# ---------------------------------------------------------------------------
# create_deposit / get_payment_status
# ---------------------------------------------------------------------------
async def test_create_deposit_attaches_intent(maker, sm, payments, processor):
    """
    定金 intent：
      - 金额按分：1.88 → 188
      - metadata 里带 reservation id 作为关联键
      - reference 写回预约；重复调用复用同一个 intent
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)

    assert handle.amount == Decimal("1.88")
    assert handle.client_secret == f"{handle.payment_reference}_secret"
    intent = processor.intents[handle.payment_reference]
    assert intent["amount"] == 188
    assert intent["currency"] == "cad"
    assert intent["correlation_id"] == r.id
    assert (await get_reservation(maker, r.id)).payment_reference == handle.payment_reference

    async with maker() as s:
        again = await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)
    assert again.payment_reference == handle.payment_reference
    assert len(processor.intents) == 1


async def test_create_deposit_guards(maker, sm, payments, clock):
    m = await Market(maker, sm).setup()
    buyer = await m.buyer()
    stranger = await m.buyer("UT-STRANGER")
    r = await m.reserve(buyer, 1)

    async with maker() as s:
        with pytest.raises(NotReservationParty):
            await payments.create_deposit(s, reservation_id=r.id, buyer_id=stranger)

    clock.advance(minutes=16)
    async with maker() as s:
        with pytest.raises(PaymentWindowClosed):
            await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)

    async with maker() as s:
        await sm.expire(s, reservation_id=r.id)
    async with maker() as s:
        with pytest.raises(InvalidTransition):
            await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)


async def test_create_deposit_processor_outage_keeps_pending(maker, sm, payments, processor):
    m = await Market(maker, sm).setup()
    buyer = await m.buyer()
    r = await m.reserve(buyer, 1)
    processor.fail_with = PaymentProviderUnavailable(op="create_payment_intent")

    async with maker() as s:
        with pytest.raises(PaymentProviderUnavailable) as ei:
            await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)

    assert ei.value.retryable is True
    latest = await get_reservation(maker, r.id)
    assert latest.status == S.PENDING.value
    assert latest.payment_reference is None


async def test_payment_status_views(maker, sm, payments, processor):
    m = await Market(maker, sm).setup()
    buyer = await m.buyer()
    r = await m.reserve(buyer, 1)

    async with maker() as s:
        view = await payments.get_payment_status(s, reservation_id=r.id, user_id=buyer)
    assert view.payment_status == "no_payment"
    assert view.deposit_paid is False

    async with maker() as s:
        handle = await payments.create_deposit(s, reservation_id=r.id, buyer_id=buyer)
    processor.mark(handle.payment_reference, "succeeded")

    # 卖家也可以查看
    async with maker() as s:
        view = await payments.get_payment_status(s, reservation_id=r.id, user_id=m.seller_id)
    assert view.payment_status == "succeeded"
    assert view.deposit_paid is True
    assert view.payment_reference == handle.payment_reference

    stranger = await m.buyer("UT-STRANGER")
    async with maker() as s:
        with pytest.raises(NotReservationParty):
            await payments.get_payment_status(s, reservation_id=r.id, user_id=stranger)


# ---------------------------------------------------------------------------
# webhook 事件
# ---------------------------------------------------------------------------
async def test_succeeded_event_replayed_three_times_confirms_once(maker, sm, payments, sink):
    """
    同一事件投递 3 次：
      1) 第一次 CONFIRMED，后两次 DUPLICATE
      2) 库存只扣一次，确认通知只发一次
      3) payment_events 只有一行
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    raw = stripe_event("evt_1", "payment_intent.succeeded", reference=handle.payment_reference, reservation_id=r.id)

    outcomes = []
    for _ in range(3):
        async with maker() as s:
            outcomes.append((await payments.handle_event(s, normalize_event(raw))).outcome)

    assert outcomes == [pr.CONFIRMED, pr.DUPLICATE, pr.DUPLICATE]
    assert (await get_reservation(maker, r.id)).status == S.CONFIRMED.value
    assert await m.available() == 7
    assert len(sink.of("reservation.confirmed")) == 1
    assert await count_rows(maker, PaymentEvent) == 1


async def test_distinct_events_for_same_payment_are_noop(maker, sm, payments):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)

    first = await _succeed(maker, payments, "evt_a", handle.payment_reference)
    second = await _succeed(maker, payments, "evt_b", handle.payment_reference)

    assert first.outcome == pr.CONFIRMED and first.reservation_id == r.id
    assert second.outcome == pr.NOOP
    assert await m.available() == 7
    assert await count_rows(maker, PaymentEvent) == 2


async def test_succeeded_falls_back_to_correlation_id(maker, sm, payments):
    """intent 还没写回 reference（例如 create_deposit 写回前就收到回调）时按 metadata 关联。"""
    m = await Market(maker, sm).setup()
    r = await m.reserve(await m.buyer(), 1)

    out = await _succeed(maker, payments, "evt_corr", "pi_external", correlation_id=r.id)

    assert out.outcome == pr.CONFIRMED
    assert (await get_reservation(maker, r.id)).payment_reference == "pi_external"


async def test_unmatched_event_is_recorded_not_raised(maker, sm, payments):
    out = await _succeed(maker, payments, "evt_ghost", "pi_unknown")

    assert out.outcome == pr.UNMATCHED
    assert out.reservation_id is None
    async with maker() as s:
        row = (
            await s.execute(sa.select(PaymentEvent).where(PaymentEvent.event_id == "evt_ghost"))
        ).scalar_one()
    assert row.outcome == pr.UNMATCHED


async def test_failed_payment_does_not_cancel(maker, sm, payments):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)

    async with maker() as s:
        out = await payments.on_payment_failed(
            s, external_event_id="evt_fail", payment_reference=handle.payment_reference
        )

    assert out.outcome == pr.LOGGED
    assert (await get_reservation(maker, r.id)).status == S.PENDING.value

    # 买家重试成功
    retry = await _succeed(maker, payments, "evt_ok", handle.payment_reference)
    assert retry.outcome == pr.CONFIRMED


async def test_canceled_payment_cancels_pending_only(maker, sm, payments):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)

    async with maker() as s:
        out = await payments.on_payment_canceled(
            s, external_event_id="evt_cancel", payment_reference=handle.payment_reference
        )
    assert out.outcome == pr.CANCELLED
    latest = await get_reservation(maker, r.id)
    assert latest.status == S.CANCELLED.value
    assert latest.cancel_reason == CancelReason.PAYMENT_CANCELED.value
    assert await m.available() == 10

    # 已确认的预约收到 canceled：不动
    m2, _, r2, h2 = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok2", h2.payment_reference)
    async with maker() as s:
        late = await payments.on_payment_canceled(
            s, external_event_id="evt_cancel2", payment_reference=h2.payment_reference
        )
    assert late.outcome == pr.NOOP
    assert (await get_reservation(maker, r2.id)).status == S.CONFIRMED.value


async def test_payment_after_expiry_raises_alert(maker, sm, payments, clock):
    """
    买家在第 15 分钟之后才付款成功，而清扫已把预约置为 CANCELLED：
      - 不复活预约，不扣库存
      - 结论 ALERTED，并写 ALERT 审计（需人工退款）
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    clock.advance(minutes=16)
    async with maker() as s:
        assert (await sm.expire(s, reservation_id=r.id)).outcome == APPLIED

    out = await _succeed(maker, payments, "evt_late", handle.payment_reference)

    assert out.outcome == pr.ALERTED
    assert (await get_reservation(maker, r.id)).status == S.CANCELLED.value
    assert await m.available() == 10
    assert await count_rows(maker, AuditEvent, AuditEvent.category == "ALERT", AuditEvent.ref == r.id) == 1


async def test_refund_and_dispute_events(maker, sm, payments):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok", handle.payment_reference)

    async with maker() as s:
        refunded = await payments.on_charge_refunded(
            s, external_event_id="evt_refund", payment_reference=handle.payment_reference
        )
    # 处理方侧退款只记录，不改状态、不回补
    assert refunded.outcome == pr.LOGGED
    assert (await get_reservation(maker, r.id)).status == S.CONFIRMED.value
    assert await m.available() == 7

    async with maker() as s:
        dispute = await payments.on_dispute_created(
            s,
            external_event_id="evt_dispute",
            payment_reference=handle.payment_reference,
            data={"amount": 188, "reason": "fraudulent"},
        )
    assert dispute.outcome == pr.ALERTED
    assert dispute.reservation_id == r.id


async def test_unknown_event_type_is_ignored(maker, payments):
    raw = {"id": "evt_misc", "type": "customer.created", "data": {"object": {"id": "cus_1"}}}
    async with maker() as s:
        out = await payments.handle_event(s, normalize_event(raw))
    assert out.outcome == pr.IGNORED


# ---------------------------------------------------------------------------
# 管理员退款
# ---------------------------------------------------------------------------
async def test_refund_deposit_cancels_and_restores(maker, sm, payments, processor, sink):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok", handle.payment_reference)
    admin = await m.buyer("UT-ADMIN")

    async with maker() as s:
        out = await payments.refund_deposit(s, reservation_id=r.id, admin_id=admin)

    assert out.transition.outcome == APPLIED
    assert out.transition.status == S.CANCELLED.value
    assert out.refund is not None and out.refund.amount_minor == 188
    assert processor.refunds == [{"reference": handle.payment_reference, "amount_minor": 188}]
    assert await m.available() == 10
    assert sink.of("refund.processed")[0]["reservation_id"] == r.id

    async with maker() as s:
        again = await payments.refund_deposit(s, reservation_id=r.id, admin_id=admin)
    assert again.transition.outcome == NOOP
    assert len(processor.refunds) == 1


async def test_refund_deposit_failure_keeps_confirmed(maker, sm, payments, processor):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok", handle.payment_reference)
    processor.fail_with = PaymentProviderUnavailable(op="refund")

    async with maker() as s:
        with pytest.raises(PaymentProviderUnavailable):
            await payments.refund_deposit(s, reservation_id=r.id, admin_id="admin")

    assert (await get_reservation(maker, r.id)).status == S.CONFIRMED.value
    assert await m.available() == 7


async def test_refund_deposit_rejects_pending(maker, sm, payments):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    async with maker() as s:
        with pytest.raises(InvalidTransition):
            await payments.refund_deposit(s, reservation_id=r.id, admin_id="admin")


async def test_refund_racing_pickup_raises_alert(maker, sm, payments, processor, pickup):
    """
    退款已在处理方成功，卖家恰好在此期间核销了取货码：
      1) 预约保持 COMPLETED，库存不回补
      2) 结果 NOOP + reconciliation_required
      3) 写一条 refund_for_non_confirmed_reservation 告警审计
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok", handle.payment_reference)
    code = (await get_reservation(maker, r.id)).verification_code

    refund = processor.refund

    async def _refund_then_pickup(**kw):
        receipt = await refund(**kw)
        async with maker() as other:
            await pickup.redeem(other, code=code, seller_id=m.seller_id)
        return receipt

    processor.refund = _refund_then_pickup

    async with maker() as s:
        out = await payments.refund_deposit(s, reservation_id=r.id, admin_id="admin")

    assert len(processor.refunds) == 1
    assert out.transition.outcome == NOOP
    assert out.transition.reconciliation_required is True
    assert (await get_reservation(maker, r.id)).status == S.COMPLETED.value
    assert await m.available() == 7

    async with maker() as s:
        rows = (
            await s.execute(
                sa.select(AuditEvent).where(AuditEvent.category == "ALERT", AuditEvent.ref == r.id)
            )
        ).scalars().all()
    assert [row.meta["event"] for row in rows] == [alerts.REFUND_FOR_NON_CONFIRMED_RESERVATION]
    assert rows[0].meta["refund_id"] == out.refund.refund_id


async def test_concurrent_admin_refunds_do_not_alert(maker, sm, payments, processor):
    """
    两个管理员同时退款：第二个请求在“已退款、未取消”之间，第一个请求已整体完成。
    退款单按幂等键复用，第二个请求得到 NOOP，预约已 CANCELLED，不算对账异常。
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    await _succeed(maker, payments, "evt_ok", handle.payment_reference)

    refund = processor.refund
    state = {"nested": False}

    async def _refund_while_other_admin_finishes(**kw):
        receipt = await refund(**kw)
        if not state["nested"]:
            state["nested"] = True
            async with maker() as other:
                first = await payments.refund_deposit(other, reservation_id=r.id, admin_id="admin-1")
            assert first.transition.outcome == APPLIED
        return receipt

    processor.refund = _refund_while_other_admin_finishes

    async with maker() as s:
        out = await payments.refund_deposit(s, reservation_id=r.id, admin_id="admin-2")

    assert out.transition.outcome == NOOP
    assert out.transition.reconciliation_required is False
    assert len(processor.refunds) == 1
    assert await m.available() == 10
    assert await count_rows(maker, AuditEvent, AuditEvent.category == "ALERT", AuditEvent.ref == r.id) == 0


# ---------------------------------------------------------------------------
# 买家主动核验
# ---------------------------------------------------------------------------
async def test_verify_payment_confirms_once_with_webhook(maker, sm, payments, processor, sink):
    """
    1) intent 已 succeeded，回调尚未到达：买家核验 → CONFIRMED，库存 10 → 7
    2) 随后回调到达 → NOOP；再次核验 → NOOP
    3) 库存只扣一次，确认通知只发一次
    """
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    processor.mark(handle.payment_reference, "succeeded")

    async with maker() as s:
        first = await payments.verify_payment(s, reservation_id=r.id, buyer_id=buyer)
    assert first.outcome == pr.CONFIRMED
    assert first.reservation_status == S.CONFIRMED.value
    assert first.payment_status == "succeeded"
    assert await m.available() == 7

    late = await _succeed(maker, payments, "evt_late", handle.payment_reference)
    assert late.outcome == pr.NOOP

    async with maker() as s:
        again = await payments.verify_payment(s, reservation_id=r.id, buyer_id=buyer)
    assert again.outcome == pr.NOOP
    assert await m.available() == 7
    assert len(sink.of("reservation.confirmed")) == 1


async def test_verify_payment_guards(maker, sm, payments, processor):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    stranger = await m.buyer("UT-STRANGER")

    async with maker() as s:
        with pytest.raises(NotReservationParty):
            await payments.verify_payment(s, reservation_id=r.id, buyer_id=stranger)

    # 尚未支付成功
    async with maker() as s:
        with pytest.raises(PaymentNotCompleted):
            await payments.verify_payment(s, reservation_id=r.id, buyer_id=buyer)
    assert (await get_reservation(maker, r.id)).status == S.PENDING.value

    # 没有定金 intent
    bare = await m.reserve(buyer, 1)
    async with maker() as s:
        with pytest.raises(InvalidTransition):
            await payments.verify_payment(s, reservation_id=bare.id, buyer_id=buyer)

    # 别的预约的 intent 不能拿来确认本预约
    async with maker() as s:
        other = await payments.create_deposit(s, reservation_id=bare.id, buyer_id=buyer)
    processor.mark(other.payment_reference, "succeeded")
    async with maker() as s:
        with pytest.raises(InvalidTransition):
            await payments.verify_payment(
                s, reservation_id=r.id, buyer_id=buyer, payment_reference=other.payment_reference
            )
    assert (await get_reservation(maker, r.id)).status == S.PENDING.value
    assert await m.available() == 10


async def test_verify_payment_after_expiry_alerts(maker, sm, payments, processor, clock):
    m, buyer, r, handle = await _pending_with_deposit(maker, sm, payments)
    clock.advance(minutes=16)
    async with maker() as s:
        await sm.expire(s, reservation_id=r.id)
    processor.mark(handle.payment_reference, "succeeded")

    async with maker() as s:
        out = await payments.verify_payment(s, reservation_id=r.id, buyer_id=buyer)

    assert out.outcome == pr.ALERTED
    assert out.reconciliation_required is True
    assert out.reservation_status == S.CANCELLED.value
    assert await m.available() == 10
