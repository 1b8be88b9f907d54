# bulkmart/services/blind_rating.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, List, Optional, Sequence, Tuple

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import aliased

from bulkmart.core.audit import TraceContext, ensure_trace
from bulkmart.models.enums import RatingType, ReservationStatus
from bulkmart.models.listing import Listing
from bulkmart.models.rating import Rating
from bulkmart.models.reservation import Reservation
from bulkmart.models.user import User
from bulkmart.services._tx import run_in_tx
from bulkmart.services.audit_writer import AuditEventWriter
from bulkmart.services.errors import (
    AlreadyRated,
    InvalidScore,
    NotEligible,
    NotReservationParty,
    ReservationNotFound,
    WindowExpired,
)
from bulkmart.services.notifications import RATINGS_REVEALED
from bulkmart.services.reservation_state import ReservationStateMachine

logger = logging.getLogger("bulkmart.ratings")

_TWO_PLACES = Decimal("0.01")


@dataclass(frozen=True)
class ReputationAggregate:
    average: Decimal
    count: int


def compute_reputation(scores: Iterable[int]) -> ReputationAggregate:
    """从完整评分集合重新计算（不做增量累加），均值保留两位小数。"""
    values = [int(s) for s in scores]
    if not values:
        return ReputationAggregate(Decimal("0.00"), 0)
    avg = (Decimal(sum(values)) / Decimal(len(values))).quantize(_TWO_PLACES, rounding=ROUND_HALF_UP)
    return ReputationAggregate(avg, len(values))


@dataclass
class RatingVisibility:
    """
    viewer 视角：

    - own         自己的评价（提交后始终可见）
    - counterpart 对方的评价，仅双方都提交后才返回；否则为 None（不给任何占位）
    """

    reservation_id: str
    own: Optional[Rating]
    counterpart: Optional[Rating]

    @property
    def revealed(self) -> bool:
        return self.counterpart is not None


@dataclass(frozen=True)
class RatingEligibility:
    can_rate: bool
    reason: Optional[str] = None
    deadline: Optional[datetime] = None


@dataclass(frozen=True)
class _Parties:
    reservation: Reservation
    buyer_id: str
    seller_id: str

    def role_of(self, user_id: str) -> Optional[str]:
        if user_id == self.buyer_id:
            return "buyer"
        if user_id == self.seller_id:
            return "seller"
        return None

    def counterpart_of(self, user_id: str) -> str:
        return self.seller_id if user_id == self.buyer_id else self.buyer_id


class BlindRatingCoordinator:
    """
    盲评协调器：

    - 每个 (reservation, rater) 只能评一次，COMPLETED 之后 rating_window 内有效
    - 买家评卖家 → AS_SELLER；卖家评买家 → AS_BUYER
    - 双方都提交后才互相可见，并以此为时点重算双方信誉聚合；
      聚合只统计“双方都已评价”的评分
    """

    def __init__(self, state_machine: Optional[ReservationStateMachine] = None) -> None:
        self.sm = state_machine or ReservationStateMachine()

    @property
    def rating_window(self):
        return self.sm.policy.rating_window

    # ------------------------------------------------------------------
    # submit
    # ------------------------------------------------------------------
    async def submit(
        self,
        session: AsyncSession,
        *,
        reservation_id: str,
        rater_id: str,
        score: int,
        comment: Optional[str] = None,
        trace: Optional[TraceContext] = None,
    ) -> Rating:
        trace = ensure_trace(trace, "ratings:submit")
        if not isinstance(score, int) or isinstance(score, bool) or not 1 <= score <= 5:
            raise InvalidScore(score=score)

        async def _inner() -> Rating:
            # 锁住预约行：双方同时提交时串行化，后提交的一方一定能看到对方的评分并重算聚合
            parties = await self._parties(session, reservation_id, for_update=True)
            r = parties.reservation
            role = parties.role_of(rater_id)
            if r.status != ReservationStatus.COMPLETED.value or role is None:
                raise NotEligible(reservation_id=reservation_id, status=r.status)

            if await self._rating_by(session, reservation_id, rater_id) is not None:
                raise AlreadyRated(reservation_id=reservation_id)

            now = self.sm.clock()
            deadline = r.completed_at + self.rating_window
            if now > deadline:
                raise WindowExpired(reservation_id=reservation_id, deadline=deadline.isoformat())

            ratee_id = parties.counterpart_of(rater_id)
            rating = Rating(
                id=str(uuid.uuid4()),
                reservation_id=reservation_id,
                rater_id=rater_id,
                ratee_id=ratee_id,
                rating_type=(RatingType.AS_SELLER if role == "buyer" else RatingType.AS_BUYER).value,
                score=score,
                comment=(comment or "").strip() or None,
                created_at=now,
            )
            try:
                async with session.begin_nested():
                    session.add(rating)
                    await session.flush()
            except IntegrityError as e:
                raise AlreadyRated(reservation_id=reservation_id) from e

            await AuditEventWriter.write(
                session,
                flow="RATING",
                event="SUBMITTED",
                ref=reservation_id,
                trace_id=trace.trace_id,
                meta={"rater_id": rater_id, "rating_type": rating.rating_type},
            )

            counterpart = await self._rating_by(session, reservation_id, ratee_id)
            if counterpart is not None:
                await self.recompute_user(session, rater_id)
                await self.recompute_user(session, ratee_id)
                logger.info("ratings revealed rid=%s", reservation_id)
                self.sm.notifier.notify(
                    session,
                    RATINGS_REVEALED,
                    {
                        "reservation_id": reservation_id,
                        "buyer_id": parties.buyer_id,
                        "seller_id": parties.seller_id,
                    },
                )
            return rating

        return await run_in_tx(session, _inner)

    # ------------------------------------------------------------------
    # 可见性 / 资格 / 列表
    # ------------------------------------------------------------------
    async def get_visibility(
        self, session: AsyncSession, *, reservation_id: str, viewer_id: str
    ) -> RatingVisibility:
        async def _inner() -> RatingVisibility:
            parties = await self._parties(session, reservation_id)
            if parties.role_of(viewer_id) is None:
                raise NotReservationParty(reservation_id=reservation_id)
            own = await self._rating_by(session, reservation_id, viewer_id)
            other = await self._rating_by(session, reservation_id, parties.counterpart_of(viewer_id))
            if own is None or other is None:
                other = None
            return RatingVisibility(reservation_id=reservation_id, own=own, counterpart=other)

        return await run_in_tx(session, _inner)

    async def can_rate(
        self, session: AsyncSession, *, reservation_id: str, user_id: str
    ) -> RatingEligibility:
        async def _inner() -> RatingEligibility:
            parties = await self._parties(session, reservation_id)
            r = parties.reservation
            if parties.role_of(user_id) is None:
                return RatingEligibility(False, "not_party")
            if r.status != ReservationStatus.COMPLETED.value:
                return RatingEligibility(False, "not_completed")
            deadline = r.completed_at + self.rating_window
            if await self._rating_by(session, reservation_id, user_id) is not None:
                return RatingEligibility(False, "already_rated", deadline)
            if self.sm.clock() > deadline:
                return RatingEligibility(False, "window_expired", deadline)
            return RatingEligibility(True, None, deadline)

        return await run_in_tx(session, _inner)

    async def list_user_ratings(
        self,
        session: AsyncSession,
        *,
        user_id: str,
        rating_type: Optional[str] = None,
        limit: int = 20,
        offset: int = 0,
    ) -> List[Rating]:
        """用户收到的、已经互相揭晓的评价（按时间倒序）。"""

        async def _inner() -> List[Rating]:
            stmt = self._mutual_received(user_id)
            if rating_type:
                stmt = stmt.where(Rating.rating_type == rating_type)
            stmt = stmt.order_by(Rating.created_at.desc()).limit(limit).offset(offset)
            return list((await session.execute(stmt)).scalars().all())

        return await run_in_tx(session, _inner)

    # ------------------------------------------------------------------
    # 信誉聚合
    # ------------------------------------------------------------------
    async def recompute_user(self, session: AsyncSession, user_id: str) -> None:
        rows: Sequence[Tuple[str, int]] = (
            await session.execute(
                self._mutual_received(user_id).with_only_columns(Rating.rating_type, Rating.score)
            )
        ).all()
        overall = compute_reputation(score for _, score in rows)
        as_buyer = compute_reputation(s for t, s in rows if t == RatingType.AS_BUYER.value)
        as_seller = compute_reputation(s for t, s in rows if t == RatingType.AS_SELLER.value)

        await session.execute(
            sa.update(User)
            .where(User.id == user_id)
            .values(
                rating_average=overall.average,
                rating_count=overall.count,
                buyer_rating_average=as_buyer.average,
                buyer_rating_count=as_buyer.count,
                seller_rating_average=as_seller.average,
                seller_rating_count=as_seller.count,
                updated_at=self.sm.clock(),
            )
            .execution_options(synchronize_session=False)
        )
        logger.info(
            "reputation user=%s avg=%s count=%s", user_id, overall.average, overall.count
        )

    @staticmethod
    def _mutual_received(user_id: str) -> sa.Select:
        counterpart = aliased(Rating)
        return sa.select(Rating).where(
            Rating.ratee_id == user_id,
            sa.exists().where(
                counterpart.reservation_id == Rating.reservation_id,
                counterpart.rater_id == Rating.ratee_id,
            ),
        )

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------
    async def _parties(
        self, session: AsyncSession, reservation_id: str, *, for_update: bool = False
    ) -> _Parties:
        stmt = (
            sa.select(Reservation, Listing.seller_id)
            .join(Listing, Listing.id == Reservation.listing_id)
            .where(Reservation.id == reservation_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            stmt = stmt.with_for_update(of=Reservation)
        row = (await session.execute(stmt)).first()
        if row is None:
            raise ReservationNotFound(reservation_id=reservation_id)
        r, seller_id = row
        return _Parties(reservation=r, buyer_id=r.buyer_id, seller_id=seller_id)

    async def _rating_by(
        self, session: AsyncSession, reservation_id: str, rater_id: str
    ) -> Optional[Rating]:
        res = await session.execute(
            sa.select(Rating).where(Rating.reservation_id == reservation_id, Rating.rater_id == rater_id)
        )
        return res.scalar_one_or_none()
