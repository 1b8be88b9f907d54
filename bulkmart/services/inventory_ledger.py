# bulkmart/services/inventory_ledger.py
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.models.inventory_commit import InventoryCommit
from bulkmart.models.listing import Listing
from bulkmart.services.errors import InsufficientInventory, InvalidQuantity, ListingNotFound
from bulkmart.utils.time import utc_now

logger = logging.getLogger("bulkmart.inventory")


@dataclass(frozen=True)
class HoldResult:
    """软占用校验结果：只读，不改 quantity_available。"""

    ok: bool
    listing_id: str
    requested: int
    available: int


@dataclass(frozen=True)
class CommitResult:
    applied: bool  # False = 该 reservation 之前已经扣过（幂等 NOOP）
    listing_id: str
    reservation_id: str
    quantity: int


@dataclass(frozen=True)
class RestoreResult:
    applied: bool  # False = 从未提交过 / 已回补过
    listing_id: str
    reservation_id: str
    quantity: int


class InventoryLedger:
    """
    挂牌库存台账（两段式）：

      try_hold         创建预约时只校验 quantity <= available，不扣减
      commit_decrement 定金确认时原子扣减：available -= q WHERE available >= q
                       幂等键 = reservation_id（inventory_commits 主键）
      restore          确认后取消时原子回补：available += q，封顶 quantity_total
                       同一 reservation 只回补一次

    所有写入都是单条条件 UPDATE，由数据库保证原子性；
    事务边界由调用方（ReservationStateMachine）控制。
    """

    async def try_hold(self, session: AsyncSession, listing_id: str, quantity: int) -> HoldResult:
        if quantity < 1:
            raise InvalidQuantity(requested=quantity)
        available = await self.get_available(session, listing_id)
        return HoldResult(
            ok=quantity <= available,
            listing_id=listing_id,
            requested=quantity,
            available=available,
        )

    async def get_available(self, session: AsyncSession, listing_id: str) -> int:
        row = await session.execute(
            sa.select(Listing.quantity_available).where(Listing.id == listing_id)
        )
        available: Optional[int] = row.scalar_one_or_none()
        if available is None:
            raise ListingNotFound(listing_id=listing_id)
        return int(available)

    async def commit_decrement(
        self,
        session: AsyncSession,
        *,
        listing_id: str,
        quantity: int,
        reservation_id: str,
    ) -> CommitResult:
        """
        在 SAVEPOINT 内：先登记 inventory_commits(reservation_id)，再做条件扣减。

        - 登记撞主键      → 已扣过，返回 applied=False
        - 条件扣减 0 行   → 库存不足，SAVEPOINT 回滚（登记一并撤销），抛 InsufficientInventory
        """
        if quantity < 1:
            raise InvalidQuantity(requested=quantity)

        now = utc_now()
        try:
            async with session.begin_nested():
                await session.execute(
                    sa.insert(InventoryCommit).values(
                        reservation_id=reservation_id,
                        listing_id=listing_id,
                        qty=quantity,
                        committed_at=now,
                    )
                )
                res = await session.execute(
                    sa.update(Listing)
                    .where(Listing.id == listing_id, Listing.quantity_available >= quantity)
                    .values(
                        quantity_available=Listing.quantity_available - quantity,
                        updated_at=now,
                    )
                    .execution_options(synchronize_session=False)
                )
                if res.rowcount != 1:
                    available = await self.get_available(session, listing_id)
                    raise InsufficientInventory(
                        available=available,
                        requested=quantity,
                        listing_id=listing_id,
                    )
        except IntegrityError:
            logger.info(
                "commit_decrement NOOP (already committed) rid=%s listing=%s",
                reservation_id,
                listing_id,
            )
            return CommitResult(False, listing_id, reservation_id, quantity)

        logger.info(
            "commit_decrement APPLIED rid=%s listing=%s qty=%s", reservation_id, listing_id, quantity
        )
        return CommitResult(True, listing_id, reservation_id, quantity)

    async def restore(
        self,
        session: AsyncSession,
        *,
        listing_id: str,
        quantity: int,
        reservation_id: str,
    ) -> RestoreResult:
        now = utc_now()
        marked = await session.execute(
            sa.update(InventoryCommit)
            .where(
                InventoryCommit.reservation_id == reservation_id,
                InventoryCommit.restored_at.is_(None),
            )
            .values(restored_at=now)
            .execution_options(synchronize_session=False)
        )
        if marked.rowcount != 1:
            logger.info("restore NOOP rid=%s listing=%s", reservation_id, listing_id)
            return RestoreResult(False, listing_id, reservation_id, quantity)

        await session.execute(
            sa.update(Listing)
            .where(Listing.id == listing_id)
            .values(
                quantity_available=sa.case(
                    (
                        Listing.quantity_available + quantity > Listing.quantity_total,
                        Listing.quantity_total,
                    ),
                    else_=Listing.quantity_available + quantity,
                ),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        logger.info("restore APPLIED rid=%s listing=%s qty=%s", reservation_id, listing_id, quantity)
        return RestoreResult(True, listing_id, reservation_id, quantity)
