# tests/factories.py
from __future__ import annotations

import uuid
from decimal import Decimal
from typing import Any, Optional

import sqlalchemy as sa
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bulkmart.models.enums import ListingStatus
from bulkmart.models.listing import Listing
from bulkmart.models.reservation import Reservation
from bulkmart.models.user import User


async def make_user(
    maker: async_sessionmaker[AsyncSession],
    *,
    name: str = "UT-USER",
    email: Optional[str] = None,
    phone: Optional[str] = None,
) -> str:
    uid = str(uuid.uuid4())
    async with maker() as s, s.begin():
        s.add(User(id=uid, name=name, email=email or f"{uid[:8]}@example.test", phone=phone))
    return uid


async def make_listing(
    maker: async_sessionmaker[AsyncSession],
    *,
    seller_id: str,
    quantity_total: int = 10,
    quantity_available: Optional[int] = None,
    price: str = "12.50",
    status: str = ListingStatus.PUBLISHED.value,
    is_active: bool = True,
    min_per_buyer: Optional[int] = None,
    max_per_buyer: Optional[int] = None,
) -> str:
    lid = str(uuid.uuid4())
    async with maker() as s, s.begin():
        s.add(
            Listing(
                id=lid,
                seller_id=seller_id,
                title="UT-PALLET-RICE",
                status=status,
                is_active=is_active,
                price_per_unit=Decimal(price),
                quantity_total=quantity_total,
                quantity_available=quantity_total if quantity_available is None else quantity_available,
                min_per_buyer=min_per_buyer,
                max_per_buyer=max_per_buyer,
                pickup_address="12 Dock Rd, Unit 4",
                pickup_instructions="Ring the bell at the loading bay",
            )
        )
    return lid


async def get_listing(maker: async_sessionmaker[AsyncSession], listing_id: str) -> Listing:
    async with maker() as s:
        return (await s.execute(sa.select(Listing).where(Listing.id == listing_id))).scalar_one()


async def get_reservation(maker: async_sessionmaker[AsyncSession], reservation_id: str) -> Reservation:
    async with maker() as s:
        return (
            await s.execute(sa.select(Reservation).where(Reservation.id == reservation_id))
        ).scalar_one()


async def get_user(maker: async_sessionmaker[AsyncSession], user_id: str) -> User:
    async with maker() as s:
        return (await s.execute(sa.select(User).where(User.id == user_id))).scalar_one()


async def count_rows(maker: async_sessionmaker[AsyncSession], model: Any, *conds: Any) -> int:
    async with maker() as s:
        stmt = sa.select(sa.func.count()).select_from(model)
        for c in conds:
            stmt = stmt.where(c)
        return int((await s.execute(stmt)).scalar_one())


async def set_listing(maker: async_sessionmaker[AsyncSession], listing_id: str, **values: Any) -> None:
    async with maker() as s, s.begin():
        await s.execute(sa.update(Listing).where(Listing.id == listing_id).values(**values))


class Market:
    """
    常用场景：一个卖家、一个挂牌、若干买家。
    所有写操作都用一次性 Session，避免长时间占用写锁。
    """

    def __init__(self, maker: async_sessionmaker[AsyncSession], sm) -> None:
        self.maker = maker
        self.sm = sm
        self.seller_id = ""
        self.listing_id = ""

    async def setup(self, **listing_kw: Any) -> "Market":
        self.seller_id = await make_user(self.maker, name="UT-SELLER", phone="+1-555-0100")
        self.listing_id = await make_listing(self.maker, seller_id=self.seller_id, **listing_kw)
        return self

    async def buyer(self, name: str = "UT-BUYER") -> str:
        return await make_user(self.maker, name=name, phone="+1-555-0199")

    async def reserve(self, buyer_id: str, quantity: int = 1) -> Reservation:
        async with self.maker() as s:
            return await self.sm.create(s, listing_id=self.listing_id, buyer_id=buyer_id, quantity=quantity)

    async def confirm(self, reservation_id: str, reference: str = "pi_manual"):
        async with self.maker() as s:
            return await self.sm.confirm(s, reservation_id=reservation_id, payment_reference=reference)

    async def available(self) -> int:
        return (await get_listing(self.maker, self.listing_id)).quantity_available
