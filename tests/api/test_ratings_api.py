# tests/api/test_ratings_api.py
from __future__ import annotations

import pytest
from httpx import AsyncClient

from tests._problem import assert_problem
from tests.api._helpers import as_user, paid_reservation
from tests.factories import Market

pytestmark = pytest.mark.asyncio


async def _completed(client: AsyncClient, maker, sm):
    m = await Market(maker, sm).setup()
    buyer = await m.buyer()
    r = await paid_reservation(client, buyer, m.listing_id, 1)
    resp = await client.post("/pickup/redeem", json={"code": r["verification_code"]}, headers=as_user(m.seller_id))
    assert resp.status_code == 200, resp.text
    return m, buyer, r["id"]


async def test_blind_rating_over_http(client: AsyncClient, maker, sm):
    """
    1) 评价前：eligibility can_rate = true
    2) 买家 5 分 → 卖家查看：counterpart 为 null
    3) 卖家 4 分 → 双方 revealed
    4) 卖家的公开评价列表里出现这条 5 分
    """
    m, buyer, rid = await _completed(client, maker, sm)

    elig = await client.get(f"/ratings/reservations/{rid}/eligibility", headers=as_user(buyer))
    assert elig.status_code == 200
    assert elig.json()["can_rate"] is True

    first = await client.post(
        "/ratings", json={"reservation_id": rid, "score": 5, "comment": "smooth pickup"}, headers=as_user(buyer)
    )
    assert first.status_code == 201, first.text
    assert first.json()["rating_type"] == "AS_SELLER"

    hidden = (await client.get(f"/ratings/reservations/{rid}", headers=as_user(m.seller_id))).json()
    assert hidden["own"] is None
    assert hidden["counterpart"] is None
    assert hidden["revealed"] is False

    second = await client.post("/ratings", json={"reservation_id": rid, "score": 4}, headers=as_user(m.seller_id))
    assert second.status_code == 201, second.text

    shown = (await client.get(f"/ratings/reservations/{rid}", headers=as_user(buyer))).json()
    assert shown["revealed"] is True
    assert shown["counterpart"]["score"] == 4

    listing = await client.get(
        f"/ratings/users/{m.seller_id}", params={"rating_type": "AS_SELLER"}, headers=as_user(buyer)
    )
    assert listing.status_code == 200
    assert [x["score"] for x in listing.json()["items"]] == [5]


async def test_rating_errors(client: AsyncClient, maker, sm):
    m, buyer, rid = await _completed(client, maker, sm)

    bad = await client.post("/ratings", json={"reservation_id": rid, "score": 6}, headers=as_user(buyer))
    assert_problem(bad, 422, "invalid_score")

    await client.post("/ratings", json={"reservation_id": rid, "score": 3}, headers=as_user(buyer))
    dup = await client.post("/ratings", json={"reservation_id": rid, "score": 3}, headers=as_user(buyer))
    assert_problem(dup, 409, "already_rated")

    outsider = await client.get(f"/ratings/reservations/{rid}", headers=as_user("someone-else"))
    assert_problem(outsider, 403, "not_reservation_party")
