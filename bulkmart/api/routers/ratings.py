# bulkmart/api/routers/ratings.py
from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import CurrentUser, get_current_user, get_rating_coordinator, get_session
from bulkmart.core.audit import new_trace
from bulkmart.models.enums import RatingType
from bulkmart.schemas.rating import (
    RatingEligibilityOut,
    RatingOut,
    RatingSubmitIn,
    RatingVisibilityOut,
    UserRatingsOut,
)
from bulkmart.services.blind_rating import BlindRatingCoordinator

router = APIRouter(prefix="/ratings", tags=["ratings"])


@router.post(
    "",
    response_model=RatingOut,
    status_code=status.HTTP_201_CREATED,
    operation_id="rating_submit",
)
async def submit_rating(
    payload: RatingSubmitIn,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: BlindRatingCoordinator = Depends(get_rating_coordinator),
):
    rating = await coordinator.submit(
        session,
        reservation_id=payload.reservation_id,
        rater_id=user.id,
        score=payload.score,
        comment=payload.comment,
        trace=new_trace("http:/ratings"),
    )
    return RatingOut.model_validate(rating)


@router.get(
    "/reservations/{reservation_id}",
    response_model=RatingVisibilityOut,
    operation_id="rating_visibility",
)
async def rating_visibility(
    reservation_id: str,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: BlindRatingCoordinator = Depends(get_rating_coordinator),
):
    view = await coordinator.get_visibility(session, reservation_id=reservation_id, viewer_id=user.id)
    return RatingVisibilityOut(
        reservation_id=view.reservation_id,
        own=RatingOut.model_validate(view.own) if view.own else None,
        counterpart=RatingOut.model_validate(view.counterpart) if view.counterpart else None,
        revealed=view.revealed,
    )


@router.get(
    "/reservations/{reservation_id}/eligibility",
    response_model=RatingEligibilityOut,
    operation_id="rating_eligibility",
)
async def rating_eligibility(
    reservation_id: str,
    user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: BlindRatingCoordinator = Depends(get_rating_coordinator),
):
    e = await coordinator.can_rate(session, reservation_id=reservation_id, user_id=user.id)
    return RatingEligibilityOut(
        reservation_id=reservation_id, can_rate=e.can_rate, reason=e.reason, deadline=e.deadline
    )


@router.get("/users/{user_id}", response_model=UserRatingsOut, operation_id="rating_list_user")
async def list_user_ratings(
    user_id: str,
    rating_type: Optional[RatingType] = Query(default=None),
    limit: int = Query(default=20, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    _user: CurrentUser = Depends(get_current_user),
    session: AsyncSession = Depends(get_session),
    coordinator: BlindRatingCoordinator = Depends(get_rating_coordinator),
):
    items = await coordinator.list_user_ratings(
        session,
        user_id=user_id,
        rating_type=rating_type.value if rating_type else None,
        limit=limit,
        offset=offset,
    )
    return UserRatingsOut(
        user_id=user_id,
        items=[RatingOut.model_validate(x) for x in items],
        limit=limit,
        offset=offset,
    )
