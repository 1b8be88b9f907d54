# bulkmart/api/routers/sweep.py
from __future__ import annotations

import secrets
from typing import Optional

from fastapi import APIRouter, Depends, Header
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart.api.deps import get_session, get_state_machine
from bulkmart.api.problem import raise_401, raise_403
from bulkmart.core.config import AppSettings, get_settings
from bulkmart.services.reservation_state import ReservationStateMachine
from bulkmart.services.reservation_sweep import sweep_reservations

router = APIRouter(prefix="/internal", tags=["internal"])


def require_cron_secret(
    authorization: Optional[str] = Header(default=None),
    settings: AppSettings = Depends(get_settings),
) -> None:
    if not settings.CRON_SECRET:
        raise_403("sweep_disabled", "未配置 CRON_SECRET")
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not secrets.compare_digest(token.strip(), settings.CRON_SECRET):
        raise_401("无效的调度凭证")


@router.post("/sweep", operation_id="internal_sweep", dependencies=[Depends(require_cron_secret)])
async def run_sweep(
    session: AsyncSession = Depends(get_session),
    sm: ReservationStateMachine = Depends(get_state_machine),
    settings: AppSettings = Depends(get_settings),
):
    report = await sweep_reservations(session, batch_size=settings.SWEEP_BATCH_SIZE, state_machine=sm)
    return report.as_dict()
