# bulkmart/main.py
from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession

from bulkmart import __version__
from bulkmart.api.deps import get_session
from bulkmart.api.routers.metrics import router as metrics_router
from bulkmart.api.routers.payments import router as payments_router
from bulkmart.api.routers.pickup import router as pickup_router
from bulkmart.api.routers.ratings import router as ratings_router
from bulkmart.api.routers.reservations import router as reservations_router
from bulkmart.api.routers.sweep import router as sweep_router
from bulkmart.api.routers.webhooks import router as webhooks_router
from bulkmart.core.config import get_settings, policy_from_settings
from bulkmart.core.logging import setup_logging
from bulkmart.db.base import init_models
from bulkmart.db.session import close_engines
from bulkmart.http_problem_handlers import register_exception_handlers
from bulkmart.obs.metrics import PrometheusMiddleware
from bulkmart.services.notifications import Notifier, build_sink
from bulkmart.services.reservation_state import ReservationStateMachine

logger = logging.getLogger("bulkmart")


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # 关闭前把还在路上的通知发完
    await app.state.state_machine.notifier.drain()
    await close_engines()


def create_app() -> FastAPI:
    settings = get_settings()
    setup_logging(settings.LOG_LEVEL)
    init_models()

    app = FastAPI(
        title="Bulkmart Reservations",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.add_middleware(PrometheusMiddleware)
    register_exception_handlers(app)

    # 服务实例挂在 app.state：测试里可替换 payment_processor / state_machine
    app.state.state_machine = ReservationStateMachine(
        policy=policy_from_settings(settings),
        notifier=Notifier(build_sink(settings), background=True),
    )
    app.state.payment_processor = None  # 首次使用时按配置创建 StripePaymentProcessor

    # ===========================
    #   预约 / 支付 / 取货 / 评价
    # ===========================
    app.include_router(reservations_router)
    app.include_router(payments_router)
    app.include_router(pickup_router)
    app.include_router(ratings_router)

    # ===========================
    #   回调 / 内部调度 / 观测
    # ===========================
    app.include_router(webhooks_router)
    app.include_router(sweep_router)
    app.include_router(metrics_router)

    @app.get("/healthz", tags=["health"])
    async def healthz(session: AsyncSession = Depends(get_session)):
        await session.execute(text("SELECT 1"))
        return {"status": "ok", "env": settings.ENV}

    logger.info("bulkmart app ready (env=%s)", settings.ENV)
    return app


app = create_app()
