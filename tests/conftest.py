# tests/conftest.py
from __future__ import annotations

import os
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

# 在 import bulkmart.main 之前固定环境
os.environ.setdefault("ENV", "test")
os.environ.setdefault("LOG_LEVEL", "INFO")

from bulkmart.api.deps import get_session  # noqa: E402
from bulkmart.core.config import ReservationPolicy  # noqa: E402
from bulkmart.db.base import Base, init_models  # noqa: E402
from bulkmart.db.engine import create_async_engine_safe  # noqa: E402
from bulkmart.db.session import normalize_async_dsn  # noqa: E402
from bulkmart.main import app  # noqa: E402
from bulkmart.services.blind_rating import BlindRatingCoordinator  # noqa: E402
from bulkmart.services.notifications import Notifier  # noqa: E402
from bulkmart.services.payment_reconciliation import PaymentReconciliationAdapter  # noqa: E402
from bulkmart.services.pickup_credentials import PickupCredentialService  # noqa: E402
from bulkmart.services.reservation_state import ReservationStateMachine  # noqa: E402

from tests.fakes import FakeClock, FakePaymentProcessor, RecordingSink  # noqa: E402

# ==========================
# 数据库 DSN：默认每用例一个临时 SQLite 文件；
# 设置 BULKMART_TEST_DATABASE_URL 时改用该库（例如 PostgreSQL）
# ==========================
TEST_DATABASE_URL = os.getenv("BULKMART_TEST_DATABASE_URL")


@pytest_asyncio.fixture(scope="function")
async def async_engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    if TEST_DATABASE_URL:
        url = normalize_async_dsn(TEST_DATABASE_URL)
    else:
        url = f"sqlite+aiosqlite:///{tmp_path / 'bulkmart.db'}"

    engine = create_async_engine_safe(url, poolclass=NullPool)
    init_models()
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield engine
    finally:
        await engine.dispose()


@pytest.fixture(scope="function")
def maker(async_engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """每次操作用一个新 Session：async with maker() as s: ..."""
    return async_sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


# =========================================
# 服务装配：固定时钟 + 记录型通知 + 假支付处理方
# =========================================
@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def policy() -> ReservationPolicy:
    return ReservationPolicy()


@pytest.fixture
def sm(policy: ReservationPolicy, sink: RecordingSink, clock: FakeClock) -> ReservationStateMachine:
    return ReservationStateMachine(policy=policy, notifier=Notifier(sink), clock=clock)


@pytest.fixture
def processor() -> FakePaymentProcessor:
    return FakePaymentProcessor()


@pytest.fixture
def payments(processor: FakePaymentProcessor, sm: ReservationStateMachine) -> PaymentReconciliationAdapter:
    return PaymentReconciliationAdapter(processor, state_machine=sm)


@pytest.fixture
def pickup(sm: ReservationStateMachine) -> PickupCredentialService:
    return PickupCredentialService(sm)


@pytest.fixture
def ratings(sm: ReservationStateMachine) -> BlindRatingCoordinator:
    return BlindRatingCoordinator(sm)


# =========================================
# FastAPI / httpx AsyncClient
# =========================================
@pytest_asyncio.fixture(scope="function")
async def client(
    maker: async_sessionmaker[AsyncSession],
    sm: ReservationStateMachine,
    processor: FakePaymentProcessor,
) -> AsyncGenerator[httpx.AsyncClient, None]:
    async def _override_session() -> AsyncGenerator[AsyncSession, None]:
        async with maker() as session:
            yield session

    saved_sm = app.state.state_machine
    saved_processor = app.state.payment_processor
    app.dependency_overrides[get_session] = _override_session
    app.state.state_machine = sm
    app.state.payment_processor = processor

    transport = httpx.ASGITransport(app=app, raise_app_exceptions=False)
    try:
        async with httpx.AsyncClient(
            transport=transport,
            base_url="http://testserver",
            timeout=httpx.Timeout(10.0, connect=5.0, read=10.0, write=5.0, pool=5.0),
        ) as c:
            yield c
    finally:
        app.dependency_overrides.clear()
        app.state.state_machine = saved_sm
        app.state.payment_processor = saved_processor
