from __future__ import annotations

import os

# point the app engine at sqlite before transfer_exchange reads its settings
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")

from datetime import datetime, timedelta, timezone  # noqa: E402
from decimal import Decimal  # noqa: E402

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from sqlalchemy import event  # noqa: E402
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine  # noqa: E402
from sqlalchemy.pool import StaticPool  # noqa: E402

from transfer_exchange.db import models as m  # noqa: E402
from transfer_exchange.db.base import Base  # noqa: E402
from transfer_exchange.services import job_transitions, live_log, settings_service  # noqa: E402
from transfer_exchange.services.jobs_service import create_job_for_booking  # noqa: E402
from transfer_exchange.services.timers import registry  # noqa: E402

from tests import factories  # noqa: E402

UTC = timezone.utc
# a Tuesday at noon: outside night, peak and holiday windows
NOW = datetime(2026, 3, 10, 12, 0, tzinfo=UTC)


@pytest_asyncio.fixture
async def engine():
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    # let SQLAlchemy drive BEGIN/SAVEPOINT itself (pysqlite transaction quirks)
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(connection):
        connection.exec_driver_sql("BEGIN")

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    # cancel timers armed during the test before the engine goes away
    await registry.shutdown()
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine):
    return async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


@pytest_asyncio.fixture
async def async_session(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture(autouse=True)
def _isolate_process_state():
    settings_service.invalidate_config_cache()
    job_transitions._JOB_LOCKS.clear()
    live_log.clear()
    yield
    settings_service.invalidate_config_cache()
    job_transitions._JOB_LOCKS.clear()


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest_asyncio.fixture
async def approved_operators(async_session):
    """Three approved operators with bank details, reputations 4.5 / 4.8 / 3.9."""
    operators = [
        factories.operator(company_name="Alpha Cars", reputation_score=4.5),
        factories.operator(company_name="Bravo Executive", reputation_score=4.8),
        factories.operator(company_name="Charlie Minibus", reputation_score=3.9),
    ]
    async_session.add_all(operators)
    await async_session.commit()
    return operators


@pytest_asyncio.fixture
async def paid_booking(async_session, now):
    booking = factories.booking(
        customer_price=Decimal("100.00"),
        status=m.BookingStatus.PAID,
        paid_at=now,
        pickup_at=now + timedelta(days=2),
    )
    async_session.add(booking)
    await async_session.commit()
    return booking


@pytest_asyncio.fixture
async def open_job(async_session, paid_booking, approved_operators, now):
    """Job opened for the paid booking at ``now`` with the default one-hour window."""
    return await create_job_for_booking(async_session, paid_booking.id, now=now)
