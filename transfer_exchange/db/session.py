from __future__ import annotations

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from transfer_exchange.config import settings

engine: AsyncEngine = create_async_engine(
    settings.database_url,
    echo=settings.db_echo,
    pool_pre_ping=True,
    future=True,
)

SessionLocal = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)


def sessionmaker_for(session: AsyncSession) -> async_sessionmaker[AsyncSession]:
    """Session factory bound to the same engine as *session*.

    Timers reopen their own sessions when they fire; they must talk to the
    database that scheduled them.
    """
    bind = session.bind
    return async_sessionmaker(bind, expire_on_commit=False, class_=AsyncSession)
