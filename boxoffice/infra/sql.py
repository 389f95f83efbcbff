import asyncio
from dataclasses import dataclass
from typing import AsyncContextManager, AsyncIterator, Callable, Optional
from sqlalchemy import event
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.ext.asyncio import (
    create_async_engine, async_sessionmaker, AsyncSession, AsyncEngine
)
from contextlib import asynccontextmanager

from ..errors import StoreUnavailableError

Gated = Callable[[], AsyncContextManager[None]]


def _normalize_async_url(url: str) -> str:
    if url.startswith("sqlite://"):
        return url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    if url.startswith("postgresql://"):
        return url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+asyncpg://", 1)
    return url


def is_postgres(db: AsyncSession) -> bool:
    return db.get_bind().dialect.name == "postgresql"


# DB-GATE
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_async_engine(
    database_url: str,
    *,
    pool_size: int = 10,
    max_overflow: int = 10,
    pool_timeout: int = 30,
    gate_limit: Optional[int] = None,
) -> tuple[AsyncEngine, async_sessionmaker[AsyncSession], Gated]:
    db_url = _normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)

    if db_url.startswith("postgresql+asyncpg://"):
        kw.update(
            pool_size=pool_size,
            max_overflow=max_overflow,
            pool_timeout=pool_timeout,
        )

    engine = create_async_engine(db_url, **kw)

    if db_url.startswith("sqlite+aiosqlite://"):
        @event.listens_for(engine.sync_engine, "connect")
        def _sqlite_pragmas(dbapi_connection, _):
            cur = dbapi_connection.cursor()
            cur.execute("PRAGMA journal_mode=WAL;")
            cur.execute("PRAGMA busy_timeout=5000;")
            cur.execute("PRAGMA synchronous=NORMAL;")
            cur.execute("PRAGMA foreign_keys=ON;")
            cur.close()

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )

    # One gate per engine, sized to the pool so callers queue here instead
    # of timing out inside the pool.
    if gate_limit is None:
        gate_limit = pool_size
    db_gate = asyncio.Semaphore(max(1, gate_limit))

    def gated():
        return _gated(db_gate)

    return engine, SessionAsync, gated


@asynccontextmanager
async def translate_store_errors():
    """Surface connectivity failures as the retryable StoreUnavailableError.
    Anything raised inside has already rolled back with its transaction."""
    try:
        yield
    except (OperationalError, InterfaceError, OSError) as e:
        raise StoreUnavailableError(f"store unavailable: {e}") from e


@dataclass
class GatedStore:
    sessions: async_sessionmaker[AsyncSession]
    gated: Gated

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        async with translate_store_errors():
            async with self.gated():
                async with self.sessions() as db:
                    async with db.begin():
                        yield db
