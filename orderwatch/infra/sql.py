import asyncio
from contextlib import asynccontextmanager
from typing import AsyncContextManager, Callable, Tuple

from sqlalchemy import event
from sqlalchemy.ext.asyncio import (
    AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine,
)

from .. import config

Gated = Callable[[], AsyncContextManager[None]]

_DRIVERS = (
    ("sqlite://", "sqlite+aiosqlite://"),
    ("postgresql://", "postgresql+asyncpg://"),
    ("postgres://", "postgresql+asyncpg://"),
)

# foreign_keys: order_items must point at a real order
_SQLITE_PRAGMAS = (
    "PRAGMA journal_mode=WAL;",
    "PRAGMA busy_timeout=5000;",
    "PRAGMA foreign_keys=ON;",
)


def normalize_async_url(url: str) -> str:
    for plain, driver in _DRIVERS:
        if url.startswith(plain):
            return driver + url[len(plain):]
    return url


def plain_postgres_dsn(url: str) -> str:
    # asyncpg.connect() wants postgresql:// without the driver suffix
    return normalize_async_url(url).replace(
        "postgresql+asyncpg://", "postgresql://", 1
    )


def is_postgres(url: str) -> bool:
    return normalize_async_url(url).startswith("postgresql+asyncpg://")


# DB gate: bounds concurrent database work (detectors, fetches, history)
@asynccontextmanager
async def _gated(sem: asyncio.Semaphore):
    await sem.acquire()
    try:
        yield
    finally:
        sem.release()


def make_gate(limit: int) -> Gated:
    sem = asyncio.Semaphore(max(1, limit))

    def gated():
        return _gated(sem)

    return gated


def _install_sqlite_pragmas(engine: AsyncEngine) -> None:
    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection, _):
        cur = dbapi_connection.cursor()
        for pragma in _SQLITE_PRAGMAS:
            cur.execute(pragma)
        cur.close()


def make_async_engine(
    database_url: str,
) -> Tuple[AsyncEngine, async_sessionmaker, Gated]:
    """Engine, session factory and DB gate for one database.

    `async with gated(): async with SessionAsync() as db: ...`
    """
    db_url = normalize_async_url(database_url)
    kw = dict(future=True, pool_pre_ping=True)
    if is_postgres(db_url):
        kw.update(
            pool_size=config.DB_POOL_SIZE,
            max_overflow=config.DB_MAX_OVERFLOW,
            pool_timeout=config.DB_POOL_TIMEOUT,
        )
        gate_limit = config.DB_GATE_LIMIT or config.DB_POOL_SIZE
    else:
        gate_limit = config.DB_GATE_LIMIT or 10

    engine = create_async_engine(db_url, **kw)
    if db_url.startswith("sqlite+aiosqlite://"):
        _install_sqlite_pragmas(engine)

    SessionAsync = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,
        autoflush=False,
    )
    return engine, SessionAsync, make_gate(gate_limit)
