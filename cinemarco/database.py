import os
from pathlib import Path

from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

DATA_DIR = os.environ.get("DATA_DIR", "").strip()
DATABASE_URL = os.environ.get(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(DATA_DIR) / 'cinemarco.db'}" if DATA_DIR else "sqlite+aiosqlite:///./cinemarco.db",
)


def _enable_sqlite_pragmas(dbapi_connection, _connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.close()


def _build_engine(url: str) -> AsyncEngine:
    built = create_async_engine(url)
    if url.startswith("sqlite"):
        event.listen(built.sync_engine, "connect", _enable_sqlite_pragmas)
    return built


engine = _build_engine(DATABASE_URL)
async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def configure(url: str) -> None:
    """Rebind the engine and session factory, e.g. to a temporary database."""
    global engine, async_session
    engine = _build_engine(url)
    async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def get_db() -> AsyncSession:
    async with async_session() as session:
        yield session


async def init_db():
    from . import models  # noqa: F401
    if DATA_DIR:
        Path(DATA_DIR).mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(models.Base.metadata.create_all)
        # Single settings row for the Trakt connection.
        await conn.execute(text("INSERT OR IGNORE INTO trakt_settings (id, auto_sync_enabled) VALUES (1, 0)"))


async def close_db():
    await engine.dispose()
