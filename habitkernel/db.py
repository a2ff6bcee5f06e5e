from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from habitkernel.config import settings
from habitkernel.kernel.sql_store import SqlStore
from habitkernel.kernel.store import HabitStore, InMemoryStore


def normalize_url(raw_url: str) -> str:
    if raw_url.startswith("postgres://"):
        return raw_url.replace("postgres://", "postgresql+asyncpg://", 1)
    if raw_url.startswith("postgresql://"):
        return raw_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    return raw_url


def make_engine(url: str | None = None) -> AsyncEngine:
    return create_async_engine(normalize_url(url or settings.database_url), pool_pre_ping=True)


def make_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def build_store(backend: str | None = None) -> tuple[HabitStore, AsyncEngine | None]:
    """Construct the configured store; the engine is returned so it can be disposed."""
    backend = backend or settings.store_backend
    if backend == "postgres":
        engine = make_engine()
        store = SqlStore(make_sessionmaker(engine))
        await store.create_tables(engine)
        return store, engine
    if backend == "memory":
        return InMemoryStore(), None
    raise ValueError(f"Unknown store backend: {backend!r}")


async def get_store(request: Request) -> HabitStore:
    return request.app.state.store
