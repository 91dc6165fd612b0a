import os
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from case_dataloader.models import Base

DEFAULT_DATABASE_URL = "sqlite+aiosqlite://"


def create_session_factory(url: Optional[str] = None, echo: bool = False) -> async_sessionmaker:
    """
    url falls back to $CASE_DATABASE_URL, then to an in-memory sqlite database.

    the engine is reachable as `session_factory.kw['bind']`.
    """
    url = url or os.getenv("CASE_DATABASE_URL") or DEFAULT_DATABASE_URL
    engine = create_async_engine(url, echo=echo)
    return async_sessionmaker(engine, expire_on_commit=False)


async def init_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
