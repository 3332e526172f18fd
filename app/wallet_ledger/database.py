from typing import Any

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, async_sessionmaker, create_async_engine

from .models import Base


def create_engine(url: str, **kwargs: Any) -> AsyncEngine:
    """Create the async engine used by every service.

    pysqlite's own transaction handling never emits BEGIN eagerly, which breaks
    SAVEPOINT and lets two writers interleave. For SQLite URLs the driver's
    handling is switched off and each transaction opens with BEGIN IMMEDIATE,
    so wallet mutations are serialized the way row locks serialize them on
    PostgreSQL.
    """
    engine = create_async_engine(url, **kwargs)
    if engine.dialect.name == "sqlite":

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_pysqlite_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    return engine


def create_sessionmaker(engine: AsyncEngine) -> async_sessionmaker:
    return async_sessionmaker(engine, expire_on_commit=False)


async def create_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
