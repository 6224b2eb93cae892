"""
Database setup — engine, session factory, dialect-aware inserts.
"""

from typing import Any

from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from settle.db._models import Base


type SessionFactory = async_sessionmaker[AsyncSession]


async def create_database(
    url: str = "sqlite+aiosqlite:///:memory:",
    *,
    echo: bool = False,
    create_tables: bool = True,
) -> tuple[SessionFactory, AsyncEngine]:
    """Create engine (+ tables) and return (session_factory, engine)."""
    connect_args: dict[str, Any] = {}
    if url.startswith("sqlite"):
        # Note: writers wait on each other instead of failing with "database is locked"
        connect_args["timeout"] = 15

    engine = create_async_engine(url, echo=echo, connect_args=connect_args)

    if create_tables:
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False), engine


def insert_for(session: AsyncSession, target: Any) -> Any:
    """
    INSERT construct with ON CONFLICT support for the session's dialect.

    target is a mapped class or a Table (Table when values are keyed by
    column name, e.g. payment_transactions.metadata).

    Example:
        stmt = (
            insert_for(session, IdempotencyRecordRow)
            .values(...)
            .on_conflict_do_nothing(index_elements=["key"])
        )
    """
    if session.get_bind().dialect.name == "postgresql":
        return pg_insert(target)
    return sqlite_insert(target)


__all__ = (
    "SessionFactory",
    "create_database",
    "insert_for",
)
