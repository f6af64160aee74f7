from collections.abc import AsyncGenerator
from typing import Any

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel

from billing_sync.config import settings

# Transaction pooled connection for request handling.
# Transaction poolers don't support prepared statements, so they are disabled.
engine = create_async_engine(
    settings.database_url,
    echo=False,
    future=True,
    pool_size=10,
    max_overflow=20,
    pool_pre_ping=True,  # Detects stale connections before use
    pool_recycle=300,
    pool_timeout=5,  # Webhooks must ack within 3s; don't queue forever for a connection
    connect_args={
        "statement_cache_size": 0,
        "prepared_statement_cache_size": 0,
        "command_timeout": settings.database_command_timeout,
    },
)

# Direct connection for migrations, advisory locks and scheduled jobs.
direct_engine = create_async_engine(
    settings.database_url_direct,
    echo=False,
    future=True,
    pool_pre_ping=True,
    pool_size=3,
    max_overflow=5,
    connect_args={
        "command_timeout": 300,
    },
)

async_session_maker = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)

direct_session_maker = async_sessionmaker(
    direct_engine,
    class_=AsyncSession,
    expire_on_commit=False,
    autoflush=False,
)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Dependency that yields an async database session.

    Commits when the request handler returns, rolls back if it raises.
    """
    async with async_session_maker() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_session_maker() -> async_sessionmaker[AsyncSession]:
    """Dependency returning the session factory used by the webhook core.

    The webhook path opens several short-lived sessions of its own (inbox
    capture, unit of work, audit), so it takes the factory rather than a
    request-scoped session. Tests override this to point at SQLite.
    """
    return async_session_maker


def dialect_insert(db: AsyncSession, model: type[SQLModel]) -> Any:
    """Return an INSERT construct supporting ON CONFLICT for the session's dialect.

    PostgreSQL in production, SQLite in the test suite. Both dialects expose
    the same on_conflict_do_nothing / on_conflict_do_update API.
    """
    if db.get_bind().dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


async def init_db() -> None:
    """Create all tables (for development only - use Alembic in production).

    Uses direct connection since DDL operations require it.
    """
    import billing_sync.models  # noqa: F401

    async with direct_engine.begin() as conn:
        await conn.run_sync(SQLModel.metadata.create_all)
