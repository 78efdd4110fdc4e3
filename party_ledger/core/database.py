"""Database connection and session management.

Transaction Guarantees:
- Every store operation runs in its own session
- All statements within a session are atomic
- On any exception, the entire transaction is rolled back
- Sessions are properly closed after use
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
import logging

from sqlalchemy import text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from .config import Settings

logger = logging.getLogger(__name__)


# Emits a NOTIFY with the changed row for every write on a watched table.
# The payload shape mirrors RowChange: {"table", "kind", "new", "old"}.
NOTIFY_FUNCTION_SQL = """
CREATE OR REPLACE FUNCTION party_ledger_notify_change() RETURNS trigger AS $$
BEGIN
    PERFORM pg_notify(
        'party_ledger_changes',
        json_build_object(
            'table', TG_TABLE_NAME,
            'kind', TG_OP,
            'new', CASE WHEN TG_OP = 'DELETE' THEN NULL ELSE row_to_json(NEW) END,
            'old', CASE WHEN TG_OP = 'INSERT' THEN NULL ELSE row_to_json(OLD) END
        )::text
    );
    RETURN NULL;
END;
$$ LANGUAGE plpgsql;
"""

WATCHED_TABLES = ("players", "votes")


def create_engine(settings: Settings) -> AsyncEngine:
    """Create the async engine for the configured database."""
    url = settings.database_url_async
    logger.info(f"Database URL (masked): {url[:30]}...")

    if url.startswith("postgresql"):
        return create_async_engine(
            url,
            pool_size=5,
            max_overflow=10,
            echo=settings.database_echo,
            pool_pre_ping=True,
            pool_recycle=300,
        )
    return create_async_engine(url, echo=settings.database_echo)


def create_session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    """Session factory - creates new sessions for each operation."""
    return async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Rows stay readable after commit
        autoflush=False,
    )


@asynccontextmanager
async def session_scope(
    factory: async_sessionmaker[AsyncSession],
) -> AsyncGenerator[AsyncSession, None]:
    """Transactional scope: commit on success, rollback on any error."""
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def init_db(engine: AsyncEngine, install_triggers: bool = False) -> None:
    """Initialize database (create tables if needed)."""
    from ..models import Base

    async with engine.begin() as conn:
        # In production, use migrations instead
        await conn.run_sync(Base.metadata.create_all)

        if install_triggers and engine.dialect.name == "postgresql":
            await conn.execute(text(NOTIFY_FUNCTION_SQL))
            for table in WATCHED_TABLES:
                await conn.execute(
                    text(f"DROP TRIGGER IF EXISTS {table}_notify_change ON {table}")
                )
                await conn.execute(
                    text(
                        f"CREATE TRIGGER {table}_notify_change "
                        f"AFTER INSERT OR UPDATE OR DELETE ON {table} "
                        f"FOR EACH ROW EXECUTE FUNCTION party_ledger_notify_change()"
                    )
                )
            logger.info("Installed change-notification triggers")


async def close_db(engine: AsyncEngine) -> None:
    """Close database connections."""
    await engine.dispose()
