"""Database session factory setup."""

from sqlalchemy import event
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool


def dialect_insert(session: AsyncSession, model):
    """Build an INSERT that supports ON CONFLICT clauses for the session's dialect.

    Both PostgreSQL and SQLite implement INSERT ... ON CONFLICT, but SQLAlchemy
    exposes it through dialect-specific constructs.
    """
    if session.bind is not None and session.bind.dialect.name == "sqlite":
        return sqlite.insert(model)
    return postgresql.insert(model)


def setup_db_session(db_url: str, pool_size: int = 20) -> async_sessionmaker[AsyncSession]:
    """Create async database session factory.

    PostgreSQL (postgresql+psycopg://...) is the production target. SQLite
    (sqlite+aiosqlite://...) is accepted for local runs and tests; every SQLite
    transaction starts with BEGIN IMMEDIATE so concurrent writers queue on the
    database lock instead of failing on a lock upgrade.

    Args:
        db_url: Database connection URL
        pool_size: Maximum number of connections in the pool (PostgreSQL only)

    Returns:
        Async session factory for creating database sessions
    """
    if db_url.startswith("sqlite"):
        engine = create_async_engine(
            db_url,
            poolclass=NullPool,  # one short-lived connection per session
            connect_args={"timeout": 30},
            echo=False,
        )

        @event.listens_for(engine.sync_engine, "connect")
        def _disable_driver_transactions(dbapi_connection, connection_record):
            dbapi_connection.isolation_level = None

        @event.listens_for(engine.sync_engine, "begin")
        def _begin_immediate(conn):
            conn.exec_driver_sql("BEGIN IMMEDIATE")

    else:
        engine = create_async_engine(
            db_url,
            pool_size=pool_size,
            max_overflow=0,  # No overflow beyond pool_size
            pool_pre_ping=True,  # Verify connections before using
            echo=False,  # Don't log SQL queries (use structlog instead)
        )

    session_factory = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False,  # Prevent lazy loading issues after commit
    )

    return session_factory
