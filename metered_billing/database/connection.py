"""Database connection and session management.

The engine is owned by an explicitly constructed ``Database`` handle. The
application lifespan opens it at startup, stores it on ``app.state.db`` and
disposes it at shutdown; request handlers reach it through ``get_db``.
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import Request
from sqlalchemy import event, select
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from metered_billing.config import Settings
from metered_billing.database.models import Base, SubscriptionProduct

logger = structlog.get_logger()


def _setup_pool_listeners(async_engine: AsyncEngine, max_overflow: int) -> None:
    """Log when the connection pool runs at capacity."""
    pool = async_engine.sync_engine.pool

    @event.listens_for(pool, "checkout")
    def _on_checkout(
        _dbapi_conn: object, _connection_record: object, _connection_proxy: object
    ) -> None:
        checked_out = pool.checkedout()  # type: ignore[attr-defined]
        pool_size = pool.size()  # type: ignore[attr-defined]
        if checked_out >= pool_size:
            logger.warning(
                "DB pool at capacity",
                checked_out=checked_out,
                pool_size=pool_size,
                overflow=pool.overflow(),  # type: ignore[attr-defined]
                max_overflow=max_overflow,
            )

    @event.listens_for(pool, "invalidate")
    def _on_invalidate(
        _dbapi_conn: object, _connection_record: object, exception: Exception | None
    ) -> None:
        logger.warning(
            "DB connection invalidated",
            exception=str(exception) if exception else None,
        )


class Database:
    """Store handle: engine, session factory and schema lifecycle."""

    def __init__(self, settings: Settings, engine: AsyncEngine | None = None) -> None:
        self.settings = settings
        if engine is None:
            engine = create_async_engine(
                settings.DATABASE_URL,
                echo=settings.DEBUG,
                pool_pre_ping=True,
                pool_size=settings.DB_POOL_SIZE,
                max_overflow=settings.DB_POOL_MAX_OVERFLOW,
                pool_timeout=settings.DB_POOL_TIMEOUT,
                pool_recycle=settings.DB_POOL_RECYCLE,
            )
            _setup_pool_listeners(engine, settings.DB_POOL_MAX_OVERFLOW)
        self.engine = engine
        self.session_factory = async_sessionmaker(
            engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def init(self) -> None:
        """Create tables in development/test; production relies on migrations."""
        try:
            db_host = self.settings.DATABASE_URL.split("@")[-1].split(":")[0].split("/")[0]
        except (IndexError, AttributeError):
            db_host = "unknown"
        logger.info("Initializing database connection", host=db_host)

        if self.settings.ENVIRONMENT in ("development", "test"):
            async with self.engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            logger.info("Database tables created/verified (development mode)")
        else:
            logger.info("Skipping create_all outside development - migrations manage schema")

    async def seed(self) -> None:
        """Insert default products that do not exist yet. Idempotent."""
        from metered_billing.database.seeds import DEFAULT_PRODUCTS

        async with self.session() as db:
            created = 0
            for product_data in DEFAULT_PRODUCTS:
                result = await db.execute(
                    select(SubscriptionProduct.id).where(
                        SubscriptionProduct.name == product_data["name"]
                    )
                )
                if result.scalar_one_or_none() is None:
                    db.add(SubscriptionProduct(**product_data))
                    created += 1
        if created:
            logger.info("Seeded default products", count=created)

    async def close(self) -> None:
        """Dispose the connection pool."""
        logger.info("Closing database connection pool")
        await self.engine.dispose()

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Session that commits on success and rolls back on error.

        Usage:
            async with database.session() as db:
                ...
        """
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """Dependency for getting a database session from the app's store handle.

    Usage:
        @router.get("/items")
        async def get_items(db: AsyncSession = Depends(get_db)):
            ...
    """
    database: Database = request.app.state.db
    async with database.session() as session:
        yield session
