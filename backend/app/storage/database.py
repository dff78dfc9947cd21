"""Database connection and table definitions."""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base

from app.config import get_settings

Base = declarative_base()


class PriceEventTable(Base):
    """Recorded quote ticks, one row per market event window.

    ``prices`` is a JSONB array of ``{t, yb, ya, nb, na}`` points (cents).
    """

    __tablename__ = "price_events"

    market_id = Column(Text, primary_key=True)
    event_start = Column(DateTime(timezone=True), primary_key=True)
    event_end = Column(DateTime(timezone=True), nullable=False)
    yes_token_id = Column(Text, nullable=False, default="")
    no_token_id = Column(Text, nullable=False, default="")
    prices = Column(JSONB, nullable=False, server_default=text("'[]'::jsonb"))
    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"))
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"), onupdate=text("NOW()"))

    __table_args__ = (
        Index("idx_price_events_market_time", "market_id", "event_start", "event_end"),
    )


class StrategyTable(Base):
    """User strategies (read-only for this service).

    Indicators, conditions and actions are stored as camelCase JSONB
    documents.
    """

    __tablename__ = "strategies"

    id = Column(String(36), primary_key=True)
    user_address = Column(Text, nullable=False, default="")
    name = Column(Text, nullable=False)
    asset = Column(Text, nullable=False)
    direction = Column(Text, nullable=False)
    timeframe = Column(Text, nullable=False)
    is_active = Column(Boolean, default=False)
    indicators = Column(JSONB, server_default=text("'[]'::jsonb"))
    condition_logic = Column(Text, default="all")
    conditions = Column(JSONB, server_default=text("'[]'::jsonb"))
    actions = Column(JSONB, server_default=text("'[]'::jsonb"))
    market = Column(Text, nullable=True)
    side = Column(Text, nullable=True)
    fixed_shares_amount = Column(Integer, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"))
    updated_at = Column(DateTime(timezone=True), server_default=text("NOW()"), onupdate=text("NOW()"))

    __table_args__ = (
        Index("idx_strategies_active", "is_active"),
    )


class IndicatorCacheTable(Base):
    """Precomputed indicator points.

    ``indicator_params`` holds the parameters serialized with sorted keys,
    so one configuration always maps to one key.
    """

    __tablename__ = "indicator_cache"

    id = Column(Integer, primary_key=True, autoincrement=True)
    asset = Column(Text, nullable=False)
    timeframe = Column(Text, nullable=False)
    indicator_type = Column(Text, nullable=False)
    indicator_params = Column(Text, nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    value = Column(JSONB, nullable=True)
    values = Column(JSONB, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=text("NOW()"))

    __table_args__ = (
        UniqueConstraint(
            "asset", "timeframe", "indicator_type", "indicator_params", "timestamp",
            name="uq_indicator_cache_key",
        ),
        Index(
            "idx_indicator_cache_lookup",
            "asset", "timeframe", "indicator_type", "indicator_params", timestamp.desc(),
        ),
        Index("idx_indicator_cache_time", timestamp.desc()),
    )


class Database:
    """Database connection manager."""

    def __init__(self, database_url: str | None = None):
        settings = get_settings()
        url = database_url or settings.database_url

        # Convert postgresql:// to postgresql+asyncpg://
        if url.startswith("postgresql://"):
            url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

        # Bounded pool; every statement runs under a server-side timeout
        timeout_ms = int(settings.db_command_timeout * 1000)
        self.engine = create_async_engine(
            url,
            echo=settings.debug,
            pool_size=settings.db_pool_size,
            max_overflow=settings.db_max_overflow,
            pool_pre_ping=True,
            pool_recycle=3600,
            pool_timeout=30,
            connect_args={
                "timeout": 10,
                "command_timeout": settings.db_command_timeout,
                "server_settings": {
                    "statement_timeout": str(timeout_ms),
                },
            },
        )
        self.session_factory = async_sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self) -> None:
        """Create all tables if they do not exist."""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    @asynccontextmanager
    async def session(self) -> AsyncGenerator[AsyncSession, None]:
        """Get a database session."""
        async with self.session_factory() as session:
            try:
                yield session
                await session.commit()
            except Exception:
                await session.rollback()
                raise

    async def close(self) -> None:
        """Close database connection."""
        await self.engine.dispose()


# Global database instance
_db: Database | None = None


def get_database() -> Database:
    """Get the global database instance."""
    global _db
    if _db is None:
        _db = Database()
    return _db


async def init_database() -> Database:
    """Initialize the database and create tables."""
    db = get_database()
    await db.create_tables()
    return db
