"""
Database configuration and session management.
Uses PostgreSQL via asyncpg with SQLAlchemy 2 async engine.
"""

import logging
import ssl
from sqlalchemy.ext.asyncio import create_async_engine, async_sessionmaker, AsyncSession
from sqlalchemy.orm import DeclarativeBase
from sqlalchemy import text
from smart_campaign.config import get_settings

logger = logging.getLogger(__name__)

settings = get_settings()


def _get_connect_args(url: str) -> dict:
    """Fail fast if the DB is unreachable; enable SSL for hosted Postgres proxies."""
    args = {"timeout": 30}
    if "rlwy.net" in url or "sslmode=require" in url:
        ctx = ssl.create_default_context()
        ctx.check_hostname = False
        ctx.verify_mode = ssl.CERT_NONE
        args["ssl"] = ctx
    return args


def build_engine(url: str):
    kwargs = {"echo": False, "connect_args": _get_connect_args(url)}
    if url.startswith("postgresql"):
        kwargs.update(pool_size=5, max_overflow=10, pool_pre_ping=True)
    return create_async_engine(url, **kwargs)


engine = build_engine(settings.database_url)

async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


async def init_db(bind=None):
    """
    Create all tables defined in models.
    Uses create_all which is safe — it only creates tables that don't exist yet.
    """
    # Import models to ensure they are registered with Base.metadata
    import smart_campaign.models  # noqa: F401

    async with (bind or engine).begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        logger.info(f"Database initialized with {len(Base.metadata.tables)} tables: "
                    f"{', '.join(Base.metadata.tables.keys())}")


async def check_db_connection() -> bool:
    """Test database connectivity."""
    try:
        async with engine.begin() as conn:
            await conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.error(f"Database connection failed: {e}")
        return False
