"""
Database initialization module

This module creates all tables from the declarative models and checks that
an existing database carries them.
"""

from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine
from loguru import logger

from .models import Base

REQUIRED_TABLES = ("raffles", "accounts", "profiles")


async def init_database(engine: AsyncEngine):
    """Create all tables that do not exist yet"""
    try:
        async with engine.begin() as conn:
            logger.info("Creating database tables...")
            await conn.run_sync(Base.metadata.create_all)
        logger.success("✅ Database tables ready")
    except Exception as e:
        logger.exception(f"Failed to initialize database: {e}")
        raise


async def check_db_health(engine: AsyncEngine) -> bool:
    """
    Check if database is reachable and properly initialized

    Returns True if all required tables exist
    """
    try:
        async with engine.connect() as conn:
            existing = await conn.run_sync(lambda sync_conn: set(inspect(sync_conn).get_table_names()))
    except Exception as e:
        logger.error(f"Database health check failed: {e}")
        return False

    missing = [table for table in REQUIRED_TABLES if table not in existing]
    if missing:
        logger.warning(f"Missing tables: {', '.join(missing)}")
        return False

    logger.debug("Database health check passed")
    return True
