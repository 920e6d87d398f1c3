"""Schema management for the SQL store."""

import logging
from typing import Any

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncEngine

from otc_desk.data.database import TABLES, db_manager, metadata

logger = logging.getLogger(__name__)


async def create_tables(engine: AsyncEngine) -> None:
    """Create all entity tables (no-op for existing ones)."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)
    logger.info("Database tables created")


async def drop_tables(engine: AsyncEngine) -> None:
    """Drop all entity tables."""
    async with engine.begin() as conn:
        await conn.run_sync(metadata.drop_all)
    logger.info("Database tables dropped")


async def get_database_stats(engine: AsyncEngine) -> dict[str, Any]:
    """Row counts per entity table."""
    stats: dict[str, Any] = {}
    async with engine.connect() as conn:
        for entity, table in TABLES.items():
            result = await conn.execute(select(func.count()).select_from(table))
            stats[entity] = result.scalar_one()
    stats["total_records"] = sum(stats.values())
    return stats


async def initialize_database(reset: bool = False) -> AsyncEngine:
    """Create the configured engine and its schema.

    Args:
        reset: Drop existing tables first

    Returns:
        The initialized engine
    """
    engine = await db_manager.initialize()
    if reset:
        await drop_tables(engine)
    await create_tables(engine)
    return engine
