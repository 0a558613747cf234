"""Utility helpers for administrative tasks."""
from __future__ import annotations

import asyncio
import logging

from sqlalchemy.ext.asyncio import AsyncEngine

from . import crud
from .database import Base, create_session_factory, engine

logger = logging.getLogger(__name__)


async def init_database(db_engine: AsyncEngine | None = None) -> int:
    """Create database tables and seed the built-in categories.

    Returns the number of categories that had to be inserted.
    """

    engine_to_use = db_engine or engine
    async with engine_to_use.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with create_session_factory(engine_to_use)() as session:
        added = await crud.seed_categories(session)
        await session.commit()
    if added:
        logger.info("Seeded %d built-in categories", added)
    return added


def cli_init_database() -> None:
    """CLI wrapper executed from :mod:`python -m`."""

    asyncio.run(init_database())


if __name__ == "__main__":
    cli_init_database()
