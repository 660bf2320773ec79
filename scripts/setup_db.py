#!/usr/bin/env python3
"""Database initialization script."""

import asyncio

from loguru import logger

from hodwatch.database import dispose_engine, init_db
from hodwatch.monitoring.logger import setup_logging


async def _init() -> None:
    try:
        await init_db()
    finally:
        await dispose_engine()


def main():
    """Create all hodwatch tables."""
    setup_logging("setup_db")
    logger.info("Initializing database...")

    try:
        asyncio.run(_init())
        logger.info("Database initialized successfully!")
    except Exception as e:
        logger.error(f"Failed to initialize database: {e}")
        raise


if __name__ == "__main__":
    main()
