"""Pytest configuration and fixtures."""

import os

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import create_async_engine
from sqlalchemy.pool import StaticPool

# Set test environment defaults (real env vars take precedence)
os.environ.setdefault("POLYGON_API_KEY", "test_placeholder_key")
os.environ.setdefault("DATABASE_URL", "postgresql://localhost:5432/test_db")

from hodwatch.database.connection import init_db  # noqa: E402
from hodwatch.database.store import Store  # noqa: E402


@pytest_asyncio.fixture
async def engine():
    """In-memory SQLite engine with every table created."""
    engine = create_async_engine(
        "sqlite+aiosqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def store(engine):
    """Store backed by the in-memory engine."""
    return Store(engine)


@pytest.fixture
def universe_rows():
    """ticker_metadata rows for a small universe."""
    return [
        {"ticker": "AAPL", "name": "Apple Inc.", "share_class_shares_outstanding": 15_000_000_000},
        {"ticker": "ABCD", "name": "Abcd Corp", "share_class_shares_outstanding": 5_000_000},
        {"ticker": "WXYZ", "name": "Wxyz Holdings", "weighted_shares_outstanding": 20_000_000},
    ]
