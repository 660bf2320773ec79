"""Database models and store access."""

from hodwatch.database.connection import dispose_engine, get_async_engine, init_db
from hodwatch.database.models import (
    Base,
    HodAlert,
    Ipo,
    LowFloatTicker,
    MarketData,
    NewsItem,
    TickerMetadata,
)
from hodwatch.database.store import Store, StoreError

__all__ = [
    "Base",
    "TickerMetadata",
    "MarketData",
    "LowFloatTicker",
    "HodAlert",
    "NewsItem",
    "Ipo",
    "Store",
    "StoreError",
    "get_async_engine",
    "dispose_engine",
    "init_db",
]
