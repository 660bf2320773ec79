"""Table names, enums and fixed limits shared by the ingestion services."""

from dataclasses import dataclass
from enum import Enum


class Table(str, Enum):
    """Logical tables in the shared store."""

    TICKER_METADATA = "ticker_metadata"
    MARKET_DATA = "market_data"
    LOW_FLOAT_TICKERS = "low_float_tickers"
    HOD_ALERTS = "hod_alerts"
    NEWS = "news"
    IPOS = "ipos"


class AlertType(str, Enum):
    """Alert kinds written to hod_alerts."""

    HOD = "HOD"


class RestartPolicy(str, Enum):
    """How the HOD scanner seeds its high-water marks after a restart.

    - day_high: seed lazily from market_data.day_high on first sight (a price
      already alerted before the restart may alert again)
    - resume: seed from the highest alerted price per symbol recorded in
      hod_alerts since the start of the current trading day
    """

    DAY_HIGH = "day_high"
    RESUME = "resume"


@dataclass(frozen=True)
class IngestConstants:
    """Pagination and batching limits."""

    # Range reads and IN (...) lookups
    PAGE_SIZE: int = 1000

    # Metadata ingestor
    METADATA_BATCH_SIZE: int = 100

    # Low-float filter
    LOW_FLOAT_BATCH_SIZE: int = 100
    LOW_FLOAT_SOURCE: str = "auto_filter"

    # News ingestor
    NEWS_PAGE_LIMIT: int = 50
    NEWS_MAX_ARTICLES: int = 500
    NEWS_INSERT_BATCH_SIZE: int = 100

    # IPO ingestor
    IPO_PAGE_LIMIT: int = 50
    IPO_MAX_PAGES: int = 5
    IPO_INSERT_BATCH_SIZE: int = 50

    # Average daily volume job
    AVG_VOLUME_LOOKBACK_DAYS: int = 14
    AVG_VOLUME_WINDOW_DAYS: int = 10

    # Time constants
    MARKET_TIMEZONE: str = "America/New_York"
