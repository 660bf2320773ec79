"""Bulk snapshot ingestion into market_data.

Every cycle:
1. Load the valid universe from ticker_metadata
2. Fetch the full-market snapshot from Polygon
3. Normalize entries with a positive close into market_data rows
4. Keep only symbols in the universe and upsert them in one batch
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import Table
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.database.store import Store, StoreError

# Upstream "updated" values outside this window are replaced by the ingestion time
MIN_PLAUSIBLE_TIMESTAMP = datetime(2000, 1, 1, tzinfo=timezone.utc)
MAX_FUTURE_SKEW = timedelta(days=1)


def epoch_to_datetime(value: Any) -> datetime | None:
    """
    Convert an epoch in seconds, ms, µs or ns to an aware UTC datetime.

    The unit is inferred from the magnitude. Returns None for zero, negative,
    non-numeric or out-of-range values.
    """
    if isinstance(value, bool) or not isinstance(value, int | float) or value <= 0:
        return None
    if value >= 1e17:
        seconds = value / 1e9
    elif value >= 1e14:
        seconds = value / 1e6
    elif value >= 1e11:
        seconds = value / 1e3
    else:
        seconds = float(value)
    try:
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def resolve_last_updated(updated: Any, now: datetime) -> datetime:
    """Upstream timestamp if plausible, otherwise the ingestion time."""
    ts = epoch_to_datetime(updated)
    if ts is None or ts < MIN_PLAUSIBLE_TIMESTAMP or ts > now + MAX_FUTURE_SKEW:
        return now
    return ts


def normalize_snapshot(
    entries: list[dict[str, Any]],
    now: datetime | None = None,
) -> list[dict[str, Any]]:
    """
    Turn snapshot entries into market_data rows.

    Entries without a ticker, without a day bar, or with ``day.c <= 0`` are
    dropped. ``avg_daily_volume`` is left out so values written elsewhere are
    not overwritten.
    """
    now = now or datetime.now(timezone.utc)
    records: list[dict[str, Any]] = []
    seen: set[str] = set()

    for entry in entries:
        if not isinstance(entry, dict):
            continue
        ticker = entry.get("ticker")
        day = entry.get("day")
        if not isinstance(ticker, str) or not ticker or not isinstance(day, dict):
            continue
        close = day.get("c")
        if isinstance(close, bool) or not isinstance(close, int | float) or close <= 0:
            continue
        # one row per symbol per batch, first occurrence wins
        if ticker in seen:
            continue
        seen.add(ticker)

        records.append(
            {
                "ticker": ticker,
                "price": close,
                "change_percent": entry.get("todaysChangePerc") or 0,
                "volume": day.get("v"),
                "high": day.get("h"),
                "low": day.get("l"),
                "open": day.get("o"),
                "close": close,
                "day_high": day.get("h"),
                "last_updated": resolve_last_updated(entry.get("updated"), now),
            }
        )

    return records


class SnapshotIngestor:
    """Fetch-normalize-filter-upsert cycle for the bulk snapshot endpoint."""

    def __init__(self, store: Store, client: PolygonClient):
        self._store = store
        self._client = client

    async def load_universe(self) -> set[str]:
        """All symbols present in ticker_metadata."""
        rows = await self._store.select_all(Table.TICKER_METADATA, ["ticker"])
        return {row["ticker"] for row in rows}

    async def run_cycle(self) -> int:
        """
        One full ingestion cycle.

        Returns:
            Number of market_data rows upserted (0 on any failure)
        """
        started = datetime.now(timezone.utc)
        logger.info(f"Starting market data fetch at {started.isoformat()}")

        try:
            universe = await self.load_universe()
        except StoreError as e:
            logger.error(f"Error loading ticker_metadata universe: {e}")
            return 0
        logger.debug(f"Found {len(universe)} valid tickers in ticker_metadata")

        if not universe:
            logger.warning("ticker_metadata is empty - nothing to ingest. Run the metadata job.")
            return 0

        try:
            entries = await self._client.get_snapshot_tickers()
        except ProviderError as e:
            logger.error(f"Bulk snapshot failed: {e}")
            return 0

        records = normalize_snapshot(entries, now=datetime.now(timezone.utc))
        logger.debug(f"Bulk snapshot returned {len(entries)} entries, {len(records)} valid records")
        if not records:
            logger.warning("No valid snapshot records parsed - check API response format")
            return 0

        filtered = [r for r in records if r["ticker"] in universe]
        if not filtered:
            logger.warning("No snapshot records match ticker_metadata after filtering")
            return 0

        try:
            upserted = await self._store.upsert(Table.MARKET_DATA, filtered, conflict_key="ticker")
        except StoreError as e:
            logger.error(f"Error upserting {len(filtered)} market_data records: {e}")
            return 0

        logger.info(
            f"Upserted {upserted} market_data records "
            f"({len(records) - len(filtered)} outside universe skipped)"
        )
        return upserted
