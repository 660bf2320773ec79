"""Per-symbol reference data ingestion into ticker_metadata.

A finite job: enumerate the symbols known to market_data, request reference
details one symbol at a time and upsert them in batches. Pacing is fixed to
stay under Polygon's rate limits (short delay between requests, longer delay
after each batch upsert).
"""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.config.settings import get_settings
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.database.store import Store, StoreError


def parse_iso_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string (``Z`` suffix allowed) to an aware datetime."""
    if not isinstance(value, str) or not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def build_metadata_record(ticker: str, details: dict[str, Any]) -> dict[str, Any]:
    """Map a Polygon ticker-details ``results`` object to a ticker_metadata row."""
    updated_at = parse_iso_timestamp(details.get("last_updated_utc"))
    return {
        "ticker": details.get("ticker") or ticker,
        "name": details.get("name"),
        "primary_exchange": details.get("primary_exchange"),
        "market_cap": details.get("market_cap"),
        "share_class_shares_outstanding": details.get("share_class_shares_outstanding"),
        "weighted_shares_outstanding": details.get("weighted_shares_outstanding"),
        "avg_volume_10d": details.get("avg_volume_10d"),
        "updated_at": updated_at or datetime.now(timezone.utc),
    }


class MetadataIngestor:
    """Throttled reference-data fetch for every symbol in market_data."""

    def __init__(
        self,
        store: Store,
        client: PolygonClient,
        request_delay: float | None = None,
        batch_delay: float | None = None,
        batch_size: int = IngestConstants.METADATA_BATCH_SIZE,
        page_size: int = IngestConstants.PAGE_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        settings = get_settings()
        self._store = store
        self._client = client
        self._request_delay = (
            settings.metadata_request_delay_seconds if request_delay is None else request_delay
        )
        self._batch_delay = (
            settings.metadata_batch_delay_seconds if batch_delay is None else batch_delay
        )
        self._batch_size = batch_size
        self._page_size = page_size
        self._sleep = sleep

    async def load_symbols(self) -> list[str]:
        """Every symbol in market_data, read in pages."""
        rows = await self._store.select_all(
            Table.MARKET_DATA, ["ticker"], page_size=self._page_size
        )
        return [row["ticker"] for row in rows]

    async def _flush(self, batch: list[dict[str, Any]], batch_number: int) -> int:
        try:
            upserted = await self._store.upsert(Table.TICKER_METADATA, batch, conflict_key="ticker")
        except StoreError as e:
            logger.error(f"Dropping metadata batch {batch_number} ({len(batch)} tickers): {e}")
            return 0
        logger.info(f"Upserted metadata batch {batch_number}: {upserted} tickers")
        return upserted

    async def run(self, limit: int | None = None) -> int:
        """
        Fetch and store reference data for the universe.

        Args:
            limit: Only process the first ``limit`` symbols

        Returns:
            Total rows upserted into ticker_metadata
        """
        symbols = await self.load_symbols()
        if limit is not None:
            symbols = symbols[:limit]
        logger.info(f"Total tickers loaded from market_data: {len(symbols)}")
        if not symbols:
            logger.error("No tickers found in market_data - run the snapshot ingestor first")
            return 0

        batch: list[dict[str, Any]] = []
        batch_number = 0
        total_upserted = 0
        skipped = 0

        for i, ticker in enumerate(symbols):
            if i % 10 == 0:
                logger.info(f"Processing ticker {i + 1}/{len(symbols)}: {ticker}")

            try:
                details = await self._client.get_ticker_details(ticker)
            except ProviderError as e:
                logger.error(f"Failed to fetch details for {ticker}: {e}")
                details = None
                skipped += 1
            else:
                if details is None:
                    logger.info(f"No details found for {ticker}")
                    skipped += 1
                else:
                    batch.append(build_metadata_record(ticker, details))

            if len(batch) >= self._batch_size:
                batch_number += 1
                total_upserted += await self._flush(batch, batch_number)
                batch = []
                logger.debug(f"Waiting {self._batch_delay}s before next batch")
                await self._sleep(self._batch_delay)
            elif i < len(symbols) - 1:
                await self._sleep(self._request_delay)

        if batch:
            batch_number += 1
            total_upserted += await self._flush(batch, batch_number)

        logger.info(
            f"Upserted a total of {total_upserted} tickers to ticker_metadata "
            f"({skipped} skipped without details)"
        )
        return total_upserted
