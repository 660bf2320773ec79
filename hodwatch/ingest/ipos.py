"""IPO calendar ingestion into the ipos table."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import date, datetime, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.config.settings import get_settings
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.database.store import Store, StoreError
from hodwatch.ingest.metadata import parse_iso_timestamp

# Columns refreshed on a listing that is already stored
REFRESH_COLUMNS = (
    "name",
    "exchange",
    "offer_price",
    "shares",
    "status",
    "published_at",
    "collected_at",
)


def parse_date(value: Any) -> date | None:
    if not isinstance(value, str) or len(value) < 10:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        return None


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def build_ipo_record(item: dict[str, Any], now: datetime) -> dict[str, Any] | None:
    """Map a Polygon IPO result to an ipos row, or None if it has no ticker."""
    ticker = item.get("ticker")
    if not ticker:
        return None

    published_at = parse_iso_timestamp(
        _first(item, "last_updated", "published_utc", "updated_utc")
    )
    return {
        "ticker": str(ticker),
        "name": _first(item, "issuer_name", "name") or "",
        "exchange": _first(item, "primary_exchange", "exchange") or "",
        "offer_date": parse_date(_first(item, "listing_date", "offer_date")),
        "offer_price": _first(item, "final_issue_price", "offer_price"),
        "shares": _first(item, "max_shares_offered", "total_offer_size", "shares"),
        "status": _first(item, "ipo_status", "status") or "unknown",
        "published_at": published_at or now,
        "collected_at": now,
    }


def listing_key(record: dict[str, Any]) -> tuple[str, date | None]:
    return record["ticker"], record["offer_date"]


class IpoIngestor:
    """Pages recent IPO listings, inserting new ones and refreshing known ones."""

    def __init__(
        self,
        store: Store,
        client: PolygonClient,
        page_delay: float | None = None,
        max_pages: int = IngestConstants.IPO_MAX_PAGES,
        batch_size: int = IngestConstants.IPO_INSERT_BATCH_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._client = client
        self._page_delay = (
            get_settings().ipo_page_delay_seconds if page_delay is None else page_delay
        )
        self._max_pages = max_pages
        self._batch_size = batch_size
        self._sleep = sleep

    async def fetch(self) -> tuple[list[dict[str, Any]], int]:
        """
        Follow ``next_url`` for at most ``max_pages`` pages.

        Returns:
            (records, total_fetched)
        """
        records: dict[tuple[str, date | None], dict[str, Any]] = {}
        total_fetched = 0
        next_url: str | None = None
        followed: set[str] = set()

        for page in range(1, self._max_pages + 1):
            logger.info(f"Fetching IPOs from Polygon (page {page})")
            try:
                results, next_url = await self._client.get_ipo_page(next_url)
            except ProviderError as e:
                logger.error(f"IPO page {page} failed: {e}")
                break

            logger.debug(f"Got {len(results)} IPOs on page {page}")
            if not results:
                break
            total_fetched += len(results)

            now = datetime.now(timezone.utc)
            for item in results:
                if not isinstance(item, dict):
                    continue
                record = build_ipo_record(item, now)
                if record is not None:
                    records.setdefault(listing_key(record), record)

            if not next_url:
                break
            if next_url in followed:
                logger.warning(f"IPO cursor repeated on page {page}, stopping: {next_url}")
                break
            followed.add(next_url)
            if page < self._max_pages:
                await self._sleep(self._page_delay)

        return list(records.values()), total_fetched

    async def _insert(self, records: list[dict[str, Any]]) -> int:
        saved = 0
        for start in range(0, len(records), self._batch_size):
            batch = records[start : start + self._batch_size]
            batch_number = start // self._batch_size + 1
            try:
                saved += await self._store.insert(Table.IPOS, batch)
            except StoreError as e:
                logger.error(f"Error inserting IPO batch {batch_number}: {e}")
                continue
            logger.debug(f"Inserted IPO batch {batch_number}: {len(batch)} IPOs")
        return saved

    async def _refresh(self, records: list[dict[str, Any]]) -> int:
        refreshed = 0
        for record in records:
            values = {column: record[column] for column in REFRESH_COLUMNS}
            where = {"ticker": record["ticker"], "offer_date": record["offer_date"]}
            try:
                refreshed += await self._store.update(Table.IPOS, values, where)
            except StoreError as e:
                logger.error(f"Error updating IPO {record['ticker']}: {e}")
        return refreshed

    async def run(self) -> tuple[int, int, int]:
        """
        Fetch and store IPO listings.

        Returns:
            (total_fetched, total_saved, total_updated)
        """
        records, total_fetched = await self.fetch()
        logger.info(f"Total IPOs fetched: {total_fetched}")
        if not records:
            logger.info("No IPOs found to process")
            return total_fetched, 0, 0

        try:
            existing = await self._store.select_in(
                Table.IPOS,
                ["ticker", "offer_date"],
                "ticker",
                sorted({r["ticker"] for r in records}),
            )
        except StoreError as e:
            logger.error(f"Could not check existing IPOs: {e}")
            return total_fetched, 0, 0

        known = {listing_key(row) for row in existing}
        fresh = [r for r in records if listing_key(r) not in known]
        stale = [r for r in records if listing_key(r) in known]
        logger.info(f"Found {len(stale)} existing IPOs, {len(fresh)} new IPOs to insert")

        total_saved = await self._insert(fresh)
        total_updated = await self._refresh(stale)

        logger.info(
            f"IPO fetch complete. Total saved: {total_saved} new IPOs, {total_updated} updated"
        )
        return total_fetched, total_saved, total_updated
