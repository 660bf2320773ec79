"""Ticker-tagged news ingestion into the news table."""

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.config.settings import get_settings
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.database.store import Store, StoreError
from hodwatch.ingest.metadata import parse_iso_timestamp


def build_news_record(item: dict[str, Any], now: datetime) -> dict[str, Any] | None:
    """Map a Polygon news result to a news row, or None if it has no id or tickers."""
    tickers = item.get("tickers")
    article_id = item.get("id")
    if not article_id or not isinstance(tickers, list) or not tickers:
        return None

    publisher = item.get("publisher") if isinstance(item.get("publisher"), dict) else {}
    return {
        "id": str(article_id),
        "tickers": [str(t) for t in tickers],
        "headline": item.get("title") or item.get("headline") or "",
        "summary": item.get("summary") or item.get("description") or None,
        "url": item.get("article_url") or item.get("url") or "",
        "source": publisher.get("name") or item.get("source") or "Unknown",
        "published_at": parse_iso_timestamp(item.get("published_utc")) or now,
        "collected_at": now,
    }


class NewsIngestor:
    """Pages the newest articles and appends the ones not stored yet."""

    def __init__(
        self,
        store: Store,
        client: PolygonClient,
        page_delay: float | None = None,
        max_articles: int = IngestConstants.NEWS_MAX_ARTICLES,
        batch_size: int = IngestConstants.NEWS_INSERT_BATCH_SIZE,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._client = client
        self._page_delay = (
            get_settings().news_page_delay_seconds if page_delay is None else page_delay
        )
        self._max_articles = max_articles
        self._batch_size = batch_size
        self._sleep = sleep

    async def fetch(self) -> tuple[list[dict[str, Any]], int, int]:
        """
        Follow ``next_url`` until exhausted or ``max_articles`` tagged items are collected.

        Returns:
            (records, total_fetched, total_with_tickers)
        """
        records: dict[str, dict[str, Any]] = {}
        total_fetched = 0
        total_with_tickers = 0
        next_url: str | None = None
        followed: set[str] = set()
        page = 1

        while True:
            logger.info(f"Fetching news from Polygon (page {page})")
            try:
                results, next_url = await self._client.get_news_page(next_url)
            except ProviderError as e:
                logger.error(f"News page {page} failed: {e}")
                break

            total_fetched += len(results)
            now = datetime.now(timezone.utc)
            for item in results:
                if not isinstance(item, dict):
                    continue
                record = build_news_record(item, now)
                if record is None:
                    continue
                total_with_tickers += 1
                records.setdefault(record["id"], record)

            if not next_url or len(records) >= self._max_articles:
                break
            if next_url in followed:
                logger.warning(f"News cursor repeated on page {page}, stopping: {next_url}")
                break
            followed.add(next_url)
            page += 1
            await self._sleep(self._page_delay)

        return list(records.values())[: self._max_articles], total_fetched, total_with_tickers

    async def run(self) -> tuple[int, int, int]:
        """
        Fetch and store news.

        Returns:
            (total_fetched, total_with_tickers, total_saved)
        """
        records, total_fetched, total_with_tickers = await self.fetch()
        logger.info(
            f"Articles fetched: {total_fetched}, with tickers: {total_with_tickers}, "
            f"to store: {len(records)}"
        )
        if not records:
            return total_fetched, total_with_tickers, 0

        try:
            existing = await self._store.select_in(
                Table.NEWS, ["id"], "id", [r["id"] for r in records]
            )
        except StoreError as e:
            logger.error(f"Could not check existing news ids: {e}")
            return total_fetched, total_with_tickers, 0

        existing_ids = {row["id"] for row in existing}
        fresh = [r for r in records if r["id"] not in existing_ids]
        logger.debug(f"{len(existing_ids)} articles already stored, {len(fresh)} new")

        total_saved = 0
        for start in range(0, len(fresh), self._batch_size):
            batch = fresh[start : start + self._batch_size]
            try:
                total_saved += await self._store.insert(Table.NEWS, batch)
            except StoreError as e:
                logger.error(f"Error inserting news batch: {e}")

        logger.info(f"News fetch complete. Total saved: {total_saved} new items")
        return total_fetched, total_with_tickers, total_saved
