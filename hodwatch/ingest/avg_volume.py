"""Average daily volume for the low-float watch-list.

A finite job: for every watch-list symbol, request the last two weeks of daily
bars, average the volume of the most recent trading days that actually traded
and store it in market_data.avg_daily_volume, where the low-float filter reads
it to compute relative volume. Requests are spaced for the free-tier limit of
five per minute.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from datetime import date, datetime, timedelta, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.config.settings import get_settings
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.database.store import Store, StoreError


def average_daily_volume(
    bars: Sequence[dict[str, Any]],
    window: int = IngestConstants.AVG_VOLUME_WINDOW_DAYS,
) -> float | None:
    """Mean volume of the first ``window`` bars with positive volume, rounded.

    Bars are expected newest first. Returns None when no bar traded.
    """
    volumes: list[float] = []
    for bar in bars:
        volume = bar.get("v") if isinstance(bar, dict) else None
        if isinstance(volume, bool) or not isinstance(volume, int | float) or volume <= 0:
            continue
        volumes.append(float(volume))
        if len(volumes) == window:
            break
    if not volumes:
        return None
    return float(round(sum(volumes) / len(volumes)))


class AvgVolumeCalculator:
    """Throttled daily-bar fetch for every ticker on the low-float watch-list."""

    def __init__(
        self,
        store: Store,
        client: PolygonClient,
        request_delay: float | None = None,
        lookback_days: int = IngestConstants.AVG_VOLUME_LOOKBACK_DAYS,
        window: int = IngestConstants.AVG_VOLUME_WINDOW_DAYS,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._store = store
        self._client = client
        self._request_delay = (
            get_settings().avg_volume_request_delay_seconds
            if request_delay is None
            else request_delay
        )
        self._lookback_days = lookback_days
        self._window = window
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._sleep = sleep

    async def load_symbols(self) -> list[str]:
        rows = await self._store.select_all(Table.LOW_FLOAT_TICKERS, ["ticker"])
        return [row["ticker"] for row in rows]

    def date_range(self) -> tuple[date, date]:
        end = self._clock().date()
        return end - timedelta(days=self._lookback_days), end

    async def calculate(self, ticker: str) -> float | None:
        """Average daily volume for one symbol, or None when it cannot be computed."""
        start, end = self.date_range()
        try:
            bars = await self._client.get_daily_bars(ticker, start, end)
        except ProviderError as e:
            logger.warning(f"Failed to fetch daily bars for {ticker}: {e}")
            return None

        avg = average_daily_volume(bars, self._window)
        if avg is None:
            logger.info(f"No traded days for {ticker} between {start} and {end}")
        else:
            logger.debug(f"{ticker}: avg daily volume {avg:,.0f}")
        return avg

    async def run(self, limit: int | None = None) -> tuple[int, int, int]:
        """
        Compute and store the average for every watch-list symbol.

        Args:
            limit: Process at most this many symbols

        Returns:
            (total_processed, total_updated, total_errors)
        """
        try:
            symbols = await self.load_symbols()
        except StoreError as e:
            logger.error(f"Could not load low-float tickers: {e}")
            return 0, 0, 0
        if limit is not None:
            symbols = symbols[:limit]
        if not symbols:
            logger.info("No low-float tickers to process")
            return 0, 0, 0

        logger.info(f"Calculating average daily volume for {len(symbols)} tickers")
        updated = 0
        errors = 0

        for i, ticker in enumerate(symbols, start=1):
            avg = await self.calculate(ticker)
            if avg is None:
                errors += 1
            else:
                try:
                    rows = await self._store.update(
                        Table.MARKET_DATA, {"avg_daily_volume": avg}, {"ticker": ticker}
                    )
                except StoreError as e:
                    logger.error(f"Error updating avg daily volume for {ticker}: {e}")
                    errors += 1
                else:
                    if rows:
                        updated += 1
                    else:
                        logger.warning(f"{ticker} has no market_data row to update")
                        errors += 1

            if i < len(symbols):
                await self._sleep(self._request_delay)

        logger.info(
            f"Average daily volume complete. Processed: {len(symbols)}, "
            f"updated: {updated}, errors: {errors}"
        )
        return len(symbols), updated, errors
