"""High-of-day breakout detection over the low-float watch-list.

Each scan joins low_float_tickers with market_data and compares the current
price against a per-symbol high-water mark kept in memory:

    last_high = marks.get(symbol, day_high or 0)
    alert when price > last_high, then marks[symbol] = price

Marks only ever move up, so repeated scans over unchanged data alert once.
"""

from collections.abc import Callable
from datetime import datetime, timezone
from typing import Any

import pytz
from loguru import logger

from hodwatch.config.constants import AlertType, IngestConstants, RestartPolicy, Table
from hodwatch.config.settings import get_settings
from hodwatch.database.store import Store, StoreError


def trading_day_start(now: datetime, tz_name: str = IngestConstants.MARKET_TIMEZONE) -> datetime:
    """Midnight of ``now``'s date in the market timezone, as an aware UTC datetime."""
    market_tz = pytz.timezone(tz_name)
    local = now.astimezone(market_tz)
    midnight = market_tz.localize(datetime(local.year, local.month, local.day))
    return midnight.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HodScanner:
    """
    Owns the high-water marks and turns new highs into hod_alerts rows.

    Args:
        store: Shared store
        high_water_marks: Initial marks (symbol -> price); the scanner keeps
            and mutates this mapping
        restart_policy: How ``prepare`` seeds marks at startup
        clock: Returns the current aware datetime
    """

    def __init__(
        self,
        store: Store,
        high_water_marks: dict[str, float] | None = None,
        restart_policy: RestartPolicy | None = None,
        clock: Callable[[], datetime] | None = None,
        page_size: int = IngestConstants.PAGE_SIZE,
    ):
        self._store = store
        self.high_water_marks: dict[str, float] = (
            high_water_marks if high_water_marks is not None else {}
        )
        self.restart_policy = restart_policy or get_settings().hod_restart_policy
        self._clock = clock or _utcnow
        self._page_size = page_size
        self.alerts_emitted = 0
        self.alerts_lost = 0

    # ------------------------------------------------------------------
    # Startup
    # ------------------------------------------------------------------

    async def prepare(self) -> int:
        """
        Seed high-water marks according to the restart policy.

        Returns:
            Number of marks seeded
        """
        if self.restart_policy != RestartPolicy.RESUME:
            logger.info(
                "HOD restart policy 'day_high': marks are seeded from market_data.day_high; "
                "prices alerted before a restart may alert again"
            )
            return 0

        since = trading_day_start(self._clock())
        time_col = self._store.column(Table.HOD_ALERTS, "time")
        try:
            rows = await self._store.select_all(
                Table.HOD_ALERTS,
                ["id", "symbol", "price"],
                None,
                time_col >= since,
                page_size=self._page_size,
            )
        except StoreError as e:
            logger.error(
                f"HOD restart policy 'resume': could not read today's alerts ({e}); "
                "falling back to seeding from market_data.day_high"
            )
            return 0

        seeded = 0
        for row in rows:
            price = row.get("price")
            if price is None:
                continue
            current = self.high_water_marks.get(row["symbol"])
            if current is None:
                seeded += 1
            if current is None or price > current:
                self.high_water_marks[row["symbol"]] = price

        logger.info(
            f"HOD restart policy 'resume': seeded {seeded} marks from "
            f"{len(rows)} alerts since {since.isoformat()}"
        )
        return seeded

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    async def load_watchlist(self) -> list[dict[str, Any]]:
        return await self._store.select_all(
            Table.LOW_FLOAT_TICKERS, ["ticker", "float", "volume"], page_size=self._page_size
        )

    async def load_market_data(self, tickers: list[str]) -> dict[str, dict[str, Any]]:
        rows = await self._store.select_in(
            Table.MARKET_DATA,
            ["ticker", "price", "day_high", "volume"],
            "ticker",
            tickers,
            chunk_size=self._page_size,
        )
        return {row["ticker"]: row for row in rows}

    def evaluate(
        self,
        watchlist: list[dict[str, Any]],
        market_data: dict[str, dict[str, Any]],
        now: datetime,
    ) -> list[dict[str, Any]]:
        """Compare prices to the marks, raising them and returning the alert rows."""
        alerts: list[dict[str, Any]] = []
        for entry in watchlist:
            symbol = entry["ticker"]
            snapshot = market_data.get(symbol)
            if snapshot is None or snapshot.get("price") is None:
                continue

            price = snapshot["price"]
            last_high = self.high_water_marks.get(symbol)
            if last_high is None:
                last_high = snapshot.get("day_high") or 0
            if price <= last_high:
                continue

            self.high_water_marks[symbol] = price
            alerts.append(
                {
                    "symbol": symbol,
                    "time": now,
                    "volume": snapshot.get("volume"),
                    "float": entry.get("float"),
                    "alert_type": AlertType.HOD.value,
                    "price": price,
                }
            )
            logger.info(f"HOD alert: {symbol} - price ${price} > last high ${last_high}")
        return alerts

    async def scan_once(self) -> list[dict[str, Any]]:
        """
        Run one scan and append any alerts in a single insert.

        Returns:
            The alert rows produced this scan (also when the insert failed)
        """
        try:
            watchlist = await self.load_watchlist()
        except StoreError as e:
            logger.error(f"Error fetching low float tickers: {e}")
            return []
        if not watchlist:
            logger.warning("No low float tickers found")
            return []
        logger.debug(f"Loaded {len(watchlist)} low float tickers")

        try:
            market_data = await self.load_market_data([w["ticker"] for w in watchlist])
        except StoreError as e:
            logger.error(f"Error fetching market_data for watch-list: {e}")
            return []

        alerts = self.evaluate(watchlist, market_data, self._clock())
        if not alerts:
            logger.debug("No new HOD alerts to store")
            return alerts

        try:
            await self._store.insert(Table.HOD_ALERTS, alerts)
        except StoreError as e:
            # marks stay raised, these alerts are not retried
            self.alerts_lost += len(alerts)
            logger.error(f"Error storing {len(alerts)} HOD alerts: {e}")
            return alerts

        self.alerts_emitted += len(alerts)
        logger.info(f"Stored {len(alerts)} HOD alerts")
        return alerts

    async def run_cycle(self) -> int:
        return len(await self.scan_once())
