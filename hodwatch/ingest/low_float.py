"""Low-float watch-list builder.

Every cycle the stale part of low_float_tickers is pruned, then market_data is
screened for movers (price band, minimum volume, minimum gain) and each
candidate is checked against its share count in ticker_metadata. Survivors
are upserted as the watch-list read by the HOD scanner.
"""

from datetime import datetime, timedelta, timezone
from typing import Any

from loguru import logger

from hodwatch.config.constants import IngestConstants, Table
from hodwatch.config.settings import get_settings
from hodwatch.database.store import Store, StoreError


def resolve_float(metadata: dict[str, Any] | None) -> float | None:
    """Share-class shares outstanding, falling back to weighted shares."""
    if not metadata:
        return None
    for key in ("share_class_shares_outstanding", "weighted_shares_outstanding"):
        value = metadata.get(key)
        if value is not None:
            return float(value)
    return None


def relative_volume(volume: float, avg_daily_volume: float | None) -> float | None:
    if not avg_daily_volume or avg_daily_volume <= 0:
        return None
    return volume / avg_daily_volume


class LowFloatFilter:
    """Screens market_data into low_float_tickers."""

    def __init__(
        self,
        store: Store,
        min_price: float | None = None,
        max_price: float | None = None,
        min_volume: float | None = None,
        min_change_percent: float | None = None,
        min_float: float | None = None,
        max_float: float | None = None,
        min_rel_vol: float | None = None,
        retention: timedelta | None = None,
        batch_size: int = IngestConstants.LOW_FLOAT_BATCH_SIZE,
    ):
        settings = get_settings()
        self._store = store
        self.min_price = settings.low_float_min_price if min_price is None else min_price
        self.max_price = settings.low_float_max_price if max_price is None else max_price
        self.min_volume = settings.low_float_min_volume if min_volume is None else min_volume
        self.min_change_percent = (
            settings.low_float_min_change_percent
            if min_change_percent is None
            else min_change_percent
        )
        self.min_float = settings.low_float_min_float if min_float is None else min_float
        self.max_float = settings.low_float_max_float if max_float is None else max_float
        self.min_rel_vol = settings.low_float_min_rel_vol if min_rel_vol is None else min_rel_vol
        self.retention = retention or timedelta(minutes=settings.low_float_retention_minutes)
        self._batch_size = batch_size

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def prune(self, now: datetime) -> int:
        """Drop watch-list rows older than the retention window."""
        filtered_at = self._store.column(Table.LOW_FLOAT_TICKERS, "filtered_at")
        try:
            deleted = await self._store.delete(
                Table.LOW_FLOAT_TICKERS, filtered_at < now - self.retention
            )
        except StoreError as e:
            logger.error(f"Error deleting old low_float_tickers rows: {e}")
            return 0
        logger.debug(f"Removed {deleted} stale low_float_tickers rows")
        return deleted

    async def load_candidates(self) -> list[dict[str, Any]]:
        """market_data rows inside the price band with enough volume and gain."""
        price = self._store.column(Table.MARKET_DATA, "price")
        volume = self._store.column(Table.MARKET_DATA, "volume")
        change = self._store.column(Table.MARKET_DATA, "change_percent")
        return await self._store.select_all(
            Table.MARKET_DATA,
            ["ticker", "price", "volume", "change_percent", "avg_daily_volume"],
            None,
            price.is_not(None),
            volume.is_not(None),
            change.is_not(None),
            price >= self.min_price,
            price <= self.max_price,
            volume >= self.min_volume,
            change > self.min_change_percent,
        )

    async def load_share_counts(self, tickers: list[str]) -> dict[str, dict[str, Any]]:
        rows = await self._store.select_in(
            Table.TICKER_METADATA,
            ["ticker", "share_class_shares_outstanding", "weighted_shares_outstanding"],
            "ticker",
            tickers,
        )
        return {row["ticker"]: row for row in rows}

    def screen(
        self,
        candidates: list[dict[str, Any]],
        share_counts: dict[str, dict[str, Any]],
        now: datetime,
    ) -> list[dict[str, Any]]:
        """Apply the float band and relative-volume floor to the candidates."""
        selected: list[dict[str, Any]] = []
        missing_float = 0
        rejected = 0

        for row in candidates:
            float_shares = resolve_float(share_counts.get(row["ticker"]))
            if float_shares is None:
                missing_float += 1
                continue

            volume = float(row["volume"])
            rel_vol = relative_volume(volume, row.get("avg_daily_volume"))

            if not self.min_float <= float_shares <= self.max_float:
                rejected += 1
                continue
            if rel_vol is not None and rel_vol < self.min_rel_vol:
                rejected += 1
                continue

            selected.append(
                {
                    "ticker": row["ticker"],
                    "float": float_shares,
                    "volume": volume,
                    "price": float(row["price"]),
                    "percent_change": float(row["change_percent"]),
                    "rel_vol": rel_vol,
                    "source": IngestConstants.LOW_FLOAT_SOURCE,
                    "filtered_at": now,
                }
            )

        logger.debug(
            f"Skipped {missing_float} tickers without float, "
            f"{rejected} not meeting float/rel-vol criteria"
        )
        return selected

    async def save(self, rows: list[dict[str, Any]]) -> int:
        """Upsert in batches; a failed batch is logged and the rest continue."""
        stored = 0
        for start in range(0, len(rows), self._batch_size):
            batch = rows[start : start + self._batch_size]
            batch_number = start // self._batch_size + 1
            try:
                stored += await self._store.upsert(
                    Table.LOW_FLOAT_TICKERS, batch, conflict_key="ticker"
                )
            except StoreError as e:
                logger.error(f"Error upserting low-float batch {batch_number}: {e}")
                continue
            logger.debug(f"Upserted low-float batch {batch_number}: {len(batch)} tickers")
        return stored

    # ------------------------------------------------------------------
    # Cycle
    # ------------------------------------------------------------------

    async def filter_and_store(self) -> tuple[int, int]:
        """
        One full pass.

        Returns:
            (total_filtered, total_stored)
        """
        now = datetime.now(timezone.utc)
        await self.prune(now)

        candidates = await self.load_candidates()
        logger.debug(f"Fetched {len(candidates)} pre-filtered tickers from market_data")
        if not candidates:
            logger.info("No tickers found with basic criteria")
            return 0, 0

        tickers = list(dict.fromkeys(row["ticker"] for row in candidates))
        share_counts = await self.load_share_counts(tickers)

        selected = self.screen(candidates, share_counts, now)
        if not selected:
            logger.info("No low-float tickers found matching criteria")
            return 0, 0

        for row in selected:
            logger.debug(
                f"[LOW FLOAT] {row['ticker']} | Price: {row['price']} | Float: {row['float']} | "
                f"Volume: {row['volume']} | Change%: {row['percent_change']} | "
                f"RelVol: {row['rel_vol']}"
            )

        stored = await self.save(selected)
        logger.info(f"Low-float filter: {len(selected)} matched, {stored} stored")
        return len(selected), stored

    async def run_cycle(self) -> int:
        _, stored = await self.filter_and_store()
        return stored
