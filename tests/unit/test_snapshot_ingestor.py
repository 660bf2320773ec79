"""Unit tests for the bulk snapshot ingestor."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from hodwatch.config.constants import Table
from hodwatch.data.polygon import ProviderError
from hodwatch.database.store import StoreError
from hodwatch.ingest.snapshot import (
    SnapshotIngestor,
    epoch_to_datetime,
    normalize_snapshot,
    resolve_last_updated,
)

NOW = datetime(2025, 3, 14, 15, 30, tzinfo=timezone.utc)


def snapshot_entry(ticker, close, updated=None, **day):
    entry = {
        "ticker": ticker,
        "todaysChangePerc": 12.5,
        "day": {"c": close, "h": close + 0.1, "l": close - 0.1, "o": close - 0.05, "v": 250_000},
    }
    entry["day"].update(day)
    if updated is not None:
        entry["updated"] = updated
    return entry


def mock_client(entries=None, error=None):
    client = MagicMock()
    client.get_snapshot_tickers = AsyncMock(return_value=entries or [], side_effect=error)
    return client


@pytest.mark.unit
class TestTimestamps:
    """Tests for upstream timestamp handling."""

    def test_epoch_units_inferred_from_magnitude(self):
        expected = datetime(2025, 3, 14, 15, 30, tzinfo=timezone.utc)
        seconds = int(expected.timestamp())
        assert epoch_to_datetime(seconds) == expected
        assert epoch_to_datetime(seconds * 1_000) == expected
        assert epoch_to_datetime(seconds * 1_000_000) == expected
        assert epoch_to_datetime(seconds * 1_000_000_000) == expected

    def test_invalid_epochs(self):
        assert epoch_to_datetime(0) is None
        assert epoch_to_datetime(-5) is None
        assert epoch_to_datetime("soon") is None
        assert epoch_to_datetime(None) is None
        assert epoch_to_datetime(True) is None

    def test_fallback_to_ingestion_time(self):
        assert resolve_last_updated(0, NOW) == NOW
        assert resolve_last_updated(None, NOW) == NOW
        # before 2000
        assert resolve_last_updated(500_000_000, NOW) == NOW
        # more than a day in the future
        future = int((NOW + timedelta(days=3)).timestamp() * 1_000_000_000)
        assert resolve_last_updated(future, NOW) == NOW

    def test_plausible_timestamp_kept(self):
        earlier = NOW - timedelta(minutes=2)
        ns = int(earlier.timestamp()) * 1_000_000_000
        assert resolve_last_updated(ns, NOW) == earlier


@pytest.mark.unit
class TestNormalize:
    """Tests for snapshot normalization."""

    def test_maps_day_bar_fields(self):
        rows = normalize_snapshot([snapshot_entry("ABCD", 2.0)], now=NOW)
        assert rows == [
            {
                "ticker": "ABCD",
                "price": 2.0,
                "change_percent": 12.5,
                "volume": 250_000,
                "high": 2.1,
                "low": 1.9,
                "open": 1.95,
                "close": 2.0,
                "day_high": 2.1,
                "last_updated": NOW,
            }
        ]

    def test_non_positive_close_dropped(self):
        entries = [
            snapshot_entry("ZERO", 0),
            snapshot_entry("NEG", -1.0),
            snapshot_entry("OK", 1.0),
        ]
        rows = normalize_snapshot(entries, now=NOW)
        assert [r["ticker"] for r in rows] == ["OK"]
        assert all(r["close"] > 0 for r in rows)

    def test_entries_without_ticker_or_day_dropped(self):
        entries = [{"day": {"c": 1.0}}, {"ticker": "NODAY"}, {"ticker": "X", "day": {}}]
        assert normalize_snapshot(entries, now=NOW) == []

    def test_missing_change_percent_defaults_to_zero(self):
        entry = snapshot_entry("ABCD", 1.0)
        del entry["todaysChangePerc"]
        assert normalize_snapshot([entry], now=NOW)[0]["change_percent"] == 0

    def test_duplicate_ticker_first_wins(self):
        rows = normalize_snapshot([snapshot_entry("A", 1.0), snapshot_entry("A", 9.0)], now=NOW)
        assert len(rows) == 1
        assert rows[0]["price"] == 1.0

    def test_avg_daily_volume_not_written(self):
        assert "avg_daily_volume" not in normalize_snapshot([snapshot_entry("A", 1.0)], now=NOW)[0]


@pytest.mark.unit
@pytest.mark.asyncio
class TestRunCycle:
    """Tests for a full ingestion cycle against the store."""

    async def test_close_price_and_universe_filter(self, store, universe_rows):
        await store.upsert(Table.TICKER_METADATA, universe_rows)
        client = mock_client(
            [
                snapshot_entry("ABCD", 1.0),
                snapshot_entry("WXYZ", 0),
                snapshot_entry("NOTLISTED", 3.0),
            ]
        )

        upserted = await SnapshotIngestor(store, client).run_cycle()

        assert upserted == 1
        rows = await store.select(Table.MARKET_DATA, ["ticker", "price", "close", "last_updated"])
        assert [r["ticker"] for r in rows] == ["ABCD"]
        assert rows[0]["price"] == rows[0]["close"] == 1.0
        assert rows[0]["last_updated"] is not None

    async def test_second_cycle_overwrites_price(self, store, universe_rows):
        await store.upsert(Table.TICKER_METADATA, universe_rows)
        ingestor = SnapshotIngestor(store, mock_client([snapshot_entry("ABCD", 1.0)]))
        await ingestor.run_cycle()
        ingestor._client = mock_client([snapshot_entry("ABCD", 1.4)])
        await ingestor.run_cycle()

        rows = await store.select(Table.MARKET_DATA, ["price"], {"ticker": "ABCD"})
        assert rows == [{"price": 1.4}]

    async def test_keeps_avg_daily_volume(self, store, universe_rows):
        await store.upsert(Table.TICKER_METADATA, universe_rows)
        await store.upsert(Table.MARKET_DATA, [{"ticker": "ABCD", "avg_daily_volume": 80_000}])

        await SnapshotIngestor(store, mock_client([snapshot_entry("ABCD", 1.0)])).run_cycle()

        rows = await store.select(Table.MARKET_DATA, ["avg_daily_volume"], {"ticker": "ABCD"})
        assert rows == [{"avg_daily_volume": 80_000}]

    async def test_empty_universe_skips_fetch(self, store):
        client = mock_client([snapshot_entry("ABCD", 1.0)])
        assert await SnapshotIngestor(store, client).run_cycle() == 0
        client.get_snapshot_tickers.assert_not_awaited()

    async def test_provider_error_returns_zero(self, store, universe_rows):
        await store.upsert(Table.TICKER_METADATA, universe_rows)
        client = mock_client(error=ProviderError("boom"))
        assert await SnapshotIngestor(store, client).run_cycle() == 0

    async def test_store_error_on_upsert_returns_zero(self, universe_rows):
        store = MagicMock()
        store.select_all = AsyncMock(return_value=[{"ticker": "ABCD"}])
        store.upsert = AsyncMock(side_effect=StoreError("db down"))
        client = mock_client([snapshot_entry("ABCD", 1.0)])

        assert await SnapshotIngestor(store, client).run_cycle() == 0
        store.upsert.assert_awaited_once()
