"""Unit tests for the HOD scanner."""

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from hodwatch.config.constants import RestartPolicy, Table
from hodwatch.database.store import StoreError
from hodwatch.scanner.hod_scanner import HodScanner, trading_day_start

# 10:30 US/Eastern on a trading day
NOW = datetime(2025, 3, 14, 14, 30, tzinfo=timezone.utc)


def make_scanner(store, **kwargs):
    kwargs.setdefault("restart_policy", RestartPolicy.DAY_HIGH)
    return HodScanner(store, clock=lambda: NOW, **kwargs)


async def seed_watchlist(store, *tickers, float_shares=1_000_000, volume=100):
    await store.upsert(
        Table.LOW_FLOAT_TICKERS,
        [{"ticker": t, "float": float_shares, "volume": volume} for t in tickers],
    )


def alert_row(symbol, time, price):
    return {"symbol": symbol, "time": time, "alert_type": "HOD", "price": price}


async def set_price(store, ticker, price, day_high=None, volume=500_000):
    row = {"ticker": ticker, "price": price, "volume": volume}
    if day_high is not None:
        row["day_high"] = day_high
    await store.upsert(Table.MARKET_DATA, [row])


@pytest.mark.unit
@pytest.mark.asyncio
class TestScan:
    """Tests for the high-water-mark comparison."""

    async def test_alert_once_then_again_on_new_high(self, store):
        await seed_watchlist(store, "AAPL", float_shares=1e6, volume=100)
        await set_price(store, "AAPL", 10, day_high=9)
        scanner = make_scanner(store)

        first = await scanner.scan_once()
        second = await scanner.scan_once()
        await set_price(store, "AAPL", 11)
        third = await scanner.scan_once()

        assert [a["symbol"] for a in first] == ["AAPL"]
        assert first[0]["price"] == 10
        assert first[0]["float"] == 1e6
        assert first[0]["alert_type"] == "HOD"
        assert second == []
        assert [a["price"] for a in third] == [11]

        stored = await store.select(Table.HOD_ALERTS, ["symbol", "price", "alert_type"])
        assert sorted(r["price"] for r in stored) == [10, 11]

    async def test_marks_never_decrease(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 5.0, day_high=4.0)
        scanner = make_scanner(store)

        await scanner.scan_once()
        await set_price(store, "ABCD", 4.5)
        assert await scanner.scan_once() == []
        assert scanner.high_water_marks["ABCD"] == 5.0

        await set_price(store, "ABCD", 5.0)
        assert await scanner.scan_once() == []

    async def test_price_at_day_high_does_not_alert(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 4.0, day_high=4.0)
        assert await make_scanner(store).scan_once() == []

    async def test_missing_day_high_seeds_from_zero(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 0.5)
        alerts = await make_scanner(store).scan_once()
        assert [a["symbol"] for a in alerts] == ["ABCD"]

    async def test_symbol_without_snapshot_is_skipped(self, store):
        await seed_watchlist(store, "ABCD", "NODATA")
        await set_price(store, "ABCD", 2.0, day_high=1.0)
        alerts = await make_scanner(store).scan_once()
        assert [a["symbol"] for a in alerts] == ["ABCD"]

    async def test_empty_watchlist(self, store):
        await set_price(store, "ABCD", 2.0, day_high=1.0)
        assert await make_scanner(store).scan_once() == []

    async def test_instances_do_not_share_marks(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 2.0, day_high=1.0)

        assert len(await make_scanner(store).scan_once()) == 1
        assert len(await make_scanner(store).scan_once()) == 1

    async def test_injected_marks_are_used(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 2.0, day_high=1.0)
        scanner = make_scanner(store, high_water_marks={"ABCD": 3.0})
        assert await scanner.scan_once() == []

    async def test_insert_failure_keeps_marks_raised(self):
        store = MagicMock()
        store.select_all = AsyncMock(
            return_value=[{"ticker": "ABCD", "float": 1e6, "volume": 100}]
        )
        store.select_in = AsyncMock(
            return_value=[{"ticker": "ABCD", "price": 2.0, "day_high": 1.0, "volume": 10}]
        )
        store.insert = AsyncMock(side_effect=StoreError("db down"))
        scanner = make_scanner(store)

        alerts = await scanner.scan_once()

        assert len(alerts) == 1
        assert scanner.high_water_marks["ABCD"] == 2.0
        assert scanner.alerts_lost == 1
        assert await scanner.scan_once() == []
        assert store.insert.await_count == 1

    async def test_one_insert_per_scan(self):
        store = MagicMock()
        store.select_all = AsyncMock(
            return_value=[{"ticker": t, "float": 1e6, "volume": 1} for t in ("A", "B", "C")]
        )
        store.select_in = AsyncMock(
            return_value=[
                {"ticker": t, "price": 2.0, "day_high": 1.0, "volume": 1} for t in ("A", "B", "C")
            ]
        )
        store.insert = AsyncMock(return_value=3)

        assert await make_scanner(store).run_cycle() == 3
        store.insert.assert_awaited_once()


@pytest.mark.unit
def test_trading_day_start_is_eastern_midnight():
    # 01:00 UTC on the 15th is still the 14th in New York
    start = trading_day_start(datetime(2025, 3, 15, 1, 0, tzinfo=timezone.utc))
    assert start == datetime(2025, 3, 14, 4, 0, tzinfo=timezone.utc)


@pytest.mark.unit
@pytest.mark.asyncio
class TestRestartPolicy:
    """Tests for high-water-mark seeding at startup."""

    async def test_day_high_policy_seeds_nothing(self, store):
        await store.insert(Table.HOD_ALERTS, [alert_row("ABCD", NOW, 2.0)])
        scanner = make_scanner(store)
        assert await scanner.prepare() == 0
        assert scanner.high_water_marks == {}

    async def test_resume_policy_uses_todays_highest_alert(self, store):
        await store.insert(
            Table.HOD_ALERTS,
            [
                alert_row("ABCD", NOW - timedelta(hours=1), 2.0),
                alert_row("ABCD", NOW, 2.4),
                alert_row("OLD", NOW - timedelta(days=2), 9.0),
            ],
        )
        scanner = make_scanner(store, restart_policy=RestartPolicy.RESUME)

        assert await scanner.prepare() == 1
        assert scanner.high_water_marks == {"ABCD": 2.4}

    async def test_resume_prevents_realert_after_restart(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 2.0, day_high=1.0)
        await make_scanner(store).scan_once()

        restarted = make_scanner(store, restart_policy=RestartPolicy.RESUME)
        await restarted.prepare()
        assert await restarted.scan_once() == []

        # the default policy re-alerts the same price
        assert len(await make_scanner(store).scan_once()) == 1

    async def test_resume_read_failure_falls_back_to_day_high(self, store):
        await seed_watchlist(store, "ABCD")
        await set_price(store, "ABCD", 2.0, day_high=1.5)
        scanner = make_scanner(store, restart_policy=RestartPolicy.RESUME)
        select_all = store.select_all
        store.select_all = AsyncMock(side_effect=StoreError("db blip"))

        assert await scanner.prepare() == 0
        assert scanner.high_water_marks == {}

        store.select_all = select_all
        alerts = await scanner.scan_once()
        assert [a["price"] for a in alerts] == [2.0]
