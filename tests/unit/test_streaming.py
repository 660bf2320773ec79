"""Unit tests for the live trade streamer."""

import contextlib
import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest

from hodwatch.config.constants import Table
from hodwatch.data.backoff import ReconnectBackoff
from hodwatch.data.streaming import (
    InvalidTransitionError,
    LiveTradeStreamer,
    StreamState,
    parse_trade,
)
from hodwatch.database.store import StoreError

AUTHENTICATED = json.dumps(
    [
        {"ev": "status", "status": "connected", "message": "Connected Successfully"},
        {"ev": "status", "status": "auth_success", "message": "authenticated"},
    ]
)


def trade_frame(symbol="NEWCO", price=3.21, ts_ms=1_741_966_200_000):
    return json.dumps([{"ev": "T", "sym": symbol, "p": price, "s": 100, "t": ts_ms}])


class FakeSocket:
    """Minimal stand-in for a websockets client connection."""

    def __init__(self, frames=(), on_drained=None):
        self.frames = list(frames)
        self.sent = []
        self.closed = False
        self.on_drained = on_drained

    async def send(self, message):
        self.sent.append(json.loads(message))

    async def close(self):
        self.closed = True

    def __aiter__(self):
        return self._iterate()

    async def _iterate(self):
        for frame in self.frames:
            if self.closed:
                return
            yield frame
        if self.on_drained is not None:
            await self.on_drained()


def fake_connect(outcomes):
    """Connect factory yielding sockets (or raising exceptions) in order."""
    remaining = iter(outcomes)
    urls = []

    @contextlib.asynccontextmanager
    async def connect(url, **kwargs):
        urls.append(url)
        outcome = next(remaining)
        if isinstance(outcome, BaseException):
            raise outcome
        yield outcome

    return connect, urls


class FakeClock:
    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now


def make_streamer(store, **kwargs):
    kwargs.setdefault("backoff", ReconnectBackoff(initial=0.01, maximum=0.02))
    return LiveTradeStreamer(
        store, api_key="test-key", url="wss://stream.test/stocks", stale_after=30, **kwargs
    )


async def open_streamer(streamer, ws=None):
    """Drive the streamer to AUTHENTICATING over a fake socket."""
    ws = ws or FakeSocket()
    streamer._transition(StreamState.CONNECTING)
    await streamer._on_open(ws)
    return ws


@pytest.mark.unit
class TestReconnectBackoff:
    """Tests for the reconnect delay schedule."""

    def test_delay_formula(self):
        backoff = ReconnectBackoff(initial=1.0, maximum=10.0)
        delays = [backoff.next_delay() for _ in range(7)]
        assert delays == [1.0, 2.0, 4.0, 8.0, 10.0, 10.0, 10.0]

    def test_delay_for_matches_min_expression(self):
        backoff = ReconnectBackoff()
        for n in range(1, 12):
            assert backoff.delay_for(n) == min(1000 * 2 ** (n - 1), 10000) / 1000

    def test_reset(self):
        backoff = ReconnectBackoff()
        backoff.next_delay()
        backoff.next_delay()
        backoff.reset()
        assert backoff.attempts == 0
        assert backoff.next_delay() == 1.0

    def test_invalid_bounds(self):
        with pytest.raises(ValueError):
            ReconnectBackoff(initial=5.0, maximum=1.0)


@pytest.mark.unit
class TestParseTrade:
    """Tests for trade event parsing."""

    def test_parses_symbol_price_and_ms_timestamp(self):
        trade = parse_trade({"ev": "T", "sym": "ABCD", "p": 1.5, "t": 1_741_966_200_000})
        assert trade.symbol == "ABCD"
        assert trade.price == 1.5
        assert trade.timestamp == datetime(2025, 3, 14, 15, 30, tzinfo=timezone.utc)

    def test_malformed_events(self):
        assert parse_trade({"ev": "T", "p": 1.5}) is None
        assert parse_trade({"ev": "T", "sym": "ABCD", "p": "1.5"}) is None
        assert parse_trade({"ev": "T", "sym": "ABCD", "p": 0}) is None

    def test_missing_timestamp_uses_receive_time(self):
        before = datetime.now(timezone.utc)
        trade = parse_trade({"ev": "T", "sym": "ABCD", "p": 1.5})
        assert trade.timestamp >= before


@pytest.mark.unit
@pytest.mark.asyncio
class TestStateMachine:
    """Tests for the connection state machine and frame handling."""

    async def test_invalid_transition_rejected(self, store):
        streamer = make_streamer(store)
        with pytest.raises(InvalidTransitionError):
            streamer._transition(StreamState.STREAMING)
        assert streamer.state is StreamState.DISCONNECTED

    async def test_open_sends_auth_and_resets_backoff(self, store):
        streamer = make_streamer(store)
        streamer._backoff.next_delay()
        ws = await open_streamer(streamer)

        assert streamer.state is StreamState.AUTHENTICATING
        assert ws.sent == [{"action": "auth", "params": "test-key"}]
        assert streamer._backoff.attempts == 0

    async def test_authenticated_subscribes_to_all_trades(self, store):
        streamer = make_streamer(store)
        ws = await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        assert streamer.state is StreamState.SUBSCRIBED
        assert ws.sent[-1] == {"action": "subscribe", "params": "T.*"}

    async def test_bare_authenticated_status_also_subscribes(self, store):
        streamer = make_streamer(store)
        ws = await open_streamer(streamer)
        await streamer.handle_frame(json.dumps([{"ev": "status", "status": "authenticated"}]))

        assert streamer.state is StreamState.SUBSCRIBED
        assert ws.sent[-1] == {"action": "subscribe", "params": "T.*"}

    async def test_auth_failure_does_not_subscribe(self, store):
        streamer = make_streamer(store)
        ws = await open_streamer(streamer)
        failed = [{"ev": "status", "status": "auth_failed", "message": "authentication failed"}]
        await streamer.handle_frame(json.dumps(failed))

        assert streamer.state is StreamState.AUTHENTICATING
        assert ws.sent == [{"action": "auth", "params": "test-key"}]

    async def test_trade_before_authentication_not_applied(self, store):
        streamer = make_streamer(store)
        await open_streamer(streamer)

        applied = await streamer.handle_frame(trade_frame("EARLY"))

        assert applied == 0
        assert await store.select(Table.MARKET_DATA) == []
        assert streamer.get_health_status()["trades_rejected"] == 1

    async def test_trade_for_unseen_symbol_creates_row(self, store):
        streamer = make_streamer(store)
        await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        applied = await streamer.handle_frame(trade_frame("NEWCO", 3.21))

        assert applied == 1
        assert streamer.state is StreamState.STREAMING
        rows = await store.select(Table.MARKET_DATA, ["ticker", "price", "volume", "last_updated"])
        assert len(rows) == 1
        assert rows[0]["ticker"] == "NEWCO"
        assert rows[0]["price"] == 3.21
        assert rows[0]["volume"] is None
        assert rows[0]["last_updated"] is not None

    async def test_trade_only_touches_price_and_timestamp(self, store):
        await store.upsert(
            Table.MARKET_DATA,
            [{"ticker": "ABCD", "price": 1.0, "volume": 900_000, "day_high": 1.4}],
        )
        streamer = make_streamer(store)
        await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)
        await streamer.handle_frame(trade_frame("ABCD", 1.1))

        rows = await store.select(Table.MARKET_DATA, ["price", "volume", "day_high"])
        assert rows == [{"price": 1.1, "volume": 900_000, "day_high": 1.4}]

    async def test_malformed_frame_is_ignored(self, store):
        streamer = make_streamer(store)
        await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        assert await streamer.handle_frame("not json") == 0
        assert await streamer.handle_frame(json.dumps({"unexpected": "object"})) == 0
        assert streamer.state is StreamState.SUBSCRIBED

    async def test_store_error_does_not_break_stream(self):
        store = MagicMock()
        store.upsert = AsyncMock(side_effect=StoreError("db down"))
        streamer = make_streamer(store)
        await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        assert await streamer.handle_frame(trade_frame()) == 0
        assert streamer.state is StreamState.STREAMING
        assert streamer.get_health_status()["store_failures"] == 1

    async def test_no_writes_after_shutdown(self, store):
        streamer = make_streamer(store)
        ws = await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        await streamer.shutdown()
        applied = await streamer.handle_frame(trade_frame("LATE"))

        assert applied == 0
        assert ws.closed is True
        assert streamer.state is StreamState.SHUTTING_DOWN
        assert await store.select(Table.MARKET_DATA) == []


@pytest.mark.unit
@pytest.mark.asyncio
class TestWatchdog:
    """Tests for stale-data detection."""

    async def test_stale_after_silence(self, store):
        clock = FakeClock()
        streamer = make_streamer(store, clock=clock)
        await open_streamer(streamer)

        clock.now += 29
        assert streamer.check_stale() is False
        clock.now += 2
        assert streamer.check_stale() is True

    async def test_trade_resets_silence(self, store):
        clock = FakeClock()
        streamer = make_streamer(store, clock=clock)
        await open_streamer(streamer)
        await streamer.handle_frame(AUTHENTICATED)

        clock.now += 31
        await streamer.handle_frame(trade_frame())
        assert streamer.check_stale() is False

    async def test_not_stale_when_disconnected(self, store):
        clock = FakeClock()
        streamer = make_streamer(store, clock=clock)
        clock.now += 1000
        assert streamer.check_stale() is False


@pytest.mark.unit
@pytest.mark.asyncio
class TestRunLoop:
    """Tests for the connect/reconnect loop."""

    async def test_reconnects_after_failure_then_streams(self, store):
        streamer = None

        async def stop():
            await streamer.shutdown()

        ws = FakeSocket([AUTHENTICATED, trade_frame("ABCD", 2.0)], on_drained=stop)
        connect, urls = fake_connect([OSError("connection refused"), ws])
        streamer = make_streamer(store, connect=connect)

        await streamer.run()

        assert urls == ["wss://stream.test/stocks", "wss://stream.test/stocks"]
        assert streamer.state is StreamState.SHUTTING_DOWN
        assert streamer._backoff.attempts == 0
        assert ws.sent == [
            {"action": "auth", "params": "test-key"},
            {"action": "subscribe", "params": "T.*"},
        ]
        rows = await store.select(Table.MARKET_DATA, ["ticker", "price"])
        assert rows == [{"ticker": "ABCD", "price": 2.0}]

    async def test_shutdown_while_connecting_skips_reconnect(self, store):
        streamer = None

        @contextlib.asynccontextmanager
        async def connect(url, **kwargs):
            await streamer.shutdown()
            raise OSError("refused")
            yield FakeSocket()

        streamer = make_streamer(
            store, connect=connect, backoff=ReconnectBackoff(initial=60, maximum=60)
        )
        await streamer.run()

        assert streamer.state is StreamState.SHUTTING_DOWN
        assert streamer._backoff.attempts == 0
