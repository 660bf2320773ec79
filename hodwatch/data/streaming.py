"""Real-time trade streaming from Polygon's websocket into market_data.

The connection lifecycle is an explicit state machine::

    DISCONNECTED -> CONNECTING -> AUTHENTICATING -> SUBSCRIBED -> STREAMING
                        ^               |               |            |
                        |               v               v            v
                        +----------- RECONNECTING <------------------+
    any state -> SHUTTING_DOWN (terminal)

- CONNECTING -> AUTHENTICATING when the socket opens; the auth message is sent
  and the reconnect backoff is reset.
- AUTHENTICATING -> SUBSCRIBED on an ``authenticated`` status event; the
  wildcard trade subscription is sent.
- SUBSCRIBED -> STREAMING on the first accepted trade.
- Any close or error while not shutting down -> RECONNECTING, which waits the
  backoff delay (1 s, doubling, capped at 10 s) and goes back to CONNECTING.

Trades are only applied in SUBSCRIBED/STREAMING. Each accepted trade is a
price + last_updated upsert on market_data; volume and high/low stay owned by
the snapshot ingestor.
"""

import asyncio
import contextlib
import json
import time as _time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any

import websockets
from loguru import logger
from websockets.exceptions import WebSocketException

from hodwatch.config.constants import Table
from hodwatch.config.settings import get_settings
from hodwatch.data.backoff import ReconnectBackoff
from hodwatch.database.store import Store, StoreError

# websockets keepalive
PING_INTERVAL_SECONDS = 20
PING_TIMEOUT_SECONDS = 60
CLOSE_TIMEOUT_SECONDS = 5


class StreamState(str, Enum):
    """Trade stream connection states."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    AUTHENTICATING = "authenticating"
    SUBSCRIBED = "subscribed"
    STREAMING = "streaming"
    RECONNECTING = "reconnecting"
    SHUTTING_DOWN = "shutting_down"


_ALLOWED_TRANSITIONS: dict[StreamState, frozenset[StreamState]] = {
    StreamState.DISCONNECTED: frozenset({StreamState.CONNECTING, StreamState.SHUTTING_DOWN}),
    StreamState.CONNECTING: frozenset(
        {StreamState.AUTHENTICATING, StreamState.RECONNECTING, StreamState.SHUTTING_DOWN}
    ),
    StreamState.AUTHENTICATING: frozenset(
        {StreamState.SUBSCRIBED, StreamState.RECONNECTING, StreamState.SHUTTING_DOWN}
    ),
    StreamState.SUBSCRIBED: frozenset(
        {StreamState.STREAMING, StreamState.RECONNECTING, StreamState.SHUTTING_DOWN}
    ),
    StreamState.STREAMING: frozenset({StreamState.RECONNECTING, StreamState.SHUTTING_DOWN}),
    StreamState.RECONNECTING: frozenset({StreamState.CONNECTING, StreamState.SHUTTING_DOWN}),
    StreamState.SHUTTING_DOWN: frozenset(),
}

# States with an open socket
CONNECTED_STATES = frozenset(
    {StreamState.AUTHENTICATING, StreamState.SUBSCRIBED, StreamState.STREAMING}
)

# States in which trade prints are applied to the store
TRADE_STATES = frozenset({StreamState.SUBSCRIBED, StreamState.STREAMING})

# Polygon acknowledges a good key with status "auth_success", message "authenticated"
AUTH_SUCCESS_STATUSES = frozenset({"auth_success", "authenticated"})


class InvalidTransitionError(RuntimeError):
    """Raised on a state change the stream state machine does not allow."""


@dataclass
class TradeData:
    """Processed trade print."""

    symbol: str
    price: float
    timestamp: datetime


def parse_trade(event: dict[str, Any]) -> TradeData | None:
    """
    Build a TradeData from a Polygon ``T`` event.

    Returns None when the symbol or price is missing or malformed. A missing
    exchange timestamp falls back to the receive time.
    """
    symbol = event.get("sym")
    price = event.get("p")
    if not isinstance(symbol, str) or not symbol:
        return None
    if isinstance(price, bool) or not isinstance(price, int | float) or price <= 0:
        return None

    ts_ms = event.get("t")
    if isinstance(ts_ms, int | float) and not isinstance(ts_ms, bool) and ts_ms > 0:
        timestamp = datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)
    else:
        timestamp = datetime.now(timezone.utc)

    return TradeData(symbol=symbol, price=float(price), timestamp=timestamp)


class LiveTradeStreamer:
    """
    Polygon trade stream with reconnect/backoff and a stale-data watchdog.

    Features:
    - Explicit connection state machine (see module docstring)
    - Exponential reconnect backoff, reset on every successful open
    - Warns when no trade has arrived for ``stale_after`` seconds
    - Clean shutdown: no store writes or reconnects once shutdown begins
    """

    def __init__(
        self,
        store: Store,
        api_key: str | None = None,
        url: str | None = None,
        subscription: str | None = None,
        backoff: ReconnectBackoff | None = None,
        stale_after: float | None = None,
        connect: Callable[..., Any] = websockets.connect,
        clock: Callable[[], float] = _time.monotonic,
    ):
        settings = get_settings()
        self._store = store
        self._api_key = api_key or settings.polygon_api_key
        self._url = url or settings.polygon_ws_url
        self._subscription = subscription or settings.stream_subscription
        self._backoff = backoff or ReconnectBackoff(
            initial=settings.stream_initial_backoff_seconds,
            maximum=settings.stream_max_backoff_seconds,
        )
        self._stale_after = stale_after or settings.stream_stale_after_seconds
        self._connect = connect
        self._clock = clock

        self._state = StreamState.DISCONNECTED
        self._ws: Any | None = None
        self._stop_event = asyncio.Event()
        self._watchdog_task: asyncio.Task | None = None

        # Counters for health reporting
        self._last_trade_at: float | None = None
        self._trades_applied = 0
        self._trades_rejected = 0
        self._store_failures = 0
        self._connections = 0

        logger.info(
            f"LiveTradeStreamer initialized - url: {self._url}, channel: {self._subscription}"
        )

    # ------------------------------------------------------------------
    # State machine
    # ------------------------------------------------------------------

    @property
    def state(self) -> StreamState:
        return self._state

    @property
    def is_shutting_down(self) -> bool:
        return self._state is StreamState.SHUTTING_DOWN

    def _transition(self, new_state: StreamState) -> None:
        """Move to ``new_state`` or raise InvalidTransitionError."""
        if new_state not in _ALLOWED_TRANSITIONS[self._state]:
            raise InvalidTransitionError(
                f"Invalid stream transition {self._state.value} -> {new_state.value}"
            )
        logger.debug(f"Trade stream: {self._state.value} -> {new_state.value}")
        self._state = new_state

    # ------------------------------------------------------------------
    # Connection loop
    # ------------------------------------------------------------------

    async def run(self) -> None:
        """Connect and stream until ``shutdown()`` is called."""
        if self._state is not StreamState.DISCONNECTED:
            logger.warning(f"LiveTradeStreamer.run() called in state {self._state.value}")
            return

        self._watchdog_task = asyncio.create_task(self._watchdog())
        try:
            while not self.is_shutting_down:
                self._transition(StreamState.CONNECTING)
                try:
                    await self._connect_once()
                    reason = "connection closed"
                except (OSError, asyncio.TimeoutError, WebSocketException) as e:
                    reason = f"{type(e).__name__}: {e}"

                if self.is_shutting_down:
                    break

                self._transition(StreamState.RECONNECTING)
                delay = self._backoff.next_delay()
                logger.warning(
                    f"Trade stream lost ({reason}). Reconnecting in {delay:.1f}s "
                    f"(attempt {self._backoff.attempts})"
                )
                await self._wait_for_retry(delay)
        finally:
            await self._stop_watchdog()
            logger.info("Trade stream loop exited")

    async def _connect_once(self) -> None:
        """Open one socket and process frames until it closes."""
        logger.info(f"Connecting to {self._url}...")
        async with self._connect(
            self._url,
            ping_interval=PING_INTERVAL_SECONDS,
            ping_timeout=PING_TIMEOUT_SECONDS,
            close_timeout=CLOSE_TIMEOUT_SECONDS,
        ) as ws:
            try:
                if self.is_shutting_down:
                    return
                await self._on_open(ws)
                async for raw in ws:
                    if self.is_shutting_down:
                        break
                    await self.handle_frame(raw)
            finally:
                self._ws = None

    async def _on_open(self, ws: Any) -> None:
        """Socket is open: authenticate and reset the backoff."""
        self._ws = ws
        self._connections += 1
        self._transition(StreamState.AUTHENTICATING)
        self._backoff.reset()
        # The watchdog measures silence from the moment the socket opened
        self._last_trade_at = self._clock()
        logger.info("Trade stream connected. Authenticating...")
        await self._send({"action": "auth", "params": self._api_key})

    async def _wait_for_retry(self, delay: float) -> None:
        """Sleep ``delay`` seconds, returning early if shutdown begins."""
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)

    async def _send(self, payload: dict[str, Any]) -> None:
        if self._ws is None:
            logger.warning(f"Cannot send {payload.get('action')!r}: socket not open")
            return
        await self._ws.send(json.dumps(payload))

    # ------------------------------------------------------------------
    # Message handling
    # ------------------------------------------------------------------

    async def handle_frame(self, raw: str | bytes) -> int:
        """
        Process one websocket frame (a JSON array of events).

        Returns:
            Number of trades applied to the store
        """
        if self.is_shutting_down:
            return 0

        try:
            events = json.loads(raw)
        except ValueError as e:
            logger.error(f"Malformed trade stream frame: {e}")
            return 0

        if isinstance(events, dict):
            events = [events]
        if not isinstance(events, list):
            logger.error(f"Unexpected trade stream frame type: {type(events).__name__}")
            return 0

        applied = 0
        for event in events:
            if self.is_shutting_down:
                break
            if not isinstance(event, dict):
                continue
            ev = event.get("ev")
            if ev == "status":
                await self._handle_status(event)
            elif ev == "T" and await self._handle_trade(event):
                applied += 1
        return applied

    async def _handle_status(self, event: dict[str, Any]) -> None:
        status = event.get("status")
        message = event.get("message", "")
        logger.info(f"Trade stream status: {status} {message}".rstrip())

        if status in AUTH_SUCCESS_STATUSES:
            if self._state is not StreamState.AUTHENTICATING:
                logger.warning(f"Ignoring '{status}' status in state {self._state.value}")
                return
            self._transition(StreamState.SUBSCRIBED)
            await self._send({"action": "subscribe", "params": self._subscription})
            logger.info(f"Authenticated. Subscribed to {self._subscription}")
        elif status == "auth_failed":
            logger.error(f"Trade stream authentication failed: {message}. Check POLYGON_API_KEY")

    async def _handle_trade(self, event: dict[str, Any]) -> bool:
        if self._state not in TRADE_STATES:
            self._trades_rejected += 1
            logger.debug(f"Rejected trade for {event.get('sym')} in state {self._state.value}")
            return False

        trade = parse_trade(event)
        if trade is None:
            logger.warning(f"Skipping malformed trade event: {event}")
            return False

        if self._state is StreamState.SUBSCRIBED:
            self._transition(StreamState.STREAMING)
        self._last_trade_at = self._clock()

        try:
            await self._store.upsert(
                Table.MARKET_DATA,
                [{"ticker": trade.symbol, "price": trade.price, "last_updated": trade.timestamp}],
            )
        except StoreError as e:
            self._store_failures += 1
            logger.error(f"Failed to apply trade for {trade.symbol}: {e}")
            return False

        self._trades_applied += 1
        logger.debug(f"[{trade.symbol}] ${trade.price} (updated at {trade.timestamp.isoformat()})")
        return True

    # ------------------------------------------------------------------
    # Watchdog
    # ------------------------------------------------------------------

    def check_stale(self) -> bool:
        """Warn if connected and no trade has been accepted for ``stale_after`` seconds."""
        if self._state not in CONNECTED_STATES or self._last_trade_at is None:
            return False
        silence = self._clock() - self._last_trade_at
        if silence > self._stale_after:
            logger.warning(f"No trade data received in the last {silence:.0f} seconds")
            return True
        return False

    async def _watchdog(self) -> None:
        while not self.is_shutting_down:
            await asyncio.sleep(self._stale_after)
            self.check_stale()

    async def _stop_watchdog(self) -> None:
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._watchdog_task
            self._watchdog_task = None

    # ------------------------------------------------------------------
    # Shutdown and health
    # ------------------------------------------------------------------

    async def shutdown(self) -> None:
        """Stop processing, close the socket and cancel any pending reconnect."""
        if self.is_shutting_down:
            return
        self._transition(StreamState.SHUTTING_DOWN)
        self._stop_event.set()

        ws, self._ws = self._ws, None
        if ws is not None:
            try:
                await ws.close()
            except Exception as close_err:
                logger.debug(f"Error closing trade stream socket: {close_err}")

        await self._stop_watchdog()
        logger.info("Trade stream shut down")

    def get_health_status(self) -> dict[str, Any]:
        """Connection health for logging."""
        last_trade_age = None
        if self._last_trade_at is not None:
            last_trade_age = round(self._clock() - self._last_trade_at, 1)
        return {
            "state": self._state.value,
            "is_connected": self._state in CONNECTED_STATES,
            "connections": self._connections,
            "reconnect_attempts": self._backoff.attempts,
            "last_trade_age_seconds": last_trade_age,
            "is_stale": last_trade_age is not None and last_trade_age > self._stale_after,
            "trades_applied": self._trades_applied,
            "trades_rejected": self._trades_rejected,
            "store_failures": self._store_failures,
        }
