"""Polygon REST client and live trade streaming."""

from hodwatch.data.backoff import ReconnectBackoff
from hodwatch.data.polygon import PolygonClient, ProviderError
from hodwatch.data.streaming import LiveTradeStreamer, StreamState

__all__ = [
    "PolygonClient",
    "ProviderError",
    "LiveTradeStreamer",
    "StreamState",
    "ReconnectBackoff",
]
