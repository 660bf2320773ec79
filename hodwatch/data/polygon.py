"""Polygon.io REST client for snapshots, reference data, daily bars, news and IPOs."""

from datetime import date
from typing import Any

import httpx
from loguru import logger
from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from hodwatch.config.constants import IngestConstants
from hodwatch.config.settings import get_settings

SNAPSHOT_PATH = "/v2/snapshot/locale/us/markets/stocks/tickers"
TICKER_DETAILS_PATH = "/v3/reference/tickers/{ticker}"
NEWS_PATH = "/v2/reference/news"
IPOS_PATH = "/vX/reference/ipos"
DAILY_BARS_PATH = "/v2/aggs/ticker/{ticker}/range/1/day/{start}/{end}"


class ProviderError(Exception):
    """Raised when the upstream API fails or returns a malformed payload."""


def _log_retry(retry_state: RetryCallState) -> None:
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    sleep = retry_state.next_action.sleep if retry_state.next_action else 0.0
    logger.warning(
        f"Polygon request failed ({type(exc).__name__}: {exc}), "
        f"retry {retry_state.attempt_number} in {sleep:.1f}s"
    )


class PolygonClient:
    """
    Async client for the Polygon.io REST endpoints the ingestors need.

    Transient network failures (timeouts, connection errors) are retried with
    exponential backoff; HTTP error statuses and malformed payloads surface as
    ``ProviderError`` straight away.
    """

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = get_settings()
        self._api_key = api_key or settings.polygon_api_key
        self._client = client or httpx.AsyncClient(
            base_url=base_url or settings.polygon_base_url,
            timeout=timeout or settings.http_timeout_seconds,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "PolygonClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    @retry(
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=2, max=10),
        retry=retry_if_exception_type((httpx.TimeoutException, httpx.ConnectError)),
        before_sleep=_log_retry,
        reraise=True,
    )
    async def _get(self, url: str, params: dict[str, Any] | None = None) -> httpx.Response:
        """GET with retry for transient network failures only.

        Absolute URLs (``next_url`` cursors) keep their own query string; the
        API key is merged into it rather than replacing it.
        """
        query = {**(params or {}), "apiKey": self._api_key}
        if url.startswith(("http://", "https://")):
            return await self._client.get(httpx.URL(url).copy_merge_params(query))
        return await self._client.get(url, params=query)

    async def _request(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        allow_not_found: bool = False,
    ) -> dict[str, Any] | None:
        """Issue a GET and decode the JSON body, mapping failures to ProviderError."""
        try:
            response = await self._get(url, params)
            if allow_not_found and response.status_code == 404:
                return None
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            if status == 429:
                raise ProviderError("Polygon API rate limit exceeded (429)") from e
            if status in (401, 403):
                raise ProviderError(f"Polygon API rejected the API key ({status})") from e
            raise ProviderError(f"Polygon API error {status} for {e.request.url.path}") from e
        except httpx.TimeoutException as e:
            raise ProviderError(f"Polygon API timeout after retries: {e}") from e
        except httpx.HTTPError as e:
            raise ProviderError(f"Polygon API connection error: {e}") from e
        except ValueError as e:
            raise ProviderError(f"Polygon API returned invalid JSON: {e}") from e

        if not isinstance(data, dict):
            raise ProviderError(
                f"Polygon API returned unexpected payload type: {type(data).__name__}"
            )
        return data

    async def get_snapshot_tickers(self) -> list[dict[str, Any]]:
        """
        Fetch the full-market snapshot: one entry per symbol with a ``day`` bar.

        Raises:
            ProviderError: On HTTP failure or when the ``tickers`` array is missing
        """
        data = await self._request(SNAPSHOT_PATH)
        tickers = data.get("tickers")
        if not isinstance(tickers, list):
            raise ProviderError(
                f"Snapshot response has no tickers array (keys: {sorted(data.keys())})"
            )
        return tickers

    async def get_ticker_details(self, ticker: str) -> dict[str, Any] | None:
        """
        Fetch reference data for one symbol.

        Returns:
            The ``results`` object, or None when Polygon has no details for it
        """
        data = await self._request(TICKER_DETAILS_PATH.format(ticker=ticker), allow_not_found=True)
        if data is None:
            return None
        results = data.get("results")
        return results if isinstance(results, dict) and results else None

    async def get_news_page(
        self,
        next_url: str | None = None,
        limit: int = IngestConstants.NEWS_PAGE_LIMIT,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """
        Fetch one page of the news feed, newest first.

        Args:
            next_url: Cursor URL from the previous page, or None for the first page
            limit: Page size for the first page

        Returns:
            (articles, next_url)
        """
        return await self._get_page(NEWS_PATH, {"limit": limit, "order": "desc"}, next_url)

    async def get_ipo_page(
        self,
        next_url: str | None = None,
        limit: int = IngestConstants.IPO_PAGE_LIMIT,
    ) -> tuple[list[dict[str, Any]], str | None]:
        """Fetch one page of IPO listings, most recent listing date first."""
        params = {"limit": limit, "sort": "listing_date", "order": "desc"}
        return await self._get_page(IPOS_PATH, params, next_url)

    async def get_daily_bars(
        self,
        ticker: str,
        start: date,
        end: date,
        limit: int = IngestConstants.AVG_VOLUME_LOOKBACK_DAYS,
    ) -> list[dict[str, Any]]:
        """
        Fetch adjusted daily bars for one symbol, newest first.

        Returns:
            Bars with ``v`` (volume), ``c``, ``h``, ``l``, ``o`` and ``t``;
            empty when Polygon has no history for the symbol
        """
        path = DAILY_BARS_PATH.format(ticker=ticker, start=start.isoformat(), end=end.isoformat())
        data = await self._request(
            path, {"adjusted": "true", "sort": "desc", "limit": limit}, allow_not_found=True
        )
        if data is None:
            return []
        results = data.get("results") or []
        if not isinstance(results, list):
            raise ProviderError(f"Aggregates response for {ticker} has no results list")
        return results

    async def _get_page(
        self,
        path: str,
        params: dict[str, Any],
        next_url: str | None,
    ) -> tuple[list[dict[str, Any]], str | None]:
        if next_url:
            data = await self._request(next_url)
        else:
            data = await self._request(path, params)
        results = data.get("results") or []
        if not isinstance(results, list):
            raise ProviderError(f"{path} response results is not a list")
        return results, data.get("next_url") or None
