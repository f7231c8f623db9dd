"""
Market-data vendor client.

The vendor is only consulted in vendor-fallback mode and by the series
sync job. It serves merged candle rows over HTTP:

    GET {base_url}/v1/series?venue=Binance&symbol=BTC&interval=4h
        &end_time=<ms>&limit=<n>[&start_time=<ms>]

    {"rows": [{"time_ms": ..., "open": ..., "high": ..., "low": ...,
               "close": ..., "volume": ..., "open_interest": ...,
               "funding_rate": ..., "taker_buy_volume": ...,
               "taker_sell_volume": ...}, ...]}

HTTP 429 raises ``RateLimited`` immediately so the caller can cool down;
transport errors are retried a few times before propagating.
"""

import logging
from typing import Any, Dict, Optional, Protocol

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from historical_replay.errors import RateLimited
from historical_replay.schemas import SeriesBundle

from .metrics import replay_vendor_calls_total
from .series_store import rows_to_bundle

logger = logging.getLogger(__name__)


class VendorClient(Protocol):
    async def fetch_series(
        self,
        venue: str,
        symbol: str,
        timeframe: str,
        end_ms: int,
        limit: int,
        start_ms: Optional[int] = None,
    ) -> SeriesBundle:
        ...


class HttpVendorClient:
    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 15.0,
        max_attempts: int = 3,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.timeout = timeout
        self.max_attempts = max_attempts
        self._transport = transport

    def _headers(self) -> Dict[str, str]:
        return {"X-API-Key": self.api_key} if self.api_key else {}

    async def _get(self, params: Dict[str, Any]) -> Dict[str, Any]:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=0.5, max=5),
            retry=retry_if_exception_type(httpx.TransportError),
            reraise=True,
        ):
            with attempt:
                async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                    resp = await client.get(f"{self.base_url}/v1/series", params=params, headers=self._headers())
                if resp.status_code == 429:
                    replay_vendor_calls_total.labels(result="rate_limited").inc()
                    retry_after = resp.headers.get("Retry-After")
                    raise RateLimited(retry_after=float(retry_after) if retry_after else None)
                resp.raise_for_status()
                replay_vendor_calls_total.labels(result="ok").inc()
                return resp.json()

    async def fetch_series(
        self,
        venue: str,
        symbol: str,
        timeframe: str,
        end_ms: int,
        limit: int,
        start_ms: Optional[int] = None,
    ) -> SeriesBundle:
        params: Dict[str, Any] = {
            "venue": venue,
            "symbol": symbol,
            "interval": timeframe,
            "end_time": end_ms,
            "limit": limit,
        }
        if start_ms is not None:
            params["start_time"] = start_ms
        data = await self._get(params)
        rows = [{**row, "open_time_ms": row["time_ms"]} for row in data.get("rows", [])]
        rows.sort(key=lambda r: r["open_time_ms"])
        logger.debug("vendor returned %d %s/%s/%s rows", len(rows), venue, symbol, timeframe)
        return rows_to_bundle(rows)
