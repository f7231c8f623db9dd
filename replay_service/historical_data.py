"""
Point-in-time series access with an optional vendor fallback.

Local store first. In vendor-fallback mode a short local read is retried
against the vendor; vendor calls are serialised under one lock and spaced
by a fixed delay because every batch in the process shares one quota.
Whatever the source, the result is cut at the last closed candle again
before it is returned.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from historical_replay.errors import InsufficientData
from historical_replay.intervals import last_closed_open_ms
from historical_replay.schemas import DataSource, SeriesBundle
from historical_replay.snapshot_builder import slice_to_cutoff

from .series_store import HistoricalSeriesStore
from .vendor_client import VendorClient

logger = logging.getLogger(__name__)


class HistoricalDataService:
    def __init__(
        self,
        store: HistoricalSeriesStore,
        vendor: Optional[VendorClient] = None,
        vendor_call_delay: float = 2.5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.store = store
        self.vendor = vendor
        self.vendor_call_delay = vendor_call_delay
        self._sleep = sleep
        self._vendor_lock = asyncio.Lock()
        self._last_vendor_call: Optional[float] = None

    async def fetch_from_vendor(
        self,
        venue: str,
        symbol: str,
        timeframe: str,
        end_ms: int,
        limit: int,
        start_ms: Optional[int] = None,
    ) -> SeriesBundle:
        """Vendor read under the shared lock, spaced from the previous call.

        Fallback reads, series syncs and outcome labeling all come through
        here so they draw on one quota.
        """
        if self.vendor is None:
            raise RuntimeError("no vendor configured")
        async with self._vendor_lock:
            if self._last_vendor_call is not None:
                wait = self.vendor_call_delay - (time.monotonic() - self._last_vendor_call)
                if wait > 0:
                    await self._sleep(wait)
            try:
                return await self.vendor.fetch_series(
                    venue, symbol, timeframe, end_ms=end_ms, limit=limit, start_ms=start_ms
                )
            finally:
                self._last_vendor_call = time.monotonic()

    async def get_series(
        self,
        venue: str,
        symbol: str,
        timeframe: str,
        as_of_ms: int,
        min_candles: int,
        fetch_count: int,
        mode: DataSource = DataSource.LOCAL,
    ) -> SeriesBundle:
        """
        Closed-candle series for ``as_of_ms``.

        Raises:
            InsufficientData: If fewer than ``min_candles`` candles are available.
            RateLimited: If the vendor rejected the fallback call.
        """
        cutoff = last_closed_open_ms(timeframe, as_of_ms)
        bundle = await self.store.get_series_at(venue, symbol, timeframe, as_of_ms, fetch_count)

        if len(bundle.candles) < min_candles and mode == DataSource.VENDOR_FALLBACK and self.vendor is not None:
            logger.info(
                "local %s/%s/%s has %d/%d candles at %s, asking vendor",
                venue, symbol, timeframe, len(bundle.candles), min_candles, as_of_ms,
            )
            remote = await self.fetch_from_vendor(venue, symbol, timeframe, cutoff, fetch_count)
            bundle = slice_to_cutoff(remote, cutoff)

        if len(bundle.candles) < min_candles:
            raise InsufficientData(
                f"{venue}/{symbol}/{timeframe}: {len(bundle.candles)} candles at {as_of_ms}, need {min_candles}",
                venue=venue,
                timeframe=timeframe,
                available=len(bundle.candles),
                required=min_candles,
            )
        return bundle
