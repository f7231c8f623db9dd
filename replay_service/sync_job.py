"""
Pull historical series from the vendor into the local store.

``sync_window`` is the bulk path used by scripts and the scheduled loop.
``sync_edge`` is the narrow path the batch orchestrator uses once per
sample when local data runs out close to the newest stored candle or
close to now. Vendor reads go through the data service so they share its
lock and call spacing with fallback reads.
"""

import asyncio
import logging
from typing import Callable, Optional, Sequence

import httpx

from historical_replay.errors import RateLimited
from historical_replay.intervals import HOUR_MS, interval_to_ms, last_closed_open_ms, now_ms

from .historical_data import HistoricalDataService
from .series_store import bundle_to_rows

logger = logging.getLogger(__name__)


class SeriesSyncJob:
    def __init__(
        self,
        data_service: HistoricalDataService,
        venues: Sequence[str],
        timeframes: Sequence[str],
        edge_hours: float = 24.0,
        recent_hours: float = 48.0,
        lookback_ms: int = 3 * 24 * HOUR_MS,
        clock: Callable[[], int] = now_ms,
    ):
        self.data_service = data_service
        self.store = data_service.store
        self.venues = list(venues)
        self.timeframes = list(timeframes)
        self.edge_ms = int(edge_hours * HOUR_MS)
        self.recent_ms = int(recent_hours * HOUR_MS)
        self.lookback_ms = lookback_ms
        self.clock = clock

    async def sync_window(self, symbol: str, start_ms: int, end_ms: int) -> int:
        """Fetch every venue/timeframe between two instants and upsert closed candles.

        Returns:
            Number of rows written.
        """
        now = self.clock()
        written = 0
        for venue in self.venues:
            for tf in self.timeframes:
                step = interval_to_ms(tf)
                last_closed = min(last_closed_open_ms(tf, now), end_ms)
                if last_closed < start_ms:
                    continue
                limit = (last_closed - start_ms) // step + 1
                bundle = await self.data_service.fetch_from_vendor(
                    venue, symbol, tf, end_ms=last_closed, limit=limit, start_ms=start_ms
                )
                rows = [r for r in bundle_to_rows(bundle) if start_ms <= r.time_ms <= last_closed]
                written += await self.store.upsert(venue, symbol, tf, rows)
        logger.info("synced %d rows for %s between %s and %s", written, symbol, start_ms, end_ms)
        return written

    def should_sync(self, as_of_ms: int, latest_ms: Optional[int]) -> bool:
        near_edge = latest_ms is not None and abs(as_of_ms - latest_ms) <= self.edge_ms
        near_now = self.clock() - as_of_ms <= self.recent_ms
        return near_edge or near_now

    async def sync_edge(self, symbol: str, as_of_ms: int) -> bool:
        """Sync the recent window if ``as_of_ms`` sits near the data edge.

        Returns:
            True if any rows were written.
        """
        latest = await self.store.latest_time(symbol)
        if not self.should_sync(as_of_ms, latest):
            logger.info("no edge sync for %s at %s: too far from data edge (%s) and from now", symbol, as_of_ms, latest)
            return False
        now = self.clock()
        return await self.sync_window(symbol, now - self.lookback_ms, now) > 0

    async def run_scheduled(self, symbol: str, gate, interval_seconds: float, stop: asyncio.Event) -> None:
        """Keep the recent window fresh until ``stop`` is set.

        Cycles are skipped while ``gate`` is paused by a vendor-fallback batch.
        """
        while not stop.is_set():
            if not gate.should_skip("series_sync"):
                now = self.clock()
                try:
                    await self.sync_window(symbol, now - self.lookback_ms, now)
                except (RateLimited, httpx.HTTPError) as e:
                    logger.warning("scheduled sync for %s failed: %s", symbol, e)
            try:
                await asyncio.wait_for(stop.wait(), timeout=interval_seconds)
            except asyncio.TimeoutError:
                pass
