"""
Historical Series Store.

Time-indexed read access to stored candles. Two queries matter and both
are bounded by construction:

- ``get_series_at`` never returns a candle that was still open at the
  as-of instant.
- ``get_candles_after`` only returns candles strictly after an instant,
  optionally no later than a second one.
"""

from typing import Any, Dict, Iterable, List, Optional

from historical_replay.candle_loader import MarketRow
from historical_replay.intervals import last_closed_open_ms
from historical_replay.schemas import Candle, SeriesBundle, SeriesPoint, TakerVolume

from . import storage as st


def rows_to_bundle(rows: Iterable[Dict[str, Any]]) -> SeriesBundle:
    bundle = SeriesBundle()
    for r in rows:
        t = r["open_time_ms"]
        bundle.candles.append(Candle(t, r["open"], r["high"], r["low"], r["close"], r.get("volume") or 0.0))
        if r.get("open_interest") is not None:
            bundle.open_interest.append(SeriesPoint(t, r["open_interest"]))
        if r.get("funding_rate") is not None:
            bundle.funding.append(SeriesPoint(t, r["funding_rate"]))
        if r.get("taker_buy_volume") is not None and r.get("taker_sell_volume") is not None:
            bundle.taker.append(TakerVolume(t, r["taker_buy_volume"], r["taker_sell_volume"]))
    return bundle


def bundle_to_rows(bundle: SeriesBundle) -> List[MarketRow]:
    oi = {p.time_ms: p.value for p in bundle.open_interest}
    funding = {p.time_ms: p.value for p in bundle.funding}
    taker = {t.time_ms: t for t in bundle.taker}
    return [
        MarketRow(
            time_ms=c.time_ms,
            open=c.open,
            high=c.high,
            low=c.low,
            close=c.close,
            volume=c.volume,
            open_interest=oi.get(c.time_ms),
            funding_rate=funding.get(c.time_ms),
            taker_buy_volume=taker[c.time_ms].buy if c.time_ms in taker else None,
            taker_sell_volume=taker[c.time_ms].sell if c.time_ms in taker else None,
        )
        for c in bundle.candles
    ]


class HistoricalSeriesStore:
    def __init__(self, sessionmaker):
        self.sessionmaker = sessionmaker

    async def upsert(self, venue: str, symbol: str, timeframe: str, rows: Iterable[MarketRow]) -> int:
        return await st.upsert_candles(self.sessionmaker, venue, symbol, timeframe, rows)

    async def get_series_at(self, venue: str, symbol: str, timeframe: str, as_of_ms: int, count: int) -> SeriesBundle:
        """Up to ``count`` closed candles ending with the last one closed at ``as_of_ms``."""
        end = last_closed_open_ms(timeframe, as_of_ms)
        rows = await st.get_candles_until(self.sessionmaker, venue, symbol, timeframe, end, count)
        return rows_to_bundle(rows)

    async def get_candles_after(
        self, venue: str, symbol: str, timeframe: str, after_ms: int, limit: int, until_ms: Optional[int] = None
    ) -> List[Candle]:
        rows = await st.get_candles_after(self.sessionmaker, venue, symbol, timeframe, after_ms, limit, until_ms)
        return rows_to_bundle(rows).candles

    async def coverage(self, symbol: str) -> List[Dict[str, Any]]:
        return await st.get_data_coverage(self.sessionmaker, symbol)

    async def latest_time(self, symbol: str) -> Optional[int]:
        return await st.get_latest_candle_time(self.sessionmaker, symbol)
