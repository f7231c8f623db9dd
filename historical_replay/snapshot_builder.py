"""
Build point-in-time market snapshots from raw venue series.

The builder is pure: it receives every series already fetched for an
as-of instant, refuses anything timestamped after the cutoff, and
derives the per-venue, per-timeframe summary the decision engine reads.

Example usage:

    raw = {"Binance": {"4h": SeriesBundle(candles=[...], ...)}}
    snapshot = build_snapshot(raw, cutoff_ms=as_of, primary_venue="Binance",
                              primary_timeframe="4h")
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence

from .errors import LookaheadViolation
from .intervals import INTERVAL_CONFIG, last_closed_open_ms
from .schemas import Candle, SeriesBundle, SeriesPoint, Snapshot, TakerVolume, TimeframeSummary

logger = logging.getLogger(__name__)


def assert_no_lookahead(timestamps: Iterable[int], cutoff_ms: int, label: str = "series") -> None:
    """Raise LookaheadViolation if any timestamp lies after ``cutoff_ms``."""
    for ts in timestamps:
        if ts > cutoff_ms:
            raise LookaheadViolation(
                f"{label}: point at {ts} is after cutoff {cutoff_ms}",
                timestamp_ms=ts,
                cutoff_ms=cutoff_ms,
            )


def closed_cutoff(timeframe: str, as_of_ms: int) -> int:
    """Latest open time a candle on ``timeframe`` may have and still be closed at ``as_of_ms``."""
    if timeframe in INTERVAL_CONFIG:
        return last_closed_open_ms(timeframe, as_of_ms)
    return as_of_ms


def slice_to_cutoff(bundle: SeriesBundle, cutoff_ms: int) -> SeriesBundle:
    """Drop every point after ``cutoff_ms`` from a bundle."""
    return SeriesBundle(
        candles=[c for c in bundle.candles if c.time_ms <= cutoff_ms],
        open_interest=[p for p in bundle.open_interest if p.time_ms <= cutoff_ms],
        funding=[p for p in bundle.funding if p.time_ms <= cutoff_ms],
        taker=[t for t in bundle.taker if t.time_ms <= cutoff_ms],
    )


def pct_change(previous: float, current: float) -> float:
    if not previous:
        return 0.0
    return (current - previous) / previous * 100


def price_change_pct(candles: Sequence[Candle]) -> float:
    if len(candles) < 2:
        return 0.0
    return pct_change(candles[-2].close, candles[-1].close)


def oi_change_pct(points: Sequence[SeriesPoint]) -> float:
    if len(points) < 2:
        return 0.0
    return pct_change(points[-2].value, points[-1].value)


def cumulative_volume_delta(taker: Sequence[TakerVolume]) -> float:
    return sum(t.buy - t.sell for t in taker)


def funding_average_pct(points: Sequence[SeriesPoint]) -> float:
    if not points:
        return 0.0
    return sum(p.value for p in points) / len(points) * 100


def summarize(bundle: SeriesBundle) -> TimeframeSummary:
    candles = bundle.candles
    last = candles[-1] if candles else None
    return TimeframeSummary(
        price=last.close if last else 0.0,
        price_change_pct=price_change_pct(candles),
        open_interest=bundle.open_interest[-1].value if bundle.open_interest else 0.0,
        open_interest_change_pct=oi_change_pct(bundle.open_interest),
        cvd=cumulative_volume_delta(bundle.taker),
        funding_rate_avg_pct=funding_average_pct(bundle.funding),
        volume=last.volume if last else 0.0,
    )


def build_history(bundle: SeriesBundle) -> Dict[str, List[Dict[str, float]]]:
    return {
        "price": [
            {"time_ms": c.time_ms, "open": c.open, "high": c.high, "low": c.low, "close": c.close}
            for c in bundle.candles
        ],
        "open_interest": [{"time_ms": p.time_ms, "value": p.value} for p in bundle.open_interest],
        "funding": [{"time_ms": p.time_ms, "value": p.value} for p in bundle.funding],
    }


def data_range(raw: Dict[str, Dict[str, SeriesBundle]]) -> Dict[str, Optional[int]]:
    stamps = [ts for tfs in raw.values() for bundle in tfs.values() for ts in bundle.all_timestamps()]
    if not stamps:
        return {"earliest_ms": None, "latest_ms": None}
    return {"earliest_ms": min(stamps), "latest_ms": max(stamps)}


def build_snapshot(
    raw: Dict[str, Dict[str, SeriesBundle]],
    cutoff_ms: int,
    primary_venue: str,
    primary_timeframe: str,
) -> Snapshot:
    """Assemble a Snapshot from raw series.

    Args:
        raw: ``{venue: {timeframe: SeriesBundle}}`` fetched for this instant.
        cutoff_ms: The as-of instant. No input may be timestamped after it.
        primary_venue: Venue whose history is attached to the snapshot.
        primary_timeframe: Timeframe whose history is attached.

    Returns:
        Snapshot with per-venue summaries, primary history and data range.

    Raises:
        LookaheadViolation: If any input is newer than the last candle
            closed at ``cutoff_ms`` on its timeframe.
    """
    for venue, timeframes in raw.items():
        for tf, bundle in timeframes.items():
            assert_no_lookahead(bundle.all_timestamps(), closed_cutoff(tf, cutoff_ms), label=f"{venue}/{tf}")

    summary = {
        venue: {tf: summarize(bundle) for tf, bundle in timeframes.items()}
        for venue, timeframes in raw.items()
    }

    primary = (raw.get(primary_venue) or {}).get(primary_timeframe)
    if primary is None:
        logger.warning("snapshot at %s has no %s/%s series; history left empty", cutoff_ms, primary_venue, primary_timeframe)
        history = {"price": [], "open_interest": [], "funding": []}
    else:
        history = build_history(primary)

    return Snapshot(
        as_of_ms=cutoff_ms,
        summary=summary,
        history=history,
        data_range=data_range(raw),
        primary_venue=primary_venue,
        primary_timeframe=primary_timeframe,
    )
