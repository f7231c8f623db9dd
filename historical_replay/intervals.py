"""
Interval arithmetic and alignment helpers.

All instants are epoch milliseconds (UTC). Candle timestamps are candle
*open* times, so a candle opened at ``t`` on interval ``I`` is only closed
at ``t + I``. The replay path never reads a candle whose open time is
greater than :func:`last_closed_open_ms`, which keeps the in-progress
candle out of every decision.
"""

import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Sequence, Union

from .errors import ValidationError

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS
DAY_MS = 24 * HOUR_MS


@dataclass(frozen=True)
class IntervalSpec:
    """Lookback requirements for one timeframe.

    Attributes:
        ms: Interval length in milliseconds.
        min_candles: Minimum closed candles a replay needs on this timeframe.
        fetch_buffer: Extra candles requested on top of ``min_candles``.
    """

    ms: int
    min_candles: int
    fetch_buffer: int

    @property
    def fetch_count(self) -> int:
        return self.min_candles + self.fetch_buffer


INTERVAL_CONFIG: Dict[str, IntervalSpec] = {
    "30m": IntervalSpec(ms=30 * MINUTE_MS, min_candles=50, fetch_buffer=20),
    "1h": IntervalSpec(ms=HOUR_MS, min_candles=168, fetch_buffer=30),
    "4h": IntervalSpec(ms=4 * HOUR_MS, min_candles=126, fetch_buffer=20),
    "1d": IntervalSpec(ms=DAY_MS, min_candles=50, fetch_buffer=10),
}

# Steps accepted for batch sampling
STEP_SIZES = tuple(INTERVAL_CONFIG)


def now_ms() -> int:
    return int(time.time() * 1000)


def interval_to_ms(interval: str) -> int:
    spec = INTERVAL_CONFIG.get(interval)
    if spec is None:
        raise ValidationError(f"Unknown interval '{interval}'. Expected one of {list(INTERVAL_CONFIG)}")
    return spec.ms


def align_end_to_last_closed(interval: str, as_of_ms: int) -> int:
    """Floor ``as_of_ms`` to the open of the candle that is still forming.

    That instant equals the close of the last fully closed candle.
    """
    step = interval_to_ms(interval)
    return (as_of_ms // step) * step


def last_closed_open_ms(interval: str, as_of_ms: int) -> int:
    """Open time of the last candle that closed at or before ``as_of_ms``."""
    return align_end_to_last_closed(interval, as_of_ms) - interval_to_ms(interval)


def align_start_to_boundary(interval: str, start_ms: int) -> int:
    step = interval_to_ms(interval)
    return -(-start_ms // step) * step


def lookback_window_ms(interval: str, count: int) -> int:
    return interval_to_ms(interval) * count


def parse_step(step: str) -> int:
    """Translate a batch step size into milliseconds.

    Raises:
        ValidationError: If the step is not one of ``30m``, ``1h``, ``4h``, ``1d``.
    """
    if step not in STEP_SIZES:
        raise ValidationError(f"Invalid step '{step}'. Expected one of {list(STEP_SIZES)}")
    return INTERVAL_CONFIG[step].ms


def generate_sample_timestamps(start_ms: int, end_ms: int, step_ms: int, max_samples: int) -> List[int]:
    """Evenly spaced instants from ``start_ms`` up to and including ``end_ms``.

    The result is strictly increasing and never longer than ``max_samples``.
    """
    if step_ms <= 0:
        raise ValidationError("step must be positive")
    if max_samples <= 0:
        raise ValidationError("max_samples must be positive")
    if start_ms > end_ms:
        raise ValidationError("start must not be after end")
    timestamps: List[int] = []
    current = start_ms
    while current <= end_ms and len(timestamps) < max_samples:
        timestamps.append(current)
        current += step_ms
    return timestamps


def validate_candle_series(candles: Sequence, interval: str, end_aligned_ms: int) -> Dict[str, object]:
    """Check a candle series for lookahead and gaps.

    A gap is any jump larger than two intervals between consecutive
    candles. The series is invalid when its last candle sits beyond the
    aligned end or when more than five gaps are found.
    """
    step = interval_to_ms(interval)
    issues: List[str] = []
    if not candles:
        return {"valid": False, "issues": ["empty series"], "gaps": 0, "has_lookahead": False}

    last = candles[-1].time_ms
    has_lookahead = last > end_aligned_ms
    if has_lookahead:
        issues.append(f"lookahead: last candle {last} > aligned end {end_aligned_ms}")

    gaps = 0
    for prev, cur in zip(candles, candles[1:]):
        if cur.time_ms - prev.time_ms > step * 2:
            gaps += 1
    if gaps:
        issues.append(f"{gaps} gap(s) larger than two intervals")

    return {
        "valid": not has_lookahead and gaps <= 5,
        "issues": issues,
        "gaps": gaps,
        "has_lookahead": has_lookahead,
    }


def to_epoch_ms(value: Union[int, float, str, datetime]) -> int:
    """Accept epoch ms, an ISO-8601 string or a datetime and return epoch ms.

    Naive datetimes are treated as UTC.
    """
    if isinstance(value, bool):
        raise ValidationError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, str):
        text = value.strip()
        if text.isdigit():
            return int(text)
        try:
            value = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError as e:
            raise ValidationError(f"Invalid timestamp '{value}': {e}")
    if isinstance(value, datetime):
        if value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return int(value.timestamp() * 1000)
    raise ValidationError(f"Invalid timestamp: {value!r}")


def from_epoch_ms(ts_ms: int) -> datetime:
    return datetime.fromtimestamp(ts_ms / 1000, tz=timezone.utc)


def normalize_symbol(symbol: str) -> str:
    """Strip a USDT/USD quote suffix: ``BTCUSDT`` -> ``BTC``."""
    if not symbol or not symbol.strip():
        raise ValidationError("symbol is required")
    sym = symbol.strip().upper()
    for quote in ("USDT", "USD"):
        if sym.endswith(quote) and len(sym) > len(quote):
            return sym[: -len(quote)]
    return sym
