"""
Outcome labeling for replayed decisions.

Given the price at decision time and the candles that followed it, this
module classifies what the market actually did over a horizon and
measures favourable and adverse excursions. Everything here is pure;
fetching future candles and writing labels is the labeling job's work.

Labels are read relative to the decision bias:

* LONG/SHORT: CONTINUATION when the move in the bias direction reached
  the horizon threshold, REVERSAL when the opposite move did, NOISE
  otherwise.
* WAIT: NOISE when nothing tradable happened, CONTINUATION when a clean
  trend was missed.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Sequence, Tuple

from .errors import LookaheadViolation, ValidationError
from .intervals import DAY_MS, HOUR_MS
from .schemas import Bias, Candle, OutcomeLabel, OutcomeResult


@dataclass(frozen=True)
class HorizonConfig:
    """How far ahead, and how hard, a decision is judged.

    Attributes:
        name: SCALPING, MICRO or MACRO.
        timeframe: Interval of the future candles.
        candle_count: Future candles requested.
        maturation_ms: Minimum age of a decision before it may be labeled.
        threshold_pct: Move (percent) that counts as significant.
        min_future_candles: Fewer future candles than this and the state is skipped.
    """

    name: str
    timeframe: str
    candle_count: int
    maturation_ms: int
    threshold_pct: float
    min_future_candles: int = 1


DEFAULT_HORIZONS: Dict[str, HorizonConfig] = {
    "SCALPING": HorizonConfig("SCALPING", "30m", 12, HOUR_MS, 0.3, 5),
    "MICRO": HorizonConfig("MICRO", "1h", 24, 8 * HOUR_MS, 0.8, 5),
    "MACRO": HorizonConfig("MACRO", "4h", 30, 5 * DAY_MS, 2.0, 5),
}

# WAIT classification factors, relative to the horizon threshold
MISSED_MOVE_FACTOR = 1.5
MISSED_MOVE_DIRECTIONALITY = 0.6
CHOP_RANGE_FACTOR = 2.0
CHOP_DIRECTIONALITY = 0.4


def get_horizon(name: str, horizons: Optional[Dict[str, HorizonConfig]] = None) -> HorizonConfig:
    horizons = horizons or DEFAULT_HORIZONS
    key = (name or "").upper()
    if key not in horizons:
        raise ValidationError(f"Invalid horizon '{name}'. Expected one of {sorted(horizons)}")
    return horizons[key]


def assert_strictly_after(candles: Sequence[Candle], as_of_ms: int) -> None:
    """Future candles must open strictly after the decision instant."""
    for c in candles:
        if c.time_ms <= as_of_ms:
            raise LookaheadViolation(
                f"future candle at {c.time_ms} is not after decision time {as_of_ms}",
                timestamp_ms=c.time_ms,
                cutoff_ms=as_of_ms,
            )


def compute_excursions(bias: Bias, entry_price: float, candles: Sequence[Candle]) -> Tuple[Optional[float], Optional[float]]:
    """Maximum favourable and adverse excursion in percent of entry.

    Returns ``(None, None)`` for WAIT decisions or an empty series.
    """
    if bias == Bias.WAIT or not candles or entry_price <= 0:
        return None, None
    max_high = max(c.high for c in candles)
    min_low = min(c.low for c in candles)
    up = max(0.0, (max_high - entry_price) / entry_price * 100)
    down = max(0.0, (entry_price - min_low) / entry_price * 100)
    if bias == Bias.LONG:
        return round(up, 4), round(down, 4)
    return round(down, 4), round(up, 4)


def _range_pct(entry_price: float, candles: Sequence[Candle]) -> float:
    high = max(c.high for c in candles)
    low = min(c.low for c in candles)
    return (high - low) / entry_price * 100


def _label_wait(move_pct: float, range_pct: float, threshold: float) -> Tuple[OutcomeLabel, str]:
    magnitude = abs(move_pct)
    directionality = magnitude / range_pct if range_pct > 0 else 0.0

    if magnitude >= threshold * MISSED_MOVE_FACTOR and directionality > MISSED_MOVE_DIRECTIONALITY:
        return OutcomeLabel.CONTINUATION, f"missed trend: {move_pct:+.2f}% with directionality {directionality:.2f}"
    if range_pct > threshold * CHOP_RANGE_FACTOR and directionality < CHOP_DIRECTIONALITY:
        return OutcomeLabel.NOISE, f"choppy range {range_pct:.2f}%, directionality {directionality:.2f}"
    if magnitude < threshold:
        return OutcomeLabel.NOISE, f"quiet market: {move_pct:+.2f}% below {threshold}% threshold"
    return OutcomeLabel.NOISE, f"ambiguous move {move_pct:+.2f}%, no clear trend"


def label_outcome(
    bias: Bias,
    entry_price: float,
    future_candles: Sequence[Candle],
    horizon: HorizonConfig,
) -> OutcomeResult:
    """Classify the realized outcome of a decision.

    Args:
        bias: Decision bias.
        entry_price: Price recorded at decision time.
        future_candles: Candles strictly after the decision, ascending.
        horizon: Horizon the decision is judged over.

    Raises:
        ValidationError: If there are no candles or the entry price is not positive.
    """
    if not future_candles:
        raise ValidationError("no future candles to label")
    if entry_price is None or entry_price <= 0:
        raise ValidationError(f"invalid entry price {entry_price!r}")

    bias = Bias(bias)
    final_close = future_candles[-1].close
    move_pct = (final_close - entry_price) / entry_price * 100
    threshold = horizon.threshold_pct
    mfe, mae = compute_excursions(bias, entry_price, future_candles)

    if bias == Bias.WAIT:
        label, reason = _label_wait(move_pct, _range_pct(entry_price, future_candles), threshold)
    else:
        directional = move_pct if bias == Bias.LONG else -move_pct
        if directional >= threshold:
            label, reason = OutcomeLabel.CONTINUATION, f"moved {directional:+.2f}% with the bias"
        elif directional <= -threshold:
            label, reason = OutcomeLabel.REVERSAL, f"moved {directional:+.2f}% against the bias"
        else:
            label, reason = OutcomeLabel.NOISE, f"{directional:+.2f}% inside the {threshold}% threshold"

    return OutcomeResult(
        label=label,
        price_change_pct=round(move_pct, 4),
        mfe_pct=mfe,
        mae_pct=mae,
        reason=reason,
        candles_used=len(future_candles),
        horizon=horizon.name,
    )
