"""
Decision engine contract.

The replay pipeline treats the engine as an opaque function from a
Snapshot to a DecisionPayload. ``TrendBiasEngine`` is a deliberately
small reference implementation so a replay can run end to end without
wiring in a production engine; point ``REPLAY_DECISION_ENGINE`` at a
``module:factory`` path to use another one.
"""

import importlib
from typing import Dict, List, Optional, Protocol, runtime_checkable

from .errors import ValidationError
from .schemas import Bias, DecisionPayload, Regime, Scores, Snapshot, TimeframeSummary


@runtime_checkable
class DecisionEngine(Protocol):
    config_version: str

    def evaluate(self, snapshot: Snapshot) -> DecisionPayload:
        ...


def load_engine(path: str) -> DecisionEngine:
    """Import ``package.module:factory`` and call the factory."""
    module_name, _, attr = path.partition(":")
    if not module_name or not attr:
        raise ValidationError(f"engine path must look like 'module:factory', got '{path}'")
    module = importlib.import_module(module_name)
    factory = getattr(module, attr)
    engine = factory()
    if not isinstance(engine, DecisionEngine):
        raise ValidationError(f"{path} did not produce a decision engine")
    return engine


# Which hierarchy slot a timeframe fills
HIERARCHY = {"4h": "macro_bias", "1h": "micro_bias", "30m": "scalping_bias"}


class TrendBiasEngine:
    """Close-versus-average bias with open interest as confirmation."""

    config_version = "trend-bias-1"

    def __init__(self, window: int = 20, trend_threshold_pct: float = 1.0):
        self.window = window
        self.trend_threshold_pct = trend_threshold_pct

    def _trend_pct(self, closes: List[float]) -> float:
        if len(closes) < 2:
            return 0.0
        recent = closes[-self.window:]
        avg = sum(recent) / len(recent)
        return (closes[-1] - avg) / avg * 100 if avg else 0.0

    def _bias_for(self, trend_pct: float) -> Bias:
        if trend_pct >= self.trend_threshold_pct:
            return Bias.LONG
        if trend_pct <= -self.trend_threshold_pct:
            return Bias.SHORT
        return Bias.WAIT

    @staticmethod
    def _regime(trend_pct: float, oi_change_pct: float) -> Regime:
        if abs(trend_pct) < 0.25:
            return Regime(type="ranging")
        if trend_pct > 0:
            return Regime(type="healthy_bull") if oi_change_pct >= 0 else Regime(type="short_squeeze")
        return Regime(type="healthy_bear") if oi_change_pct >= 0 else Regime(type="long_squeeze")

    @staticmethod
    def _oi_signal(trend_pct: float, oi_change_pct: float) -> str:
        # rising OI carries the trend on, falling OI means it is unwinding
        if abs(trend_pct) < 0.25 or oi_change_pct == 0:
            return "neutral"
        up = (trend_pct > 0) == (oi_change_pct > 0)
        return "bullish" if up else "bearish"

    def evaluate(self, snapshot: Snapshot) -> DecisionPayload:
        closes = [row["close"] for row in snapshot.history.get("price", [])]
        trend = self._trend_pct(closes)
        bias = self._bias_for(trend)

        venue: Dict[str, TimeframeSummary] = snapshot.summary.get(snapshot.primary_venue, {})
        primary: Optional[TimeframeSummary] = venue.get(snapshot.primary_timeframe)
        oi_change = primary.open_interest_change_pct if primary else 0.0
        cvd = primary.cvd if primary else 0.0

        hierarchy = {
            slot: self._bias_for(venue[tf].price_change_pct * 4)
            for tf, slot in HIERARCHY.items()
            if tf in venue
        }
        macro = hierarchy.get("macro_bias")

        strength = min(10.0, abs(trend) * 2)
        scores = Scores(
            long=strength if bias == Bias.LONG else 0.0,
            short=strength if bias == Bias.SHORT else 0.0,
            wait=10.0 - strength,
        )
        return DecisionPayload(
            bias=bias,
            confidence=strength,
            regime=self._regime(trend, oi_change),
            scenario=f"trend_{bias.value.lower()}",
            scores=scores,
            config_version=self.config_version,
            timeframe=snapshot.primary_timeframe,
            macro_anchored=None if macro is None or bias == Bias.WAIT else macro in (bias, Bias.WAIT),
            cvd_signal="bullish" if cvd > 0 else "bearish" if cvd < 0 else "neutral",
            oi_signal=self._oi_signal(trend, oi_change),
            funding_rate=primary.funding_rate_avg_pct if primary else None,
            **hierarchy,
        )


def create_default_engine() -> TrendBiasEngine:
    return TrendBiasEngine()
