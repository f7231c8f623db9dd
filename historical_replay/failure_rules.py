"""
Failure classification for decisions that reversed.

Rules are an ordered list of ``(predicate, category)`` pairs; the first
predicate that matches wins and anything unmatched is UNKNOWN. Callers can
pass their own rule list to ``classify_failure``.
"""

import re
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Optional, Sequence

from .schemas import Bias, LabeledDecision


class FailureCategory(str, Enum):
    TIMEFRAME_CONFLICT = "TIMEFRAME_CONFLICT"
    CVD_MISLEADING = "CVD_MISLEADING"
    REGIME_MISREAD = "REGIME_MISREAD"
    FUNDING_MISS = "FUNDING_MISS"
    DATA_QUALITY = "DATA_QUALITY"
    STRUCTURE_FALSE = "STRUCTURE_FALSE"
    OI_MISINTERPRETATION = "OI_MISINTERPRETATION"
    UNKNOWN = "UNKNOWN"


FAILURE_DESCRIPTIONS: Dict[FailureCategory, str] = {
    FailureCategory.TIMEFRAME_CONFLICT: "Lower timeframe overrode the macro signal",
    FailureCategory.CVD_MISLEADING: "CVD pointed the wrong way",
    FailureCategory.REGIME_MISREAD: "Detected the wrong regime",
    FailureCategory.FUNDING_MISS: "Funding extreme did not cause a reversal",
    FailureCategory.DATA_QUALITY: "Stale or unreliable data",
    FailureCategory.STRUCTURE_FALSE: "Break of structure that was not real",
    FailureCategory.OI_MISINTERPRETATION: "Open interest signal was wrong",
    FailureCategory.UNKNOWN: "Unknown failure reason",
}

# Bias each regime is expected to produce
REGIME_EXPECTATIONS: Dict[str, Bias] = {
    "distribution": Bias.SHORT,
    "accumulation": Bias.LONG,
    "healthy_bull": Bias.LONG,
    "healthy_bear": Bias.SHORT,
    "long_trap": Bias.SHORT,
    "short_trap": Bias.LONG,
    "short_squeeze": Bias.LONG,
    "long_squeeze": Bias.SHORT,
}

EXTREME_FUNDING_PCT = 0.05
LOW_CONFIDENCE = 3.0

# Scenario words that name a break of market structure
STRUCTURE_BREAK_WORDS = frozenset({"bos", "choch", "breakout", "breakdown"})

_SIGNAL_DIRECTION = {"bullish": Bias.LONG, "long": Bias.LONG, "bearish": Bias.SHORT, "short": Bias.SHORT}


def signal_direction(signal: Optional[str]) -> Optional[Bias]:
    """Bias implied by a CVD or open-interest read, None when it is not directional."""
    if not signal:
        return None
    return _SIGNAL_DIRECTION.get(signal.lower())


def _against_macro(d: LabeledDecision) -> bool:
    return d.macro_anchored is False


def _cvd_opposite(d: LabeledDecision) -> bool:
    direction = signal_direction(d.cvd_signal)
    return direction is not None and direction != d.bias


def _regime_mismatch(d: LabeledDecision) -> bool:
    expected = REGIME_EXPECTATIONS.get(d.regime or "")
    return expected is not None and expected != d.bias


def _extreme_funding(d: LabeledDecision) -> bool:
    return d.funding_rate is not None and abs(d.funding_rate) > EXTREME_FUNDING_PCT


def _followed_oi(d: LabeledDecision) -> bool:
    return d.bias != Bias.WAIT and signal_direction(d.oi_signal) == d.bias


def _structure_break(d: LabeledDecision) -> bool:
    if not d.scenario:
        return False
    words = set(re.split(r"[^a-z]+", d.scenario.lower()))
    return bool(words & STRUCTURE_BREAK_WORDS) or {"break", "structure"} <= words


def _low_confidence(d: LabeledDecision) -> bool:
    return d.confidence is not None and d.confidence < LOW_CONFIDENCE


@dataclass(frozen=True)
class FailureRule:
    predicate: Callable[[LabeledDecision], bool]
    category: FailureCategory


DEFAULT_RULES: Sequence[FailureRule] = (
    FailureRule(_against_macro, FailureCategory.TIMEFRAME_CONFLICT),
    FailureRule(_cvd_opposite, FailureCategory.CVD_MISLEADING),
    FailureRule(_regime_mismatch, FailureCategory.REGIME_MISREAD),
    FailureRule(_extreme_funding, FailureCategory.FUNDING_MISS),
    FailureRule(_structure_break, FailureCategory.STRUCTURE_FALSE),
    FailureRule(_followed_oi, FailureCategory.OI_MISINTERPRETATION),
    FailureRule(_low_confidence, FailureCategory.DATA_QUALITY),
)


def classify_failure(decision: LabeledDecision, rules: Sequence[FailureRule] = DEFAULT_RULES) -> FailureCategory:
    for rule in rules:
        if rule.predicate(decision):
            return rule.category
    return FailureCategory.UNKNOWN
