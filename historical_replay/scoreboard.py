"""
Scoreboard aggregation over labeled replay decisions.

Every function here takes a sequence of ``LabeledDecision`` and returns
plain dicts that serialise straight to JSON. Accuracies are percentages
rounded to one decimal.

A decision counts as correct when it was directional and the market
continued, or when it was WAIT and the market did nothing worth trading.

Example usage:

    decisions = [LabeledDecision.from_row(r) for r in rows]
    report = build_scoreboard(decisions, pending=12)
    diff = compare_reports(headline_metrics(report), baseline["metrics"])
"""

from collections import Counter, defaultdict
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .failure_rules import FAILURE_DESCRIPTIONS, REGIME_EXPECTATIONS, classify_failure
from .schemas import Bias, LabeledDecision, OutcomeLabel

CONFIDENCE_BUCKETS: Tuple[Tuple[str, float, float], ...] = (
    ("0-3", 0.0, 3.0),
    ("3-6", 3.0, 6.0),
    ("6-8", 6.0, 8.0),
    ("8-10", 8.0, 10.0),
)

HEADLINE_DELTA_KEYS = (
    "overall_accuracy",
    "directional_accuracy",
    "wait_correctness_rate",
    "long_accuracy",
    "short_accuracy",
)


@dataclass(frozen=True)
class ScoreboardThresholds:
    """Sample-size floors and ratio cut-offs used by the report.

    Attributes:
        min_bucket_samples: Confidence buckets below this are left out of calibration.
        min_group_samples: Regime, scenario and timeframe groups below this report no accuracy.
        min_regime_matches: Regime expectation issues need at least this many matching decisions.
        wait_effective_ratio: WAIT/trade move ratio at or above which WAIT is effective.
        wait_inverted_ratio: Ratio below which WAIT is considered inverted.
        imbalance_fraction: LONG/SHORT count difference, as a fraction of the larger side, that flags imbalance.
        verdict_tolerance: Overall accuracy change (points) treated as unchanged.
    """

    min_bucket_samples: int = 5
    min_group_samples: int = 5
    min_regime_matches: int = 5
    wait_effective_ratio: float = 0.8
    wait_inverted_ratio: float = 0.5
    imbalance_fraction: float = 0.5
    verdict_tolerance: float = 0.1


DEFAULT_THRESHOLDS = ScoreboardThresholds()


def is_correct(decision: LabeledDecision) -> bool:
    if decision.bias == Bias.WAIT:
        return decision.outcome == OutcomeLabel.NOISE
    return decision.outcome == OutcomeLabel.CONTINUATION


def confidence_bucket(confidence: Optional[float]) -> str:
    """Bucket name for a confidence value. Out-of-range values are clamped."""
    value = min(max(float(confidence or 0.0), 0.0), 10.0)
    for name, low, high in CONFIDENCE_BUCKETS:
        if low <= value < high:
            return name
    return CONFIDENCE_BUCKETS[-1][0]


def _pct(part: float, whole: float) -> Optional[float]:
    return round(part / whole * 100, 1) if whole else None


def _avg(values: Iterable[Optional[float]]) -> Optional[float]:
    vals = [v for v in values if v is not None]
    return round(sum(vals) / len(vals), 4) if vals else None


def _tally(items: Sequence[LabeledDecision]) -> Dict[str, Any]:
    correct = sum(1 for d in items if is_correct(d))
    return {"total": len(items), "correct": correct, "accuracy": _pct(correct, len(items))}


def labeled_only(decisions: Iterable[LabeledDecision]) -> List[LabeledDecision]:
    return [d for d in decisions if d.outcome is not None]


def accuracy_by_bias(decisions: Sequence[LabeledDecision]) -> Dict[str, Dict[str, Any]]:
    result = {}
    for bias in Bias:
        items = [d for d in decisions if d.bias == bias]
        entry = _tally(items)
        entry["outcomes"] = {label.value: sum(1 for d in items if d.outcome == label) for label in OutcomeLabel}
        result[bias.value] = entry
    return result


def accuracy_by_confidence(decisions: Sequence[LabeledDecision]) -> Dict[str, Dict[str, Any]]:
    buckets: Dict[str, List[LabeledDecision]] = {name: [] for name, _, _ in CONFIDENCE_BUCKETS}
    for d in decisions:
        buckets[confidence_bucket(d.confidence)].append(d)
    return {name: _tally(items) for name, items in buckets.items()}


def confidence_calibration(
    by_confidence: Dict[str, Dict[str, Any]],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Check that accuracy rises with confidence.

    Only buckets with enough samples take part; at least two are needed.
    ``correlation`` is the accuracy of the highest valid bucket minus that
    of the lowest.
    """
    valid = [
        (name, by_confidence[name]["accuracy"])
        for name, _, _ in CONFIDENCE_BUCKETS
        if by_confidence[name]["total"] >= thresholds.min_bucket_samples
    ]
    if len(valid) < 2:
        return {
            "status": "insufficient_data",
            "valid_buckets": [name for name, _ in valid],
            "is_monotonic": None,
            "correlation": None,
            "message": f"need at least 2 buckets with {thresholds.min_bucket_samples}+ samples",
        }
    accuracies = [acc for _, acc in valid]
    monotonic = all(b >= a for a, b in zip(accuracies, accuracies[1:]))
    correlation = round(accuracies[-1] - accuracies[0], 1)
    return {
        "status": "calibrated" if monotonic and correlation > 0 else "miscalibrated",
        "valid_buckets": [name for name, _ in valid],
        "is_monotonic": monotonic,
        "correlation": correlation,
        "message": (
            "higher confidence is more accurate"
            if monotonic and correlation > 0
            else "confidence does not track accuracy"
        ),
    }


def wait_correctness(decisions: Sequence[LabeledDecision]) -> Dict[str, Any]:
    waits = [d for d in decisions if d.bias == Bias.WAIT]
    correct = sum(1 for d in waits if d.outcome == OutcomeLabel.NOISE)
    missed = sum(1 for d in waits if d.outcome == OutcomeLabel.CONTINUATION)
    return {"total": len(waits), "correct": correct, "missed_moves": missed, "rate": _pct(correct, len(waits))}


def wait_effectiveness(
    decisions: Sequence[LabeledDecision],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Compare the market movement after WAIT decisions with that after trades.

    WAIT is effective when the moves it sat out were comparable to the
    moves that were traded; a low ratio means WAIT is only catching the
    quiet periods.
    """
    wait_moves = [abs(d.price_change_pct) for d in decisions if d.bias == Bias.WAIT and d.price_change_pct is not None]
    trades = [d for d in decisions if d.bias != Bias.WAIT]
    trade_moves = [abs(d.price_change_pct) for d in trades if d.price_change_pct is not None]
    avg_wait = _avg(wait_moves)
    avg_trade = _avg(trade_moves)
    result: Dict[str, Any] = {
        "wait_count": len(wait_moves),
        "trade_count": len(trade_moves),
        "avg_wait_move_pct": avg_wait,
        "avg_trade_move_pct": avg_trade,
        "avg_trade_mae_pct": _avg(d.mae_pct for d in trades),
        "ratio": None,
    }
    if not wait_moves or not trade_moves or not avg_trade:
        result.update(status="insufficient_data", effective=None)
        return result
    ratio = round(avg_wait / avg_trade, 3)
    if ratio >= thresholds.wait_effective_ratio:
        status = "effective"
    elif ratio < thresholds.wait_inverted_ratio:
        status = "inverted"
    else:
        status = "too_conservative"
    result.update(ratio=ratio, status=status, effective=status == "effective")
    return result


def directional_accuracy(
    decisions: Sequence[LabeledDecision],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    longs = _tally([d for d in decisions if d.bias == Bias.LONG])
    shorts = _tally([d for d in decisions if d.bias == Bias.SHORT])
    larger = max(longs["total"], shorts["total"])
    imbalanced = larger > 0 and abs(longs["total"] - shorts["total"]) > larger * thresholds.imbalance_fraction
    gap = None
    if longs["accuracy"] is not None and shorts["accuracy"] is not None:
        gap = round(longs["accuracy"] - shorts["accuracy"], 1)
    notes = []
    if imbalanced:
        dominant = "LONG" if longs["total"] > shorts["total"] else "SHORT"
        notes.append(f"sample imbalance: {dominant} dominates ({longs['total']} vs {shorts['total']})")
    if gap is not None and abs(gap) > 10:
        stronger = "LONG" if gap > 0 else "SHORT"
        notes.append(f"{stronger} calls are {abs(gap)} points more accurate")
    return {"long": longs, "short": shorts, "imbalanced": imbalanced, "accuracy_gap": gap, "notes": notes}


def group_performance(
    decisions: Sequence[LabeledDecision],
    key_func: Callable[[LabeledDecision], Optional[str]],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Dict[str, Any]]:
    """Accuracy per group; groups below the sample floor report ``accuracy=None``."""
    groups: Dict[str, List[LabeledDecision]] = defaultdict(list)
    for d in decisions:
        groups[key_func(d) or "unknown"].append(d)
    result = {}
    for key, items in sorted(groups.items()):
        entry = _tally(items)
        if entry["total"] < thresholds.min_group_samples:
            entry["accuracy"] = None
        entry["by_bias"] = dict(Counter(d.bias.value for d in items))
        result[key] = entry
    return result


def timeframe_accuracy(
    decisions: Sequence[LabeledDecision],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    by_tf = group_performance(decisions, lambda d: d.timeframe, thresholds)
    scored = [(tf, v["accuracy"]) for tf, v in by_tf.items() if v["accuracy"] is not None]
    best = max(scored, key=lambda x: x[1]) if scored else None
    worst = min(scored, key=lambda x: x[1]) if scored else None
    return {
        "by_timeframe": by_tf,
        "best": {"timeframe": best[0], "accuracy": best[1]} if best else None,
        "worst": {"timeframe": worst[0], "accuracy": worst[1]} if worst else None,
    }


def _is_aligned(d: LabeledDecision) -> Optional[bool]:
    layers = [d.macro_bias, d.micro_bias, d.scalping_bias]
    if all(b is None for b in layers):
        return None
    directional = {b for b in layers if b is not None and b != Bias.WAIT}
    return len(directional) <= 1


def alignment_accuracy(decisions: Sequence[LabeledDecision]) -> Dict[str, Any]:
    aligned, misaligned = [], []
    for d in decisions:
        flag = _is_aligned(d)
        if flag is None:
            continue
        (aligned if flag else misaligned).append(d)
    a, m = _tally(aligned), _tally(misaligned)
    gap = None
    if a["accuracy"] is not None and m["accuracy"] is not None:
        gap = round(a["accuracy"] - m["accuracy"], 1)
    if gap is None:
        verdict = "insufficient_data"
    elif gap > 10:
        verdict = "strong"
    elif gap > 0:
        verdict = "moderate"
    else:
        verdict = "none"
    return {"aligned": a, "misaligned": m, "gap": gap, "verdict": verdict}


def regime_expectations(
    decisions: Sequence[LabeledDecision],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """How decisions fare when they follow the bias their regime implies."""
    by_regime: Dict[str, Any] = {}
    issues = []
    for regime, expected in REGIME_EXPECTATIONS.items():
        in_regime = [d for d in decisions if d.regime == regime]
        if not in_regime:
            continue
        matching = [d for d in in_regime if d.bias == expected]
        tally = _tally(matching)
        by_regime[regime] = {
            "expected_bias": expected.value,
            "total": len(in_regime),
            "bias_matches": len(matching),
            "match_accuracy": tally["accuracy"],
        }
        if len(matching) >= thresholds.min_regime_matches and (tally["accuracy"] or 0) < 50:
            issues.append(
                f"{regime}: following the expected {expected.value} bias is only {tally['accuracy']}% accurate"
            )
    return {"by_regime": by_regime, "issues": issues}


def failure_analysis(decisions: Sequence[LabeledDecision]) -> Dict[str, Any]:
    failures = [d for d in decisions if d.outcome == OutcomeLabel.REVERSAL and d.bias != Bias.WAIT]
    if not failures:
        return {
            "total_failures": 0,
            "by_category": {},
            "dominant_failure": None,
            "dominant_percentage": 0.0,
            "recommendation": None,
        }
    counts = Counter(classify_failure(d) for d in failures)
    ranked = counts.most_common()
    by_category = {
        cat.value: {
            "count": n,
            "percentage": _pct(n, len(failures)),
            "description": FAILURE_DESCRIPTIONS[cat],
        }
        for cat, n in ranked
    }
    top, top_count = ranked[0]
    return {
        "total_failures": len(failures),
        "by_category": by_category,
        "dominant_failure": top.value,
        "dominant_percentage": _pct(top_count, len(failures)),
        "recommendation": f"Focus on {top.value}: {FAILURE_DESCRIPTIONS[top]}",
    }


def outcome_distribution(decisions: Sequence[LabeledDecision]) -> Dict[str, Any]:
    counts = Counter(d.outcome.value for d in decisions if d.outcome is not None)
    total = sum(counts.values())
    return {
        label.value: {"count": counts.get(label.value, 0), "percentage": _pct(counts.get(label.value, 0), total)}
        for label in OutcomeLabel
    }


def overall_stats(decisions: Sequence[LabeledDecision], pending: int = 0) -> Dict[str, Any]:
    tally = _tally(decisions)
    directional = _tally([d for d in decisions if d.bias != Bias.WAIT])
    return {
        "total_labeled": tally["total"],
        "pending": pending,
        "correct": tally["correct"],
        "overall_accuracy": tally["accuracy"],
        "directional_accuracy": directional["accuracy"],
        "avg_confidence": _avg(d.confidence for d in decisions),
        "avg_mfe_pct": _avg(d.mfe_pct for d in decisions),
        "avg_mae_pct": _avg(d.mae_pct for d in decisions),
    }


def build_scoreboard(
    decisions: Sequence[LabeledDecision],
    pending: int = 0,
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Full scoreboard report. Unlabeled decisions are ignored."""
    labeled = labeled_only(decisions)
    by_confidence = accuracy_by_confidence(labeled)
    return {
        "overall_stats": overall_stats(labeled, pending),
        "accuracy_by_bias": accuracy_by_bias(labeled),
        "accuracy_by_confidence": by_confidence,
        "confidence_calibration": confidence_calibration(by_confidence, thresholds),
        "wait_correctness": wait_correctness(labeled),
        "wait_effectiveness": wait_effectiveness(labeled, thresholds),
        "directional_accuracy": directional_accuracy(labeled, thresholds),
        "performance_by_regime": group_performance(labeled, lambda d: d.regime, thresholds),
        "performance_by_scenario": group_performance(labeled, lambda d: d.scenario, thresholds),
        "timeframe_accuracy": timeframe_accuracy(labeled, thresholds),
        "alignment_accuracy": alignment_accuracy(labeled),
        "regime_expectations": regime_expectations(labeled, thresholds),
        "failure_analysis": failure_analysis(labeled),
        "outcome_distribution": outcome_distribution(labeled),
        "thresholds": asdict(thresholds),
    }


def headline_metrics(report: Dict[str, Any]) -> Dict[str, Any]:
    """The subset of a report persisted with a baseline."""
    stats = report["overall_stats"]
    directional = report["directional_accuracy"]
    return {
        "total_labeled": stats["total_labeled"],
        "overall_accuracy": stats["overall_accuracy"],
        "directional_accuracy": stats["directional_accuracy"],
        "wait_correctness_rate": report["wait_correctness"]["rate"],
        "long_accuracy": directional["long"]["accuracy"],
        "short_accuracy": directional["short"]["accuracy"],
        "is_monotonic": report["confidence_calibration"]["is_monotonic"],
        "wait_effectiveness_ratio": report["wait_effectiveness"]["ratio"],
        "dominant_failure": report["failure_analysis"]["dominant_failure"],
        "alignment_gap": report["alignment_accuracy"]["gap"],
    }


def compare_reports(
    current: Dict[str, Any],
    baseline: Dict[str, Any],
    thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS,
) -> Dict[str, Any]:
    """Signed deltas (current minus baseline) for the headline metrics.

    The verdict follows the overall accuracy delta; changes within the
    tolerance count as unchanged.
    """
    deltas: Dict[str, Optional[float]] = {}
    for key in HEADLINE_DELTA_KEYS:
        cur, base = current.get(key), baseline.get(key)
        deltas[key] = round(cur - base, 1) if cur is not None and base is not None else None
    overall = deltas["overall_accuracy"]
    if overall is None or abs(overall) <= thresholds.verdict_tolerance:
        verdict = "unchanged"
    elif overall > 0:
        verdict = "improved"
    else:
        verdict = "declined"
    return {"current": current, "baseline": baseline, "deltas": deltas, "verdict": verdict}
