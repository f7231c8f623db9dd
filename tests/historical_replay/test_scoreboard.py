"""
Tests for scoreboard aggregation.

Verifies:
- Correctness rule for directional and WAIT decisions
- Confidence buckets cover every value exactly once
- Calibration and WAIT effectiveness verdicts
- Baseline comparison deltas and verdict
"""

import pytest

from factories import decision

from historical_replay.schemas import Bias, OutcomeLabel
from historical_replay.scoreboard import (
    ScoreboardThresholds,
    accuracy_by_bias,
    accuracy_by_confidence,
    alignment_accuracy,
    build_scoreboard,
    compare_reports,
    confidence_bucket,
    confidence_calibration,
    directional_accuracy,
    failure_analysis,
    group_performance,
    headline_metrics,
    is_correct,
    outcome_distribution,
    regime_expectations,
    wait_effectiveness,
)

CONT, REV, NOISE = OutcomeLabel.CONTINUATION, OutcomeLabel.REVERSAL, OutcomeLabel.NOISE


def _many(n, bias, outcome, start_id=1, **kwargs):
    return [decision(bias, outcome, state_id=start_id + i, **kwargs) for i in range(n)]


class TestCorrectness:
    @pytest.mark.parametrize(
        "bias,outcome,expected",
        [
            (Bias.LONG, CONT, True),
            (Bias.SHORT, CONT, True),
            (Bias.LONG, REV, False),
            (Bias.LONG, NOISE, False),
            (Bias.WAIT, NOISE, True),
            (Bias.WAIT, CONT, False),
        ],
    )
    def test_is_correct(self, bias, outcome, expected):
        assert is_correct(decision(bias, outcome)) is expected

    def test_accuracy_by_bias(self):
        items = _many(3, Bias.LONG, CONT) + _many(1, Bias.LONG, REV, start_id=10) + _many(2, Bias.WAIT, NOISE, start_id=20)
        result = accuracy_by_bias(items)
        assert result["LONG"]["total"] == 4
        assert result["LONG"]["accuracy"] == 75.0
        assert result["LONG"]["outcomes"] == {"CONTINUATION": 3, "REVERSAL": 1, "NOISE": 0}
        assert result["WAIT"]["accuracy"] == 100.0
        assert result["SHORT"]["accuracy"] is None


class TestConfidenceBuckets:
    @pytest.mark.parametrize(
        "value,bucket",
        [(-1, "0-3"), (0, "0-3"), (2.99, "0-3"), (3.0, "3-6"), (7.99, "6-8"), (8, "8-10"), (10, "8-10"), (12, "8-10"), (None, "0-3")],
    )
    def test_bucket_boundaries(self, value, bucket):
        assert confidence_bucket(value) == bucket

    def test_every_decision_lands_in_one_bucket(self):
        items = [decision(Bias.LONG, CONT, confidence=c, state_id=i) for i, c in enumerate([-2, 0, 3, 5.5, 6, 8, 9.9, 10, 15])]
        buckets = accuracy_by_confidence(items)
        assert sum(b["total"] for b in buckets.values()) == len(items)

    def test_calibrated(self):
        items = (
            _many(1, Bias.LONG, CONT, confidence=1.0)
            + _many(4, Bias.LONG, REV, start_id=10, confidence=1.0)
            + _many(5, Bias.LONG, CONT, start_id=20, confidence=9.0)
        )
        result = confidence_calibration(accuracy_by_confidence(items))
        assert result["status"] == "calibrated"
        assert result["is_monotonic"] is True
        assert result["correlation"] == 80.0
        assert result["valid_buckets"] == ["0-3", "8-10"]

    def test_miscalibrated(self):
        items = _many(5, Bias.LONG, CONT, confidence=1.0) + _many(5, Bias.LONG, REV, start_id=10, confidence=9.0)
        result = confidence_calibration(accuracy_by_confidence(items))
        assert result["status"] == "miscalibrated"
        assert result["is_monotonic"] is False

    def test_insufficient_buckets(self):
        items = _many(5, Bias.LONG, CONT, confidence=1.0) + _many(4, Bias.LONG, CONT, start_id=10, confidence=9.0)
        result = confidence_calibration(accuracy_by_confidence(items))
        assert result["status"] == "insufficient_data"
        assert result["is_monotonic"] is None


class TestWaitEffectiveness:
    def _mixed(self, wait_move):
        return (
            _many(2, Bias.WAIT, NOISE, price_change_pct=wait_move)
            + _many(2, Bias.LONG, CONT, start_id=10, price_change_pct=1.0, mae_pct=0.4)
            + _many(2, Bias.SHORT, CONT, start_id=20, price_change_pct=-1.0, mae_pct=0.2)
        )

    @pytest.mark.parametrize(
        "wait_move,status",
        [(1.0, "effective"), (0.6, "too_conservative"), (0.2, "inverted")],
    )
    def test_ratio_verdicts(self, wait_move, status):
        result = wait_effectiveness(self._mixed(wait_move))
        assert result["status"] == status
        assert result["ratio"] == pytest.approx(wait_move)
        assert result["avg_trade_mae_pct"] == pytest.approx(0.3)

    def test_no_waits(self):
        result = wait_effectiveness(_many(3, Bias.LONG, CONT, price_change_pct=1.0))
        assert result["status"] == "insufficient_data"
        assert result["effective"] is None


class TestSections:
    def test_directional_imbalance(self):
        items = _many(10, Bias.LONG, CONT) + _many(2, Bias.SHORT, REV, start_id=50)
        result = directional_accuracy(items)
        assert result["imbalanced"] is True
        assert result["accuracy_gap"] == 100.0
        assert any("LONG dominates" in n for n in result["notes"])

    def test_group_below_floor_has_no_accuracy(self):
        items = _many(3, Bias.LONG, CONT, regime="ranging") + _many(5, Bias.LONG, CONT, start_id=10, regime="healthy_bull")
        groups = group_performance(items, lambda d: d.regime)
        assert groups["ranging"]["accuracy"] is None
        assert groups["ranging"]["total"] == 3
        assert groups["healthy_bull"]["accuracy"] == 100.0

    def test_alignment_strong(self):
        aligned = _many(5, Bias.LONG, CONT, macro_bias=Bias.LONG, micro_bias=Bias.LONG)
        misaligned = (
            _many(2, Bias.LONG, CONT, start_id=10, macro_bias=Bias.LONG, micro_bias=Bias.SHORT)
            + _many(3, Bias.LONG, REV, start_id=20, macro_bias=Bias.LONG, micro_bias=Bias.SHORT)
        )
        no_hierarchy = _many(4, Bias.LONG, REV, start_id=30)
        result = alignment_accuracy(aligned + misaligned + no_hierarchy)
        assert result["aligned"]["total"] == 5
        assert result["misaligned"]["accuracy"] == 40.0
        assert result["gap"] == 60.0
        assert result["verdict"] == "strong"

    def test_regime_expectation_issue(self):
        items = _many(1, Bias.LONG, CONT, regime="healthy_bull") + _many(4, Bias.LONG, REV, start_id=10, regime="healthy_bull")
        result = regime_expectations(items)
        assert result["by_regime"]["healthy_bull"]["match_accuracy"] == 20.0
        assert len(result["issues"]) == 1

    def test_failure_analysis(self):
        items = (
            _many(3, Bias.LONG, REV, macro_anchored=False)
            + _many(1, Bias.LONG, REV, start_id=10, cvd_signal="bearish")
            + _many(2, Bias.LONG, CONT, start_id=20, macro_anchored=False)
        )
        result = failure_analysis(items)
        assert result["total_failures"] == 4
        assert result["dominant_failure"] == "TIMEFRAME_CONFLICT"
        assert result["dominant_percentage"] == 75.0
        assert result["by_category"]["CVD_MISLEADING"]["count"] == 1

    def test_failure_analysis_empty(self):
        assert failure_analysis(_many(2, Bias.LONG, CONT))["dominant_failure"] is None

    def test_outcome_distribution(self):
        dist = outcome_distribution(_many(3, Bias.LONG, CONT) + _many(1, Bias.WAIT, NOISE, start_id=10))
        assert dist["CONTINUATION"] == {"count": 3, "percentage": 75.0}
        assert dist["REVERSAL"] == {"count": 0, "percentage": 0.0}


class TestReport:
    def test_unlabeled_decisions_ignored(self):
        items = _many(4, Bias.LONG, CONT) + _many(3, Bias.LONG, None, start_id=10)
        report = build_scoreboard(items, pending=3)
        assert report["overall_stats"]["total_labeled"] == 4
        assert report["overall_stats"]["pending"] == 3
        assert report["overall_stats"]["overall_accuracy"] == 100.0

    def test_headline_metrics(self):
        items = _many(3, Bias.LONG, CONT) + _many(1, Bias.SHORT, REV, start_id=10) + _many(2, Bias.WAIT, NOISE, start_id=20)
        metrics = headline_metrics(build_scoreboard(items))
        assert metrics["total_labeled"] == 6
        assert metrics["overall_accuracy"] == 83.3
        assert metrics["directional_accuracy"] == 75.0
        assert metrics["wait_correctness_rate"] == 100.0
        assert metrics["short_accuracy"] == 0.0

    def test_thresholds_are_reported(self):
        report = build_scoreboard([], thresholds=ScoreboardThresholds(min_group_samples=2))
        assert report["thresholds"]["min_group_samples"] == 2


class TestCompareReports:
    def _metrics(self, overall, directional=50.0):
        return {
            "overall_accuracy": overall,
            "directional_accuracy": directional,
            "wait_correctness_rate": None,
            "long_accuracy": 60.0,
            "short_accuracy": 40.0,
        }

    def test_improved(self):
        result = compare_reports(self._metrics(62.5, 55.0), self._metrics(50.0))
        assert result["verdict"] == "improved"
        assert result["deltas"]["overall_accuracy"] == 12.5
        assert result["deltas"]["directional_accuracy"] == 5.0
        assert result["deltas"]["wait_correctness_rate"] is None

    def test_declined(self):
        assert compare_reports(self._metrics(40.0), self._metrics(50.0))["verdict"] == "declined"

    def test_unchanged_within_tolerance(self):
        assert compare_reports(self._metrics(50.0), self._metrics(50.0))["verdict"] == "unchanged"
        assert compare_reports(self._metrics(None), self._metrics(50.0))["verdict"] == "unchanged"
