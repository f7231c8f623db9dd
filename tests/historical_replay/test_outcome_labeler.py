"""
Tests for outcome labeling.

Verifies:
- Directional labels against the horizon threshold
- WAIT classification (missed move, chop, quiet market)
- MFE/MAE in percent of entry for LONG and SHORT
"""

import pytest

from factories import T0, candles

from historical_replay.errors import LookaheadViolation, ValidationError
from historical_replay.outcome_labeler import (
    DEFAULT_HORIZONS,
    assert_strictly_after,
    compute_excursions,
    get_horizon,
    label_outcome,
)
from historical_replay.schemas import Bias, Candle, OutcomeLabel

MICRO = DEFAULT_HORIZONS["MICRO"]


class TestDirectionalLabels:
    def test_long_small_move_is_noise(self):
        result = label_outcome(Bias.LONG, 50000, candles([50200, 50800, 50100]), MICRO)
        assert result.label == OutcomeLabel.NOISE
        assert result.price_change_pct == pytest.approx(0.2)
        assert result.candles_used == 3
        assert result.horizon == "MICRO"

    def test_long_continuation(self):
        result = label_outcome(Bias.LONG, 100, candles([100.5, 101.0]), MICRO)
        assert result.label == OutcomeLabel.CONTINUATION

    def test_long_reversal(self):
        result = label_outcome(Bias.LONG, 100, candles([99.5, 99.0]), MICRO)
        assert result.label == OutcomeLabel.REVERSAL

    def test_short_mirrors_long(self):
        assert label_outcome(Bias.SHORT, 100, candles([99.0]), MICRO).label == OutcomeLabel.CONTINUATION
        assert label_outcome(Bias.SHORT, 100, candles([101.0]), MICRO).label == OutcomeLabel.REVERSAL

    def test_threshold_is_inclusive(self):
        macro = DEFAULT_HORIZONS["MACRO"]
        assert label_outcome(Bias.LONG, 100, candles([102.0]), macro).label == OutcomeLabel.CONTINUATION
        assert label_outcome(Bias.SHORT, 100, candles([102.0]), macro).label == OutcomeLabel.REVERSAL

    def test_accepts_bias_string(self):
        assert label_outcome("LONG", 100, candles([101.0]), MICRO).label == OutcomeLabel.CONTINUATION


class TestWaitLabels:
    def test_missed_trend(self):
        series = [
            Candle(T0 + 1, 100.0, 101.2, 99.9, 101.0),
            Candle(T0 + 2, 101.0, 102.1, 100.9, 102.0),
        ]
        result = label_outcome(Bias.WAIT, 100, series, MICRO)
        assert result.label == OutcomeLabel.CONTINUATION
        assert "missed" in result.reason

    def test_chop_is_noise(self):
        series = [
            Candle(T0 + 1, 100.0, 102.0, 99.5, 101.0),
            Candle(T0 + 2, 101.0, 101.5, 98.0, 100.2),
        ]
        result = label_outcome(Bias.WAIT, 100, series, MICRO)
        assert result.label == OutcomeLabel.NOISE
        assert "choppy" in result.reason

    def test_quiet_market_is_noise(self):
        result = label_outcome(Bias.WAIT, 100, candles([100.1, 100.3], spread=0.1), MICRO)
        assert result.label == OutcomeLabel.NOISE
        assert "quiet" in result.reason

    def test_wait_has_no_excursions(self):
        result = label_outcome(Bias.WAIT, 100, candles([100.1]), MICRO)
        assert result.mfe_pct is None
        assert result.mae_pct is None


class TestExcursions:
    def test_long_and_short_excursions(self):
        series = [Candle(T0 + 1, 100, 106, 97, 101)]
        assert compute_excursions(Bias.LONG, 100, series) == (6.0, 3.0)
        assert compute_excursions(Bias.SHORT, 100, series) == (3.0, 6.0)

    def test_excursions_never_negative(self):
        series = [Candle(T0 + 1, 102, 104, 101, 103)]
        mfe, mae = compute_excursions(Bias.LONG, 100, series)
        assert mfe == 4.0
        assert mae == 0.0


class TestValidation:
    def test_empty_candles(self):
        with pytest.raises(ValidationError):
            label_outcome(Bias.LONG, 100, [], MICRO)

    @pytest.mark.parametrize("entry", [0, -1, None])
    def test_bad_entry_price(self, entry):
        with pytest.raises(ValidationError):
            label_outcome(Bias.LONG, entry, candles([100]), MICRO)

    def test_future_candles_must_follow_decision(self):
        assert_strictly_after([Candle(T0 + 1, 1, 1, 1, 1)], T0)
        with pytest.raises(LookaheadViolation):
            assert_strictly_after([Candle(T0, 1, 1, 1, 1)], T0)

    def test_get_horizon(self):
        assert get_horizon("macro").timeframe == "4h"
        assert get_horizon("SCALPING").threshold_pct == 0.3
        with pytest.raises(ValidationError):
            get_horizon("WEEKLY")
