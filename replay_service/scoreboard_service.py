"""
Scoreboard service.

Loads labeled replay states, runs the scoreboard aggregation and manages
saved baselines so a new engine configuration can be compared with an
earlier run.
"""

import logging
from typing import Any, Dict, List, Optional

from historical_replay.errors import NotFoundError, ValidationError
from historical_replay.intervals import normalize_symbol, now_ms, to_epoch_ms
from historical_replay.schemas import LabeledDecision
from historical_replay.scoreboard import (
    DEFAULT_THRESHOLDS,
    ScoreboardThresholds,
    build_scoreboard,
    compare_reports,
    headline_metrics,
)

from . import storage as st

logger = logging.getLogger(__name__)


def _normalise_filters(
    batch_id: Optional[str] = None,
    from_ts: Any = None,
    to_ts: Any = None,
    symbol: Optional[str] = None,
) -> Dict[str, Any]:
    return {
        "batch_id": batch_id or None,
        "from_ms": to_epoch_ms(from_ts) if from_ts is not None else None,
        "to_ms": to_epoch_ms(to_ts) if to_ts is not None else None,
        "symbol": normalize_symbol(symbol) if symbol else None,
    }


class ScoreboardService:
    def __init__(self, sessionmaker, thresholds: ScoreboardThresholds = DEFAULT_THRESHOLDS):
        self.sessionmaker = sessionmaker
        self.thresholds = thresholds

    async def _report(self, filters: Dict[str, Any]) -> Dict[str, Any]:
        rows = await st.get_labeled_states(self.sessionmaker, **filters)
        counts = await st.get_labeling_counts(self.sessionmaker, **filters)
        decisions = [LabeledDecision.from_row(r) for r in rows]
        report = build_scoreboard(decisions, pending=counts["pending"], thresholds=self.thresholds)
        report["filters"] = filters
        return report

    async def get_scoreboard(
        self,
        batch_id: Optional[str] = None,
        from_ts: Any = None,
        to_ts: Any = None,
        symbol: Optional[str] = None,
    ) -> Dict[str, Any]:
        return await self._report(_normalise_filters(batch_id, from_ts, to_ts, symbol))

    async def get_summary(self, **filters) -> Dict[str, Any]:
        """Headline metrics plus the calibration and WAIT verdicts."""
        report = await self.get_scoreboard(**filters)
        return {
            "filters": report["filters"],
            "headline": headline_metrics(report),
            "pending": report["overall_stats"]["pending"],
            "calibration": report["confidence_calibration"]["status"],
            "wait_effectiveness": report["wait_effectiveness"]["status"],
            "issues": report["regime_expectations"]["issues"] + report["directional_accuracy"]["notes"],
        }

    async def save_baseline(self, name: str, **filters) -> Dict[str, Any]:
        if not name or not name.strip():
            raise ValidationError("baseline name is required")
        normalised = _normalise_filters(**filters)
        report = await self._report(normalised)
        baseline = await st.insert_baseline(
            self.sessionmaker, name.strip(), normalised, headline_metrics(report), now_ms()
        )
        logger.info("saved baseline %s (%s) at %s%% overall accuracy",
                    baseline["id"], baseline["name"], baseline["metrics"]["overall_accuracy"])
        return baseline

    async def list_baselines(self) -> List[Dict[str, Any]]:
        return await st.list_baselines(self.sessionmaker)

    async def delete_baseline(self, baseline_id: int) -> bool:
        deleted = await st.delete_baseline(self.sessionmaker, baseline_id)
        if not deleted:
            raise NotFoundError(f"baseline {baseline_id} not found")
        return True

    async def compare_to_baseline(self, baseline_id: int, **filters) -> Dict[str, Any]:
        """Compare current metrics with a saved baseline.

        Without explicit filters the baseline's own filters are reused, so
        the comparison covers the same slice of data.
        """
        baseline = await st.get_baseline(self.sessionmaker, baseline_id)
        if baseline is None:
            raise NotFoundError(f"baseline {baseline_id} not found")
        if any(v is not None for v in filters.values()):
            normalised = _normalise_filters(**filters)
        else:
            normalised = baseline["filters"] or _normalise_filters()
        report = await self._report(normalised)
        comparison = compare_reports(headline_metrics(report), baseline["metrics"], self.thresholds)
        comparison["baseline_id"] = baseline["id"]
        comparison["baseline_name"] = baseline["name"]
        comparison["filters"] = normalised
        return comparison
