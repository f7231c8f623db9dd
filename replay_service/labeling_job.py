"""
Outcome labeling job.

Finds replay states whose evaluation horizon has matured, fetches the
candles that followed each decision, labels the outcome and writes it
once. Future candles are read from a window of twice the horizon after
the decision, locally first and from the vendor when the local store is
short there. A state that already carries a label is never touched again, and a
state with no future data yet is skipped rather than failed so a later
run can pick it up.
"""

import logging
from dataclasses import asdict, dataclass
from typing import Any, Callable, Dict, List, Optional

import httpx

from historical_replay.errors import LookaheadViolation, NotFoundError, RateLimited, ValidationError
from historical_replay.intervals import interval_to_ms, last_closed_open_ms, normalize_symbol, now_ms
from historical_replay.outcome_labeler import (
    DEFAULT_HORIZONS,
    HorizonConfig,
    assert_strictly_after,
    get_horizon,
    label_outcome,
)
from historical_replay.schemas import Bias, Candle

from . import storage as st
from .historical_data import HistoricalDataService
from .metrics import outcome_labels_total
from .series_store import HistoricalSeriesStore

logger = logging.getLogger(__name__)


@dataclass
class LabelingRunResult:
    labeled: int = 0
    skipped: int = 0
    failed: int = 0
    total: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


class OutcomeLabelingJob:
    """
    Label matured replay states.

    Future candles come from the primary venue on the horizon's timeframe,
    strictly after the decision instant and no later than twice the
    horizon past it.
    """

    def __init__(
        self,
        sessionmaker,
        store: HistoricalSeriesStore,
        venue: str,
        horizons: Optional[Dict[str, HorizonConfig]] = None,
        clock: Callable[[], int] = now_ms,
        data_service: Optional[HistoricalDataService] = None,
    ):
        self.sessionmaker = sessionmaker
        self.store = store
        self.venue = venue
        self.horizons = horizons or DEFAULT_HORIZONS
        self.clock = clock
        self.data_service = data_service

    async def _future_candles(self, symbol: str, as_of: int, horizon: HorizonConfig) -> List[Candle]:
        tf = horizon.timeframe
        window_end = as_of + interval_to_ms(tf) * horizon.candle_count * 2
        candles = await self.store.get_candles_after(
            self.venue, symbol, tf, as_of, horizon.candle_count, until_ms=window_end
        )
        if len(candles) >= max(horizon.min_future_candles, 1):
            return candles
        if self.data_service is None or self.data_service.vendor is None:
            return candles
        end = min(window_end, last_closed_open_ms(tf, self.clock()))
        if end <= as_of:
            return candles
        logger.info("local %s/%s/%s has %d future candles after %s, asking vendor",
                    self.venue, symbol, tf, len(candles), as_of)
        try:
            bundle = await self.data_service.fetch_from_vendor(
                self.venue, symbol, tf, end_ms=end, limit=horizon.candle_count, start_ms=as_of + 1
            )
        except (RateLimited, httpx.HTTPError) as e:
            logger.warning("vendor future candles for %s after %s unavailable: %s", symbol, as_of, e)
            return candles
        remote = [c for c in bundle.candles if as_of < c.time_ms <= end][: horizon.candle_count]
        return remote if len(remote) > len(candles) else candles

    async def _label_state(self, state: Dict[str, Any], horizon: HorizonConfig) -> str:
        """Label one state. Returns "labeled", "skipped" or "failed"."""
        if state.get("outcome_label"):
            return "skipped"
        entry = state.get("price")
        if not entry or entry <= 0:
            logger.warning("state %s has no entry price, skipping", state["id"])
            return "skipped"

        as_of = state["as_of_ms"]
        candles = await self._future_candles(state["symbol"], as_of, horizon)
        if len(candles) < max(horizon.min_future_candles, 1):
            logger.info("state %s: %d future %s candles, need %d; skipping",
                        state["id"], len(candles), horizon.timeframe, horizon.min_future_candles)
            return "skipped"
        try:
            assert_strictly_after(candles, as_of)
        except LookaheadViolation as e:
            logger.critical("state %s: %s", state["id"], e)
            return "failed"

        outcome = label_outcome(Bias(state["bias"]), entry, candles, horizon)
        written = await st.record_outcome(
            self.sessionmaker,
            state["id"],
            outcome_label=outcome.label,
            outcome_horizon=outcome.horizon,
            price_change_pct=outcome.price_change_pct,
            mfe_pct=outcome.mfe_pct,
            mae_pct=outcome.mae_pct,
            outcome_reason=outcome.reason,
            labeled_at_ms=self.clock(),
        )
        if not written:
            logger.warning("state %s was labeled concurrently; keeping the existing label", state["id"])
            return "skipped"
        logger.debug("state %s %s -> %s (%+.2f%%)", state["id"], state["bias"], outcome.label.value, outcome.price_change_pct)
        return "labeled"

    async def label_pending(
        self,
        horizon: str = "MICRO",
        symbol: Optional[str] = None,
        limit: int = 100,
        batch_id: Optional[str] = None,
    ) -> LabelingRunResult:
        """
        Label up to ``limit`` matured, unlabeled states.

        Args:
            horizon: SCALPING, MICRO or MACRO.
            symbol: Optional symbol filter.
            limit: Maximum states to process.
            batch_id: Optional batch filter.

        Raises:
            ValidationError: If the horizon name is unknown.
        """
        config = get_horizon(horizon, self.horizons)
        symbol = normalize_symbol(symbol) if symbol else None
        matured_before = self.clock() - config.maturation_ms
        states = await st.get_unlabeled_states(
            self.sessionmaker, matured_before, symbol=symbol, batch_id=batch_id, limit=limit
        )
        result = LabelingRunResult(total=len(states))
        for state in states:
            try:
                status = await self._label_state(state, config)
            except ValidationError as e:
                logger.error("state %s could not be labeled: %s", state["id"], e)
                status = "failed"
            setattr(result, status, getattr(result, status) + 1)
            outcome_labels_total.labels(result=status).inc()
        logger.info("labeling %s (%s): %d labeled, %d skipped, %d failed of %d",
                    config.name, symbol or "all", result.labeled, result.skipped, result.failed, result.total)
        return result

    async def label_single_state(self, state_id: int, horizon: str = "MICRO") -> Dict[str, Any]:
        """Label one state regardless of maturation, returning the stored row."""
        config = get_horizon(horizon, self.horizons)
        state = await st.get_replay_state(self.sessionmaker, state_id)
        if state is None:
            raise NotFoundError(f"replay state {state_id} not found")
        status = await self._label_state(state, config)
        outcome_labels_total.labels(result=status).inc()
        return {"status": status, "state": await st.get_replay_state(self.sessionmaker, state_id)}

    async def get_labeling_status(self, batch_id: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
        symbol = normalize_symbol(symbol) if symbol else None
        counts = await st.get_labeling_counts(self.sessionmaker, batch_id=batch_id, symbol=symbol)
        total = counts["total"]
        counts["percent_labeled"] = round(counts["labeled"] / total * 100, 1) if total else 0.0
        return counts
