"""
Replay Sample Executor.

Runs the decision engine for one (symbol, as-of instant) exactly as it
would have run live at that instant, and stores the result:

1. Short-circuit if a state already exists for (batch, as-of, symbol).
2. Fetch closed-candle series for every venue and timeframe.
3. Build the snapshot; any input newer than the cutoff is a lookahead bug.
4. Evaluate the engine and persist the decision with bounded retries.

Failures come back as an ``ExecutionResult`` with an ``ErrorKind`` so the
orchestrator can decide whether to retry; only unexpected errors (for
example an engine crash) propagate.
"""

import inspect
import logging
from typing import Dict, Optional, Sequence

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from historical_replay.decision_engine import DecisionEngine
from historical_replay.errors import InsufficientData, LookaheadViolation, PersistenceError, RateLimited
from historical_replay.intervals import INTERVAL_CONFIG, normalize_symbol
from historical_replay.schemas import DataSource, DecisionPayload, ErrorKind, ExecutionResult, SeriesBundle, Snapshot
from historical_replay.snapshot_builder import build_snapshot

from . import storage as st
from .historical_data import HistoricalDataService
from .metrics import replay_lookahead_violations_total, replay_states_persisted_total

logger = logging.getLogger(__name__)

ADHOC_BATCH_ID = "adhoc"


class ReplaySampleExecutor:
    def __init__(
        self,
        sessionmaker,
        data_service: HistoricalDataService,
        engine: DecisionEngine,
        venues: Sequence[str],
        timeframes: Sequence[str],
        primary_venue: str,
        primary_timeframe: str,
        min_candles: Optional[Dict[str, int]] = None,
        persist_attempts: int = 3,
        persist_backoff: float = 0.5,
    ):
        self.sessionmaker = sessionmaker
        self.data_service = data_service
        self.engine = engine
        self.venues = list(venues)
        self.timeframes = list(timeframes)
        self.primary_venue = primary_venue
        self.primary_timeframe = primary_timeframe
        self.min_candles = {tf: INTERVAL_CONFIG[tf].min_candles for tf in self.timeframes}
        self.min_candles.update(min_candles or {})
        self.persist_attempts = persist_attempts
        self.persist_backoff = persist_backoff

    async def _fetch_all(self, symbol: str, as_of_ms: int, mode: DataSource) -> Dict[str, Dict[str, SeriesBundle]]:
        raw: Dict[str, Dict[str, SeriesBundle]] = {}
        for venue in self.venues:
            raw[venue] = {}
            for tf in self.timeframes:
                required = self.min_candles[tf]
                raw[venue][tf] = await self.data_service.get_series(
                    venue,
                    symbol,
                    tf,
                    as_of_ms,
                    min_candles=required,
                    fetch_count=required + INTERVAL_CONFIG[tf].fetch_buffer,
                    mode=mode,
                )
        return raw

    async def _evaluate(self, snapshot: Snapshot) -> DecisionPayload:
        result = self.engine.evaluate(snapshot)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, DecisionPayload):
            return result
        return DecisionPayload.model_validate(result)

    async def _persist(self, **fields) -> int:
        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(self.persist_attempts),
            wait=wait_exponential(multiplier=self.persist_backoff, max=10),
            retry=retry_if_exception_type(PersistenceError),
            reraise=True,
        ):
            with attempt:
                if attempt.retry_state.attempt_number > 1:
                    logger.warning("retrying state write for %s at %s (attempt %d)",
                                   fields["symbol"], fields["as_of_ms"], attempt.retry_state.attempt_number)
                return await st.insert_replay_state(self.sessionmaker, **fields)

    async def execute(
        self,
        as_of_ms: int,
        symbol: str,
        batch_id: str = ADHOC_BATCH_ID,
        mode: DataSource = DataSource.LOCAL,
    ) -> ExecutionResult:
        """
        Replay one sample.

        Args:
            as_of_ms: Decision instant (epoch ms).
            symbol: Symbol, normalised before use.
            batch_id: Owning batch; part of the idempotency key.
            mode: Local-only or vendor-fallback data access.

        Returns:
            ExecutionResult with the stored state id, or the error kind.
        """
        symbol = normalize_symbol(symbol)
        existing = await st.find_replay_state_id(self.sessionmaker, batch_id, as_of_ms, symbol)
        if existing is not None:
            logger.debug("state for %s/%s/%s exists (%s), skipping", batch_id, as_of_ms, symbol, existing)
            return ExecutionResult(success=True, state_id=existing, skipped=True)

        try:
            raw = await self._fetch_all(symbol, as_of_ms, mode)
            snapshot = build_snapshot(raw, as_of_ms, self.primary_venue, self.primary_timeframe)
            latest = snapshot.data_range["latest_ms"]
            if latest is not None and latest > as_of_ms:
                raise LookaheadViolation(
                    f"snapshot data reaches {latest}, after as-of {as_of_ms}",
                    timestamp_ms=latest,
                    cutoff_ms=as_of_ms,
                )
            decision = await self._evaluate(snapshot)
            state_id = await self._persist(
                batch_id=batch_id,
                symbol=symbol,
                as_of_ms=as_of_ms,
                price=snapshot.price,
                bias=decision.bias.value,
                confidence=decision.confidence,
                primary_regime=decision.regime.type,
                scenario=decision.scenario,
                config_version=decision.config_version,
                decision=decision.model_dump(mode="json"),
                snapshot_meta={
                    "candle_counts": {v: {tf: len(b.candles) for tf, b in tfs.items()} for v, tfs in raw.items()},
                    "data_range": snapshot.data_range,
                    "data_source": mode.value,
                },
            )
        except LookaheadViolation as e:
            replay_lookahead_violations_total.inc()
            logger.critical("LOOKAHEAD VIOLATION for %s at %s: %s", symbol, as_of_ms, e)
            return ExecutionResult(success=False, error_kind=ErrorKind.LOOKAHEAD_VIOLATION, error=str(e))
        except InsufficientData as e:
            logger.info("insufficient data for %s at %s: %s", symbol, as_of_ms, e)
            return ExecutionResult(success=False, error_kind=ErrorKind.INSUFFICIENT_DATA, error=str(e))
        except RateLimited as e:
            logger.warning("rate limited replaying %s at %s", symbol, as_of_ms)
            return ExecutionResult(success=False, error_kind=ErrorKind.RATE_LIMITED, error=str(e))
        except PersistenceError as e:
            replay_states_persisted_total.labels(result="error").inc()
            logger.error("could not store state for %s at %s: %s", symbol, as_of_ms, e)
            return ExecutionResult(success=False, error_kind=ErrorKind.PERSISTENCE, error=str(e))
        except (httpx.HTTPError, OSError) as e:
            logger.warning("I/O error replaying %s at %s: %s", symbol, as_of_ms, e)
            return ExecutionResult(success=False, error_kind=ErrorKind.IO_ERROR, error=str(e))

        replay_states_persisted_total.labels(result="ok").inc()
        logger.info("replayed %s at %s -> %s (%.1f) state=%s", symbol, as_of_ms, decision.bias.value, decision.confidence, state_id)
        return ExecutionResult(success=True, state_id=state_id)
