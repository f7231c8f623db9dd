"""
Tests for the replay sample executor.

Verifies:
- One stored state per (batch, as-of, symbol); reruns skip the engine
- No input newer than the as-of instant reaches the engine
- Error kinds for insufficient data, lookahead and rate limits
"""

import pytest
import pytest_asyncio

from factories import H4, T0, market_rows

from historical_replay.errors import RateLimited
from historical_replay.schemas import Candle, DataSource, DecisionPayload, ErrorKind, SeriesBundle
from replay_service import storage as st
from replay_service.executor import ADHOC_BATCH_ID, ReplaySampleExecutor
from replay_service.historical_data import HistoricalDataService
from replay_service.series_store import HistoricalSeriesStore

pytestmark = pytest.mark.asyncio


class RecordingEngine:
    config_version = "recording-1"

    def __init__(self, payload=None):
        self.snapshots = []
        self.payload = payload or {
            "bias": "LONG",
            "confidence": 7,
            "regime": {"type": "healthy_bull"},
            "scenario": "trend_long",
            "config_version": self.config_version,
            "orderflow_note": "absorption",
        }

    def evaluate(self, snapshot):
        self.snapshots.append(snapshot)
        return self.payload


class AsyncEngine(RecordingEngine):
    async def evaluate(self, snapshot):
        self.snapshots.append(snapshot)
        return DecisionPayload(bias="SHORT", confidence=4.0, config_version=self.config_version)


class StaticDataService:
    def __init__(self, bundle=None, error=None):
        self.bundle = bundle
        self.error = error

    async def get_series(self, venue, symbol, timeframe, as_of_ms, min_candles, fetch_count, mode=DataSource.LOCAL):
        if self.error is not None:
            raise self.error
        return self.bundle


def _executor(db_sessionmaker, engine, data_service=None):
    if data_service is None:
        data_service = HistoricalDataService(HistoricalSeriesStore(db_sessionmaker))
    return ReplaySampleExecutor(
        db_sessionmaker,
        data_service,
        engine,
        venues=["Binance"],
        timeframes=["4h"],
        primary_venue="Binance",
        primary_timeframe="4h",
        min_candles={"4h": 5},
        persist_backoff=0.01,
    )


@pytest_asyncio.fixture
async def seeded(db_sessionmaker):
    await st.upsert_candles(db_sessionmaker, "Binance", "BTC", "4h", market_rows(T0, 20, H4))
    return db_sessionmaker


async def test_execute_stores_decision(seeded):
    engine = RecordingEngine()
    executor = _executor(seeded, engine)

    result = await executor.execute(T0 + 10 * H4, "BTCUSDT", batch_id="b1")

    assert result.success is True and result.skipped is False
    state = await st.get_replay_state(seeded, result.state_id)
    assert state["symbol"] == "BTC"
    assert state["bias"] == "LONG"
    assert state["config_version"] == "recording-1"
    assert state["price"] == 105.0
    assert state["decision"]["extra"] == {"orderflow_note": "absorption"}
    assert state["snapshot_meta"]["candle_counts"] == {"Binance": {"4h": 10}}
    assert state["snapshot_meta"]["data_source"] == "local"


async def test_engine_only_sees_closed_candles(seeded):
    engine = RecordingEngine()
    as_of = T0 + 10 * H4 + 1234
    await _executor(seeded, engine).execute(as_of, "BTC")

    snapshot = engine.snapshots[0]
    assert snapshot.as_of_ms == as_of
    assert snapshot.data_range["latest_ms"] <= as_of
    assert snapshot.history["price"][-1]["time_ms"] == T0 + 9 * H4


async def test_rerun_is_skipped(seeded):
    engine = RecordingEngine()
    executor = _executor(seeded, engine)

    first = await executor.execute(T0 + 10 * H4, "BTC", batch_id="b1")
    second = await executor.execute(T0 + 10 * H4, "BTC", batch_id="b1")

    assert second.skipped is True
    assert second.state_id == first.state_id
    assert len(engine.snapshots) == 1


async def test_adhoc_batch_is_default(seeded):
    result = await _executor(seeded, AsyncEngine()).execute(T0 + 10 * H4, "BTC")
    assert await st.find_replay_state_id(seeded, ADHOC_BATCH_ID, T0 + 10 * H4, "BTC") == result.state_id
    assert (await st.get_replay_state(seeded, result.state_id))["bias"] == "SHORT"


async def test_insufficient_data(seeded):
    engine = RecordingEngine()
    result = await _executor(seeded, engine).execute(T0 + 3 * H4, "BTC")

    assert result.success is False
    assert result.error_kind == ErrorKind.INSUFFICIENT_DATA
    assert engine.snapshots == []
    assert await st.find_replay_state_id(seeded, ADHOC_BATCH_ID, T0 + 3 * H4, "BTC") is None


async def test_lookahead_is_reported_not_stored(db_sessionmaker):
    as_of = T0 + 10 * H4
    leaky = SeriesBundle(candles=[Candle(T0 + i * H4, 1, 1, 1, 1) for i in range(11)])
    engine = RecordingEngine()
    executor = _executor(db_sessionmaker, engine, StaticDataService(bundle=leaky))

    result = await executor.execute(as_of, "BTC")

    assert result.error_kind == ErrorKind.LOOKAHEAD_VIOLATION
    assert engine.snapshots == []
    assert await st.list_replay_states(db_sessionmaker) == []


async def test_rate_limit_is_reported(db_sessionmaker):
    executor = _executor(db_sessionmaker, RecordingEngine(), StaticDataService(error=RateLimited()))
    result = await executor.execute(T0 + 10 * H4, "BTC", mode=DataSource.VENDOR_FALLBACK)
    assert result.error_kind == ErrorKind.RATE_LIMITED


async def test_engine_crash_propagates(seeded):
    class BrokenEngine(RecordingEngine):
        def evaluate(self, snapshot):
            raise RuntimeError("engine exploded")

    with pytest.raises(RuntimeError):
        await _executor(seeded, BrokenEngine()).execute(T0 + 10 * H4, "BTC")
