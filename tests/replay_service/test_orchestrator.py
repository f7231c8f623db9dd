"""
Tests for the replay batch orchestrator.

Verifies:
- Final status rules (COMPLETED with any success, FAILED with none)
- Per-error retry policy and bounded retries
- Pause between samples and resume without re-running finished work
- Vendor-fallback pacing and the background job gate
- Recovery of batches left RUNNING by a dead process
"""

import asyncio

import pytest

from factories import H1, H4, T0, market_rows

from historical_replay.errors import InvalidTransition, NotFoundError, ValidationError
from historical_replay.schemas import (
    BatchStatus,
    DataSource,
    ErrorKind,
    ExecutionResult,
    ReplayBatch,
    ReplaySample,
    SampleStatus,
)
from replay_service import storage as st
from replay_service.batch_registry import InMemoryBatchRegistry, SqlBatchRegistry
from replay_service.executor import ReplaySampleExecutor
from replay_service.historical_data import HistoricalDataService
from replay_service.job_control import BackgroundJobGate
from replay_service.labeling_job import LabelingRunResult
from replay_service.orchestrator import ReplayBatchOrchestrator
from replay_service.series_store import HistoricalSeriesStore

pytestmark = pytest.mark.asyncio

NOW = T0 + 400 * H4


def _fail(kind):
    return ExecutionResult(success=False, error_kind=kind, error=kind.value.lower())


class ScriptedExecutor:
    """Plays back queued results per as-of instant; anything unscripted succeeds."""

    def __init__(self, script=None, on_call=None, sessionmaker=None):
        self.script = {k: list(v) for k, v in (script or {}).items()}
        self.on_call = on_call
        self.sessionmaker = sessionmaker
        self.calls = []

    async def execute(self, as_of_ms, symbol, batch_id="adhoc", mode=DataSource.LOCAL):
        self.calls.append(as_of_ms)
        if self.on_call is not None:
            await self.on_call(len(self.calls))
        queue = self.script.get(as_of_ms)
        if queue:
            outcome = queue.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        return ExecutionResult(success=True, state_id=len(self.calls))


class FakeSyncJob:
    def __init__(self, result=True):
        self.result = result
        self.calls = []

    async def sync_edge(self, symbol, as_of_ms):
        self.calls.append((symbol, as_of_ms))
        return self.result


class FakeLabelingJob:
    def __init__(self):
        self.calls = []

    async def label_pending(self, horizon, symbol=None, limit=100, batch_id=None):
        self.calls.append((horizon, symbol, batch_id))
        return LabelingRunResult(labeled=2, skipped=1, total=3)


def _orchestrator(executor, fake_sleep, registry=None, **kwargs):
    kwargs.setdefault("auto_label", False)
    return ReplayBatchOrchestrator(
        executor,
        registry or InMemoryBatchRegistry(),
        max_retries=3,
        retry_backoff=1.0,
        rate_limit_cooldown=30.0,
        sample_delay=5.0,
        sleep=fake_sleep,
        clock=lambda: NOW,
        **kwargs,
    )


async def _run(orch, samples=5, **kwargs):
    batch = await orch.create_batch("BTCUSDT", T0, T0 + (samples - 1) * H4, step="4h", **kwargs)
    return await orch.wait_for(batch["batch_id"])


class TestFinalStatus:
    async def test_partial_failures_complete(self, fake_sleep):
        script = {T0 + H4: [_fail(ErrorKind.INSUFFICIENT_DATA)], T0 + 3 * H4: [_fail(ErrorKind.LOOKAHEAD_VIOLATION)]}
        orch = _orchestrator(ScriptedExecutor(script), fake_sleep)

        status = await _run(orch)

        assert status["status"] == "COMPLETED"
        assert status["symbol"] == "BTC"
        assert status["progress"]["completed"] == 3
        assert status["progress"]["failed"] == 2
        assert status["progress"]["remaining"] == 0
        assert status["finished_at_ms"] == NOW
        failures = await orch.get_batch_failures(status["batch_id"])
        assert [f["status"] for f in failures] == ["FAILED_INSUFFICIENT_DATA", "FAILED"]

    async def test_no_success_fails_batch(self, fake_sleep):
        script = {T0 + i * H4: [_fail(ErrorKind.INSUFFICIENT_DATA)] for i in range(3)}
        orch = _orchestrator(ScriptedExecutor(script), fake_sleep)

        status = await _run(orch, samples=3)

        assert status["status"] == "FAILED"
        assert status["progress"]["failed"] == 3
        assert status["error"] == "no samples completed"

    async def test_engine_crash_marks_sample_failed(self, fake_sleep):
        executor = ScriptedExecutor({T0: [RuntimeError("boom")]})
        orch = _orchestrator(executor, fake_sleep)

        status = await _run(orch, samples=2)

        assert status["status"] == "COMPLETED"
        failures = await orch.get_batch_failures(status["batch_id"])
        assert failures[0]["status"] == "FAILED"
        assert "RuntimeError" in failures[0]["error"]
        assert executor.calls == [T0, T0 + H4]

    async def test_sample_cap(self, fake_sleep):
        executor = ScriptedExecutor()
        orch = _orchestrator(executor, fake_sleep)
        batch = await orch.create_batch("BTC", T0, T0 + 50 * H4, step="4h", max_samples=4)
        assert batch["progress"]["total"] == 4
        assert "samples" not in batch
        await orch.wait_for(batch["batch_id"])
        assert len(executor.calls) == 4


class TestRetryPolicy:
    async def test_rate_limit_cools_down_then_retries(self, fake_sleep, sleep_calls):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.RATE_LIMITED)]})
        orch = _orchestrator(executor, fake_sleep)

        status = await _run(orch, samples=1)

        assert status["status"] == "COMPLETED"
        assert sleep_calls == [30.0]
        assert executor.calls == [T0, T0]

    async def test_persistence_errors_back_off_until_exhausted(self, fake_sleep, sleep_calls):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.PERSISTENCE)] * 10})
        orch = _orchestrator(executor, fake_sleep)

        status = await _run(orch, samples=1)

        assert status["status"] == "FAILED"
        assert sleep_calls == [1.0, 2.0, 3.0]
        assert len(executor.calls) == 4
        batch = await orch._load(status["batch_id"])
        assert batch.samples[0].attempts == 4

    async def test_lookahead_never_retried(self, fake_sleep, sleep_calls):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.LOOKAHEAD_VIOLATION)] * 3})
        orch = _orchestrator(executor, fake_sleep)

        await _run(orch, samples=1)

        assert executor.calls == [T0]
        assert sleep_calls == []

    async def test_insufficient_data_gets_one_edge_sync(self, fake_sleep):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.INSUFFICIENT_DATA)] * 3})
        sync = FakeSyncJob(result=True)
        orch = _orchestrator(executor, fake_sleep, sync_job=sync)

        status = await _run(orch, samples=1)

        assert sync.calls == [("BTC", T0)]
        assert executor.calls == [T0, T0]
        assert status["progress"]["failed"] == 1

    async def test_insufficient_data_recovered_by_sync(self, fake_sleep):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.INSUFFICIENT_DATA)]})
        orch = _orchestrator(executor, fake_sleep, sync_job=FakeSyncJob(result=True))

        status = await _run(orch, samples=1)

        assert status["status"] == "COMPLETED"

    async def test_no_retry_when_sync_finds_nothing(self, fake_sleep):
        executor = ScriptedExecutor({T0: [_fail(ErrorKind.INSUFFICIENT_DATA)]})
        orch = _orchestrator(executor, fake_sleep, sync_job=FakeSyncJob(result=False))

        await _run(orch, samples=1)

        assert executor.calls == [T0]


class TestPauseResume:
    async def test_pause_after_three_then_resume_runs_the_rest(self, fake_sleep):
        holder = {}

        async def pause_on_third(n):
            if n == 3:
                await holder["orch"].pause_batch(holder["batch_id"])

        executor = ScriptedExecutor(on_call=pause_on_third)
        orch = _orchestrator(executor, fake_sleep)
        holder["orch"] = orch
        batch = await orch.create_batch("BTC", T0, T0 + 9 * H4, step="4h")
        holder["batch_id"] = batch["batch_id"]

        paused = await orch.wait_for(batch["batch_id"])
        assert paused["status"] == "PAUSED"
        assert paused["progress"]["completed"] == 3
        assert paused["progress"]["remaining"] == 7

        await orch.resume_batch(batch["batch_id"])
        done = await orch.wait_for(batch["batch_id"])

        assert done["status"] == "COMPLETED"
        assert done["progress"]["completed"] == 10
        assert len(executor.calls) == 10
        assert len(set(executor.calls)) == 10

    async def test_invalid_commands(self, fake_sleep):
        orch = _orchestrator(ScriptedExecutor(), fake_sleep)
        status = await _run(orch, samples=1)

        with pytest.raises(InvalidTransition):
            await orch.pause_batch(status["batch_id"])
        with pytest.raises(InvalidTransition):
            await orch.resume_batch(status["batch_id"])
        with pytest.raises(NotFoundError):
            await orch.get_batch_status("missing")

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"step": "2h"},
            {"data_source": "remote"},
            {"max_samples": 0},
        ],
    )
    async def test_rejected_requests(self, fake_sleep, kwargs):
        orch = _orchestrator(ScriptedExecutor(), fake_sleep)
        with pytest.raises(ValidationError):
            await orch.create_batch("BTC", T0, T0 + H4, **kwargs)
        assert await orch.list_batches() == []

    async def test_reversed_range_rejected(self, fake_sleep):
        orch = _orchestrator(ScriptedExecutor(), fake_sleep)
        with pytest.raises(ValidationError):
            await orch.create_batch("BTC", T0 + H4, T0)


class TestVendorMode:
    async def test_gate_closed_while_running_and_samples_spaced(self, fake_sleep, sleep_calls):
        gate = BackgroundJobGate()
        seen = []

        async def record_gate(n):
            seen.append(gate.paused)

        orch = _orchestrator(ScriptedExecutor(on_call=record_gate), fake_sleep, gate=gate)
        await _run(orch, samples=3, data_source="vendor_fallback")

        assert seen == [True, True, True]
        assert gate.paused is False
        assert sleep_calls == [5.0, 5.0]

    async def test_local_mode_leaves_gate_open(self, fake_sleep, sleep_calls):
        gate = BackgroundJobGate()
        seen = []

        async def record_gate(n):
            seen.append(gate.paused)

        orch = _orchestrator(ScriptedExecutor(on_call=record_gate), fake_sleep, gate=gate)
        await _run(orch, samples=2)

        assert seen == [False, False]
        assert sleep_calls == []

    async def test_skipped_samples_are_not_delayed(self, fake_sleep, sleep_calls):
        skipped = ExecutionResult(success=True, state_id=9, skipped=True)
        executor = ScriptedExecutor({T0: [skipped], T0 + H4: [skipped]})
        orch = _orchestrator(executor, fake_sleep)
        await _run(orch, samples=3, data_source="vendor_fallback")
        assert sleep_calls == []


class TestAutoLabel:
    async def test_matured_batch_is_labeled(self, fake_sleep):
        labeling = FakeLabelingJob()
        orch = _orchestrator(ScriptedExecutor(), fake_sleep, auto_label=True, labeling_job=labeling)

        status = await _run(orch, samples=2)

        assert labeling.calls == [("MICRO", "BTC", status["batch_id"])]
        assert status["labeling"]["status"] == "done"
        assert status["labeling"]["labeled"] == 2

    async def test_recent_batch_defers_labeling(self, fake_sleep):
        labeling = FakeLabelingJob()
        orch = _orchestrator(ScriptedExecutor(), fake_sleep, auto_label=True, labeling_job=labeling)

        batch = await orch.create_batch("BTC", NOW - 5 * H1, NOW - H1, step="1h")
        status = await orch.wait_for(batch["batch_id"])

        assert labeling.calls == []
        assert status["labeling"] == {"status": "deferred", "horizon": "MICRO"}


class TestDurability:
    async def test_recover_interrupted_batch(self, fake_sleep):
        registry = InMemoryBatchRegistry()
        stale = ReplayBatch(
            batch_id="stale",
            symbol="BTC",
            start_ms=T0,
            end_ms=T0 + 2 * H4,
            step="4h",
            data_source=DataSource.LOCAL,
            samples=[
                ReplaySample(T0, SampleStatus.COMPLETED, state_id=1, attempts=1),
                ReplaySample(T0 + H4, SampleStatus.RUNNING, attempts=1),
                ReplaySample(T0 + 2 * H4),
            ],
            status=BatchStatus.RUNNING,
            created_at_ms=T0,
        )
        await registry.put(stale)
        executor = ScriptedExecutor()
        orch = _orchestrator(executor, fake_sleep, registry=registry)

        assert await orch.recover_interrupted() == 1
        recovered = await registry.get("stale")
        assert recovered.status == BatchStatus.PAUSED
        assert recovered.samples[1].status == SampleStatus.PENDING

        await orch.resume_batch("stale")
        status = await orch.wait_for("stale")
        assert status["status"] == "COMPLETED"
        assert executor.calls == [T0 + H4, T0 + 2 * H4]

    async def test_sql_registry_survives_new_orchestrator(self, db_sessionmaker, fake_sleep):
        orch = _orchestrator(ScriptedExecutor(), fake_sleep, registry=SqlBatchRegistry(db_sessionmaker))
        status = await _run(orch, samples=3)

        fresh = _orchestrator(ScriptedExecutor(), fake_sleep, registry=SqlBatchRegistry(db_sessionmaker))
        reloaded = await fresh.get_batch_status(status["batch_id"])

        assert reloaded["status"] == "COMPLETED"
        assert reloaded["progress"]["completed"] == 3
        assert [b["batch_id"] for b in await fresh.list_batches()] == [status["batch_id"]]


async def test_real_executor_end_to_end(db_sessionmaker, fake_sleep):
    """Samples without enough history fail; the rest complete and are stored."""
    await st.upsert_candles(db_sessionmaker, "Binance", "BTC", "4h", market_rows(T0, 20, H4))

    class FlatEngine:
        config_version = "flat-1"

        def evaluate(self, snapshot):
            return {"bias": "WAIT", "confidence": 2.0}

    executor = ReplaySampleExecutor(
        db_sessionmaker,
        HistoricalDataService(HistoricalSeriesStore(db_sessionmaker)),
        FlatEngine(),
        venues=["Binance"],
        timeframes=["4h"],
        primary_venue="Binance",
        primary_timeframe="4h",
        min_candles={"4h": 5},
    )
    orch = _orchestrator(executor, fake_sleep, registry=SqlBatchRegistry(db_sessionmaker))

    batch = await orch.create_batch("BTC", T0 + 3 * H4, T0 + 7 * H4, step="4h")
    status = await orch.wait_for(batch["batch_id"])

    assert status["status"] == "COMPLETED"
    assert status["progress"]["completed"] == 3
    assert status["progress"]["failed"] == 2
    results = await orch.get_batch_results(batch["batch_id"])
    assert [s["as_of_ms"] for s in results["states"]] == [T0 + 5 * H4, T0 + 6 * H4, T0 + 7 * H4]
    assert all(s["config_version"] == "unversioned" for s in results["states"])


class TestRerunById:
    async def test_rerun_under_same_id_adds_no_states(self, db_sessionmaker, fake_sleep):
        await st.upsert_candles(db_sessionmaker, "Binance", "BTC", "4h", market_rows(T0, 20, H4))

        class CountingEngine:
            config_version = "count-1"

            def __init__(self):
                self.calls = 0

            def evaluate(self, snapshot):
                self.calls += 1
                return {"bias": "LONG", "confidence": 6.0}

        engine = CountingEngine()
        executor = ReplaySampleExecutor(
            db_sessionmaker,
            HistoricalDataService(HistoricalSeriesStore(db_sessionmaker)),
            engine,
            venues=["Binance"],
            timeframes=["4h"],
            primary_venue="Binance",
            primary_timeframe="4h",
            min_candles={"4h": 5},
        )
        orch = _orchestrator(executor, fake_sleep, registry=SqlBatchRegistry(db_sessionmaker))

        first = await orch.create_batch("BTC", T0 + 5 * H4, T0 + 7 * H4, step="4h", batch_id="nightly")
        assert first["batch_id"] == "nightly"
        await orch.wait_for("nightly")
        stored = await st.list_replay_states(db_sessionmaker, batch_id="nightly")
        assert len(stored) == 3
        assert engine.calls == 3

        await orch.create_batch("BTC", T0 + 5 * H4, T0 + 7 * H4, step="4h", batch_id="nightly")
        status = await orch.wait_for("nightly")

        assert status["status"] == "COMPLETED"
        assert status["progress"]["completed"] == 3
        assert len(await st.list_replay_states(db_sessionmaker, batch_id="nightly")) == 3
        assert engine.calls == 3

    async def test_rerun_extends_range_and_runs_only_new_samples(self, db_sessionmaker, fake_sleep):
        executor = ScriptedExecutor(sessionmaker=db_sessionmaker)
        await st.insert_replay_state(
            db_sessionmaker, batch_id="nightly", symbol="BTC", as_of_ms=T0, price=100.0,
            bias="LONG", confidence=5.0, decision={"bias": "LONG"},
        )
        orch = _orchestrator(executor, fake_sleep)

        await orch.create_batch("BTC", T0, T0 + 2 * H4, step="4h", batch_id="nightly")
        status = await orch.wait_for("nightly")

        assert executor.calls == [T0 + H4, T0 + 2 * H4]
        assert status["progress"]["completed"] == 3

    async def test_blank_batch_id_rejected(self, fake_sleep):
        orch = _orchestrator(ScriptedExecutor(), fake_sleep)
        with pytest.raises(ValidationError):
            await orch.create_batch("BTC", T0, T0 + H4, batch_id="  ")

    async def test_running_batch_id_rejected(self, db_sessionmaker, fake_sleep):
        release = asyncio.Event()

        async def hold(_):
            await release.wait()

        orch = _orchestrator(ScriptedExecutor(on_call=hold, sessionmaker=db_sessionmaker), fake_sleep)
        await orch.create_batch("BTC", T0, T0 + H4, batch_id="nightly")

        with pytest.raises(InvalidTransition):
            await orch.create_batch("BTC", T0, T0 + H4, batch_id="nightly")

        release.set()
        assert (await orch.wait_for("nightly"))["status"] == "COMPLETED"
