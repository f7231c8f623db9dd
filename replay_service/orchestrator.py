"""
Replay Batch Orchestrator.

Turns a time range into a batch of samples and drives them through the
sample executor in the background, one at a time:

- Batch lifecycle: PENDING -> RUNNING -> {COMPLETED, FAILED, PAUSED},
  and PAUSED -> RUNNING on resume. ``ReplayBatch.transition`` rejects
  anything else.
- Per-sample retry policy keyed on the executor's error kind: one edge
  auto-sync for insufficient data, a fixed cooldown for rate limits,
  linear backoff for persistence and I/O errors, no retry for lookahead.
- Pause is honoured between samples. Resume only runs samples that are
  not terminal, and the executor's idempotency check skips any whose
  state was already written.
- Vendor-fallback batches close the background job gate while they run
  and sleep a fixed delay between samples.
- A batch that completes with at least one success is labeled once its
  evaluation horizon has matured.

Every state change is written to the batch registry so progress survives
a restart (see ``recover_interrupted``).
"""

import asyncio
import logging
import uuid
from typing import Any, Awaitable, Callable, Dict, List, Optional

import httpx

from historical_replay.errors import (
    InvalidTransition,
    NotFoundError,
    RateLimited,
    ReplayError,
    ValidationError,
)
from historical_replay.intervals import (
    generate_sample_timestamps,
    normalize_symbol,
    now_ms,
    parse_step,
    to_epoch_ms,
)
from historical_replay.outcome_labeler import DEFAULT_HORIZONS, HorizonConfig, get_horizon
from historical_replay.schemas import (
    BatchStatus,
    DataSource,
    ErrorKind,
    ExecutionResult,
    ReplayBatch,
    ReplaySample,
    SampleStatus,
)

from . import storage as st
from .batch_registry import BatchRegistry
from .executor import ReplaySampleExecutor
from .job_control import BackgroundJobGate
from .metrics import replay_batches_active, replay_sample_retries_total, replay_samples_total
from .sync_job import SeriesSyncJob

logger = logging.getLogger(__name__)


def _summary(batch: ReplayBatch, now: int) -> Dict[str, Any]:
    data = batch.to_dict(now)
    data.pop("samples")
    return data


class ReplayBatchOrchestrator:
    def __init__(
        self,
        executor: ReplaySampleExecutor,
        registry: BatchRegistry,
        labeling_job=None,
        sync_job: Optional[SeriesSyncJob] = None,
        gate: Optional[BackgroundJobGate] = None,
        max_retries: int = 3,
        retry_backoff: float = 5.0,
        rate_limit_cooldown: float = 30.0,
        sample_delay: float = 5.0,
        default_max_samples: int = 100,
        auto_label: bool = True,
        label_horizon: str = "MICRO",
        horizons: Optional[Dict[str, HorizonConfig]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], int] = now_ms,
    ):
        self.executor = executor
        self.registry = registry
        self.labeling_job = labeling_job
        self.sync_job = sync_job
        self.gate = gate
        self.max_retries = max_retries
        self.retry_backoff = retry_backoff
        self.rate_limit_cooldown = rate_limit_cooldown
        self.sample_delay = sample_delay
        self.default_max_samples = default_max_samples
        self.auto_label = auto_label
        self.horizons = horizons or DEFAULT_HORIZONS
        self.label_horizon = get_horizon(label_horizon, self.horizons)
        self._sleep = sleep
        self._clock = clock
        self._batches: Dict[str, ReplayBatch] = {}
        self._tasks: Dict[str, asyncio.Task] = {}

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    async def create_batch(
        self,
        symbol: str,
        start: Any,
        end: Any,
        step: str = "4h",
        max_samples: Optional[int] = None,
        data_source: str = DataSource.LOCAL.value,
        batch_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """
        Validate a request, register the batch and start it in the background.

        Passing the ``batch_id`` of an earlier run re-runs that range: samples
        whose replay state is already stored start out COMPLETED and only the
        rest are executed.

        Raises:
            ValidationError: For an unknown step or data source, an empty
                symbol or batch id, a reversed range or a non-positive
                sample cap.
            InvalidTransition: If a batch with ``batch_id`` is still running.
        """
        symbol = normalize_symbol(symbol)
        start_ms, end_ms = to_epoch_ms(start), to_epoch_ms(end)
        step_ms = parse_step(step)
        try:
            mode = DataSource(data_source)
        except ValueError:
            raise ValidationError(f"Invalid data source '{data_source}'. Expected one of {[d.value for d in DataSource]}")
        cap = self.default_max_samples if max_samples is None else int(max_samples)
        timestamps = generate_sample_timestamps(start_ms, end_ms, step_ms, cap)

        if batch_id is None:
            batch_id = uuid.uuid4().hex
            samples = [ReplaySample(as_of_ms=ts) for ts in timestamps]
        else:
            batch_id = batch_id.strip()
            if not batch_id:
                raise ValidationError("batch_id must not be empty")
            running = self._tasks.get(batch_id)
            if running is not None and not running.done():
                raise InvalidTransition(f"batch {batch_id} is still running")
            samples = await self._samples_for_rerun(batch_id, symbol, timestamps)

        batch = ReplayBatch(
            batch_id=batch_id,
            symbol=symbol,
            start_ms=start_ms,
            end_ms=end_ms,
            step=step,
            data_source=mode,
            samples=samples,
            created_at_ms=self._clock(),
        )
        await self.registry.put(batch)
        logger.info("created batch %s: %s %d samples every %s (%s), %d already stored",
                    batch.batch_id, symbol, len(timestamps), step, mode.value, batch.completed_samples)
        self._start(batch)
        return _summary(batch, self._clock())

    async def pause_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self._load(batch_id)
        if batch.status != BatchStatus.RUNNING:
            raise InvalidTransition(f"batch {batch_id} is {batch.status.value}, only RUNNING batches can pause")
        batch.transition(BatchStatus.PAUSED)
        await self.registry.put(batch)
        logger.info("batch %s paused with %d samples remaining", batch_id, batch.remaining_samples)
        return _summary(batch, self._clock())

    async def resume_batch(self, batch_id: str) -> Dict[str, Any]:
        batch = await self._load(batch_id)
        if batch.status not in (BatchStatus.PAUSED, BatchStatus.PENDING):
            raise InvalidTransition(f"batch {batch_id} is {batch.status.value}, only PAUSED batches can resume")
        previous = self._tasks.get(batch_id)
        if previous is not None and not previous.done():
            # let the old run finish its in-flight sample and notice the pause
            await previous
        logger.info("resuming batch %s: %d samples remaining", batch_id, batch.remaining_samples)
        self._start(batch)
        return _summary(batch, self._clock())

    async def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        return _summary(await self._load(batch_id), self._clock())

    async def get_batch_results(self, batch_id: str, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        batch = await self._load(batch_id)
        states = await st.list_replay_states(self.executor.sessionmaker, batch_id=batch_id, limit=limit, offset=offset)
        return {"batch": _summary(batch, self._clock()), "limit": limit, "offset": offset, "states": states}

    async def get_batch_failures(self, batch_id: str) -> List[Dict[str, Any]]:
        batch = await self._load(batch_id)
        return [
            {"as_of_ms": s.as_of_ms, "status": s.status.value, "error": s.error, "attempts": s.attempts}
            for s in batch.samples
            if s.status in (SampleStatus.FAILED, SampleStatus.FAILED_INSUFFICIENT_DATA)
        ]

    async def list_batches(self) -> List[Dict[str, Any]]:
        now = self._clock()
        stored = {b.batch_id: b for b in await self.registry.list()}
        stored.update(self._batches)
        batches = sorted(stored.values(), key=lambda b: b.created_at_ms, reverse=True)
        return [_summary(b, now) for b in batches]

    async def wait_for(self, batch_id: str) -> Dict[str, Any]:
        """Block until the batch's current run stops, then return its status."""
        task = self._tasks.get(batch_id)
        if task is not None:
            await task
        return await self.get_batch_status(batch_id)

    async def recover_interrupted(self) -> int:
        """Move batches left RUNNING by a dead process to PAUSED."""
        recovered = 0
        for batch in await self.registry.list():
            if batch.status == BatchStatus.RUNNING and batch.batch_id not in self._tasks:
                batch.transition(BatchStatus.PAUSED)
                batch.error = "interrupted; resume to continue"
                for sample in batch.samples:
                    if sample.status == SampleStatus.RUNNING:
                        sample.status = SampleStatus.PENDING
                await self.registry.put(batch)
                recovered += 1
        if recovered:
            logger.warning("recovered %d interrupted batches as PAUSED", recovered)
        return recovered

    async def shutdown(self) -> None:
        """Pause every running batch and wait for the runs to stop."""
        for batch_id, batch in list(self._batches.items()):
            if batch.status == BatchStatus.RUNNING:
                await self.pause_batch(batch_id)
        pending = [t for t in self._tasks.values() if not t.done()]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def _load(self, batch_id: str) -> ReplayBatch:
        batch = self._batches.get(batch_id)
        if batch is None:
            batch = await self.registry.get(batch_id)
        if batch is None:
            raise NotFoundError(f"batch {batch_id} not found")
        return batch

    async def _samples_for_rerun(self, batch_id: str, symbol: str, timestamps: List[int]) -> List[ReplaySample]:
        samples = []
        for ts in timestamps:
            existing = await st.find_replay_state_id(self.executor.sessionmaker, batch_id, ts, symbol)
            if existing is None:
                samples.append(ReplaySample(as_of_ms=ts))
            else:
                samples.append(ReplaySample(as_of_ms=ts, status=SampleStatus.COMPLETED, state_id=existing))
        return samples

    def _start(self, batch: ReplayBatch) -> None:
        batch.transition(BatchStatus.RUNNING)
        batch.error = None
        if batch.started_at_ms is None:
            batch.started_at_ms = self._clock()
        self._batches[batch.batch_id] = batch
        self._tasks[batch.batch_id] = asyncio.create_task(self._run(batch), name=f"replay-batch-{batch.batch_id}")

    async def _run(self, batch: ReplayBatch) -> None:
        vendor_mode = batch.data_source == DataSource.VENDOR_FALLBACK
        holder = f"batch:{batch.batch_id}"
        replay_batches_active.inc()
        if vendor_mode and self.gate is not None:
            self.gate.pause(holder)
        try:
            await self.registry.put(batch)
            for sample in batch.pending():
                if batch.status != BatchStatus.RUNNING:
                    break
                result = await self._run_sample(batch, sample)
                await self.registry.put(batch)
                if vendor_mode and self.sample_delay and not result.skipped and batch.remaining_samples:
                    await self._sleep(self.sample_delay)
            await self._finalize(batch)
        except asyncio.CancelledError:
            if batch.status == BatchStatus.RUNNING:
                batch.transition(BatchStatus.PAUSED)
                batch.error = "cancelled"
                await self.registry.put(batch)
            raise
        except Exception as e:
            logger.exception("batch %s aborted", batch.batch_id)
            batch.error = f"{type(e).__name__}: {e}"
            if batch.status == BatchStatus.RUNNING:
                batch.transition(BatchStatus.FAILED if batch.completed_samples == 0 else BatchStatus.PAUSED)
                if batch.status == BatchStatus.FAILED:
                    batch.finished_at_ms = self._clock()
            await self.registry.put(batch)
        finally:
            if vendor_mode and self.gate is not None:
                self.gate.resume(holder)
            replay_batches_active.dec()

    async def _try_edge_sync(self, batch: ReplayBatch, sample: ReplaySample) -> bool:
        if self.sync_job is None:
            return False
        try:
            synced = await self.sync_job.sync_edge(batch.symbol, sample.as_of_ms)
        except (RateLimited, httpx.HTTPError, OSError) as e:
            logger.warning("edge sync for %s at %s failed: %s", batch.symbol, sample.as_of_ms, e)
            return False
        if synced:
            logger.info("edge sync filled data for %s at %s, retrying", batch.symbol, sample.as_of_ms)
        return synced

    async def _run_sample(self, batch: ReplayBatch, sample: ReplaySample) -> ExecutionResult:
        sample.status = SampleStatus.RUNNING
        retries = 0
        synced = False
        while True:
            sample.attempts += 1
            try:
                result = await self.executor.execute(sample.as_of_ms, batch.symbol, batch.batch_id, batch.data_source)
            except Exception as e:
                logger.exception("sample %s of batch %s crashed", sample.as_of_ms, batch.batch_id)
                result = ExecutionResult(success=False, error=f"{type(e).__name__}: {e}")
                break
            if result.success:
                break
            kind = result.error_kind
            if kind == ErrorKind.LOOKAHEAD_VIOLATION:
                break
            if kind == ErrorKind.INSUFFICIENT_DATA:
                if synced or not await self._try_edge_sync(batch, sample):
                    break
                synced = True
                replay_sample_retries_total.labels(reason="insufficient_data").inc()
                continue
            retries += 1
            if retries > self.max_retries:
                break
            delay = self.rate_limit_cooldown if kind == ErrorKind.RATE_LIMITED else self.retry_backoff * retries
            replay_sample_retries_total.labels(reason=kind.value.lower() if kind else "unknown").inc()
            logger.info("sample %s of batch %s: %s, retry %d in %.1fs",
                        sample.as_of_ms, batch.batch_id, kind.value if kind else "error", retries, delay)
            await self._sleep(delay)

        if result.success:
            sample.status = SampleStatus.COMPLETED
            sample.state_id = result.state_id
            sample.error = None
        elif result.error_kind == ErrorKind.INSUFFICIENT_DATA:
            sample.status = SampleStatus.FAILED_INSUFFICIENT_DATA
            sample.error = result.error
        else:
            sample.status = SampleStatus.FAILED
            sample.error = result.error
        replay_samples_total.labels(status=sample.status.value).inc()
        return result

    async def _finalize(self, batch: ReplayBatch) -> None:
        if batch.status != BatchStatus.RUNNING:
            logger.info("batch %s stopped as %s with %d samples remaining",
                        batch.batch_id, batch.status.value, batch.remaining_samples)
            return
        if batch.remaining_samples:
            batch.transition(BatchStatus.PAUSED)
        elif batch.completed_samples == 0:
            batch.transition(BatchStatus.FAILED)
            batch.error = "no samples completed"
            batch.finished_at_ms = self._clock()
        else:
            batch.transition(BatchStatus.COMPLETED)
            batch.finished_at_ms = self._clock()
        await self.registry.put(batch)
        logger.info("batch %s %s: %d completed, %d failed",
                    batch.batch_id, batch.status.value, batch.completed_samples, batch.failed_samples)
        if batch.status == BatchStatus.COMPLETED:
            await self._auto_label(batch)

    async def _auto_label(self, batch: ReplayBatch) -> None:
        if not self.auto_label or self.labeling_job is None:
            return
        horizon = self.label_horizon
        if batch.end_ms + horizon.maturation_ms > self._clock():
            batch.labeling = {"status": "deferred", "horizon": horizon.name}
            logger.info("batch %s: %s horizon has not matured, labeling deferred", batch.batch_id, horizon.name)
        else:
            try:
                result = await self.labeling_job.label_pending(
                    horizon.name,
                    symbol=batch.symbol,
                    limit=batch.completed_samples + 10,
                    batch_id=batch.batch_id,
                )
                batch.labeling = {"status": "done", "horizon": horizon.name, **result.to_dict()}
            except ReplayError as e:
                logger.error("auto-labeling batch %s failed: %s", batch.batch_id, e)
                batch.labeling = {"status": "error", "horizon": horizon.name, "error": str(e)}
        await self.registry.put(batch)
