"""
Command surface for the replay pipeline.

``ReplayCommands`` is the one object scripts and HTTP handlers talk to.
``build_commands`` wires every component from ``Settings``.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional

from historical_replay.decision_engine import DecisionEngine, load_engine
from historical_replay.intervals import interval_to_ms, normalize_symbol

from .batch_registry import create_batch_registry
from .config import Settings, get_settings
from .executor import ReplaySampleExecutor
from .historical_data import HistoricalDataService
from .job_control import BackgroundJobGate
from .labeling_job import OutcomeLabelingJob
from .orchestrator import ReplayBatchOrchestrator
from .scoreboard_service import ScoreboardService
from .series_store import HistoricalSeriesStore
from .storage import get_engine_and_session, init_models
from .sync_job import SeriesSyncJob
from .vendor_client import HttpVendorClient, VendorClient

logger = logging.getLogger(__name__)


class ReplayCommands:
    def __init__(
        self,
        orchestrator: ReplayBatchOrchestrator,
        labeling_job: OutcomeLabelingJob,
        scoreboard: ScoreboardService,
        store: HistoricalSeriesStore,
        gate: BackgroundJobGate,
        sync_job: Optional[SeriesSyncJob] = None,
        db_engine=None,
        default_data_source: str = "local",
    ):
        self.orchestrator = orchestrator
        self.labeling_job = labeling_job
        self.scoreboard = scoreboard
        self.store = store
        self.gate = gate
        self.sync_job = sync_job
        self._db_engine = db_engine
        self.default_data_source = default_data_source
        self._sync_stop = asyncio.Event()
        self._sync_tasks: List[asyncio.Task] = []

    # Batches
    async def create_batch(self, symbol: str, start: Any, end: Any, step: str = "4h",
                           max_samples: Optional[int] = None, data_source: Optional[str] = None,
                           batch_id: Optional[str] = None) -> Dict[str, Any]:
        return await self.orchestrator.create_batch(
            symbol, start, end, step, max_samples, data_source or self.default_data_source, batch_id=batch_id
        )

    async def pause_batch(self, batch_id: str) -> Dict[str, Any]:
        return await self.orchestrator.pause_batch(batch_id)

    async def resume_batch(self, batch_id: str) -> Dict[str, Any]:
        return await self.orchestrator.resume_batch(batch_id)

    async def get_batch_status(self, batch_id: str) -> Dict[str, Any]:
        return await self.orchestrator.get_batch_status(batch_id)

    async def get_batch_results(self, batch_id: str, limit: int = 100, offset: int = 0) -> Dict[str, Any]:
        return await self.orchestrator.get_batch_results(batch_id, limit, offset)

    async def get_batch_failures(self, batch_id: str) -> List[Dict[str, Any]]:
        return await self.orchestrator.get_batch_failures(batch_id)

    async def list_batches(self) -> List[Dict[str, Any]]:
        return await self.orchestrator.list_batches()

    async def wait_for_batch(self, batch_id: str) -> Dict[str, Any]:
        return await self.orchestrator.wait_for(batch_id)

    # Labeling
    async def label_outcomes(self, horizon: str = "MICRO", symbol: Optional[str] = None,
                             limit: int = 100, batch_id: Optional[str] = None) -> Dict[str, int]:
        result = await self.labeling_job.label_pending(horizon, symbol=symbol, limit=limit, batch_id=batch_id)
        return result.to_dict()

    async def label_state(self, state_id: int, horizon: str = "MICRO") -> Dict[str, Any]:
        return await self.labeling_job.label_single_state(state_id, horizon)

    async def get_labeling_status(self, batch_id: Optional[str] = None, symbol: Optional[str] = None) -> Dict[str, Any]:
        return await self.labeling_job.get_labeling_status(batch_id, symbol)

    # Scoreboard
    async def get_scoreboard(self, batch_id: Optional[str] = None, from_ts: Any = None,
                             to_ts: Any = None, symbol: Optional[str] = None) -> Dict[str, Any]:
        return await self.scoreboard.get_scoreboard(batch_id, from_ts, to_ts, symbol)

    async def get_scoreboard_summary(self, **filters) -> Dict[str, Any]:
        return await self.scoreboard.get_summary(**filters)

    async def save_baseline(self, name: str, **filters) -> Dict[str, Any]:
        return await self.scoreboard.save_baseline(name, **filters)

    async def list_baselines(self) -> List[Dict[str, Any]]:
        return await self.scoreboard.list_baselines()

    async def compare_to_baseline(self, baseline_id: int, **filters) -> Dict[str, Any]:
        return await self.scoreboard.compare_to_baseline(baseline_id, **filters)

    async def delete_baseline(self, baseline_id: int) -> bool:
        return await self.scoreboard.delete_baseline(baseline_id)

    # Data
    async def import_rows(self, venue: str, symbol: str, timeframe: str, rows) -> int:
        interval_to_ms(timeframe)
        return await self.store.upsert(venue, normalize_symbol(symbol), timeframe, rows)

    async def get_data_coverage(self, symbol: str) -> List[Dict[str, Any]]:
        return await self.store.coverage(normalize_symbol(symbol))

    def get_job_gate_status(self) -> Dict[str, Any]:
        return self.gate.status()

    # Background sync
    def start_scheduled_sync(self, symbols: List[str], interval_seconds: float) -> bool:
        """Run the scheduled series sync in this process, one task per symbol.

        The tasks share ``gate`` with the orchestrator, so cycles are skipped
        while a vendor-fallback batch is running.
        """
        if self.sync_job is None or interval_seconds <= 0 or self._sync_tasks:
            return False
        self._sync_stop.clear()
        for symbol in symbols:
            self._sync_tasks.append(asyncio.create_task(
                self.sync_job.run_scheduled(normalize_symbol(symbol), self.gate, interval_seconds, self._sync_stop)
            ))
        logger.info("scheduled sync started for %s every %ss", symbols, interval_seconds)
        return True

    async def stop_scheduled_sync(self) -> None:
        self._sync_stop.set()
        tasks, self._sync_tasks = self._sync_tasks, []
        for outcome in await asyncio.gather(*tasks, return_exceptions=True):
            if isinstance(outcome, Exception):
                logger.error("scheduled sync task ended with %s: %s", type(outcome).__name__, outcome)

    async def close(self) -> None:
        await self.stop_scheduled_sync()
        await self.orchestrator.shutdown()
        if self._db_engine is not None:
            await self._db_engine.dispose()


async def build_commands(
    settings: Optional[Settings] = None,
    engine: Optional[DecisionEngine] = None,
    vendor: Optional[VendorClient] = None,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
) -> ReplayCommands:
    """Create the database, every service, and recover interrupted batches."""
    settings = settings or get_settings()
    db_engine, sessionmaker = get_engine_and_session(settings.DATABASE_URL)
    await init_models(db_engine)

    store = HistoricalSeriesStore(sessionmaker)
    if vendor is None and settings.VENDOR_BASE_URL:
        vendor = HttpVendorClient(
            settings.VENDOR_BASE_URL,
            api_key=settings.VENDOR_API_KEY,
            timeout=settings.VENDOR_TIMEOUT_SECONDS,
            max_attempts=settings.VENDOR_MAX_ATTEMPTS,
        )
    data_service = HistoricalDataService(store, vendor, settings.VENDOR_CALL_DELAY_SECONDS, sleep)
    executor = ReplaySampleExecutor(
        sessionmaker,
        data_service,
        engine or load_engine(settings.REPLAY_DECISION_ENGINE),
        venues=settings.REPLAY_VENUES,
        timeframes=settings.REPLAY_TIMEFRAMES,
        primary_venue=settings.PRIMARY_VENUE,
        primary_timeframe=settings.PRIMARY_TIMEFRAME,
        min_candles=settings.min_candles(),
        persist_attempts=settings.PERSIST_MAX_ATTEMPTS,
        persist_backoff=settings.PERSIST_BACKOFF_SECONDS,
    )
    horizons = settings.horizons()
    labeling_job = OutcomeLabelingJob(sessionmaker, store, settings.PRIMARY_VENUE, horizons, data_service=data_service)
    sync_job = None
    if vendor is not None:
        sync_job = SeriesSyncJob(
            data_service,
            settings.REPLAY_VENUES,
            settings.REPLAY_TIMEFRAMES,
            edge_hours=settings.AUTO_SYNC_EDGE_HOURS,
            recent_hours=settings.AUTO_SYNC_RECENT_HOURS,
            lookback_ms=settings.auto_sync_lookback_ms,
        )
    gate = BackgroundJobGate()
    orchestrator = ReplayBatchOrchestrator(
        executor,
        create_batch_registry(settings.BATCH_REGISTRY, sessionmaker),
        labeling_job=labeling_job,
        sync_job=sync_job if settings.AUTO_SYNC_ENABLED else None,
        gate=gate,
        max_retries=settings.MAX_RETRIES,
        retry_backoff=settings.RETRY_BACKOFF_SECONDS,
        rate_limit_cooldown=settings.RATE_LIMIT_COOLDOWN_SECONDS,
        sample_delay=settings.SAMPLE_DELAY_SECONDS,
        default_max_samples=settings.DEFAULT_MAX_SAMPLES,
        auto_label=settings.AUTO_LABEL_ENABLED,
        label_horizon=settings.LABELING_HORIZON,
        horizons=horizons,
        sleep=sleep,
    )
    await orchestrator.recover_interrupted()
    scoreboard = ScoreboardService(sessionmaker, settings.scoreboard_thresholds())
    return ReplayCommands(
        orchestrator, labeling_job, scoreboard, store, gate, sync_job, db_engine, settings.DEFAULT_DATA_SOURCE
    )
