"""
Data models used by the historical replay pipeline.

Market data and outcomes are immutable dataclasses. Batches and samples
are mutable because the orchestrator advances them in place. The decision
payload is a pydantic model so every stored decision carries the engine
``config_version`` it was produced with and older rows still parse.
"""

from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidTransition


class Bias(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"
    WAIT = "WAIT"


class OutcomeLabel(str, Enum):
    CONTINUATION = "CONTINUATION"
    REVERSAL = "REVERSAL"
    NOISE = "NOISE"


class BatchStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    PAUSED = "PAUSED"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SampleStatus(str, Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    FAILED_INSUFFICIENT_DATA = "FAILED_INSUFFICIENT_DATA"


class DataSource(str, Enum):
    LOCAL = "local"
    VENDOR_FALLBACK = "vendor_fallback"


class ErrorKind(str, Enum):
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"
    LOOKAHEAD_VIOLATION = "LOOKAHEAD_VIOLATION"
    RATE_LIMITED = "RATE_LIMITED"
    PERSISTENCE = "PERSISTENCE"
    IO_ERROR = "IO_ERROR"


TERMINAL_SAMPLE_STATUSES = frozenset(
    {SampleStatus.COMPLETED, SampleStatus.FAILED, SampleStatus.FAILED_INSUFFICIENT_DATA}
)

ALLOWED_TRANSITIONS: Dict[BatchStatus, frozenset] = {
    BatchStatus.PENDING: frozenset({BatchStatus.RUNNING}),
    BatchStatus.RUNNING: frozenset({BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.PAUSED}),
    BatchStatus.PAUSED: frozenset({BatchStatus.RUNNING}),
    BatchStatus.COMPLETED: frozenset(),
    BatchStatus.FAILED: frozenset(),
}


# ---------------------------------------------------------------------------
# Market data
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Candle:
    """OHLCV candle keyed by its open time (epoch ms, UTC)."""

    time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0


@dataclass(frozen=True)
class SeriesPoint:
    """A single open-interest or funding-rate observation."""

    time_ms: int
    value: float


@dataclass(frozen=True)
class TakerVolume:
    """Aggressive buy and sell volume for one candle."""

    time_ms: int
    buy: float
    sell: float


@dataclass
class SeriesBundle:
    """Every series fetched for one venue and timeframe at one as-of instant."""

    candles: List[Candle] = field(default_factory=list)
    open_interest: List[SeriesPoint] = field(default_factory=list)
    funding: List[SeriesPoint] = field(default_factory=list)
    taker: List[TakerVolume] = field(default_factory=list)

    def all_timestamps(self) -> List[int]:
        return (
            [c.time_ms for c in self.candles]
            + [p.time_ms for p in self.open_interest]
            + [p.time_ms for p in self.funding]
            + [t.time_ms for t in self.taker]
        )


@dataclass(frozen=True)
class TimeframeSummary:
    """Per-venue, per-timeframe summary handed to the decision engine.

    Attributes:
        price: Last close.
        price_change_pct: Change of the last close versus the previous one.
        open_interest: Last open-interest value.
        open_interest_change_pct: Change versus the previous OI value.
        cvd: Cumulative taker buy minus sell volume over the window.
        funding_rate_avg_pct: Mean funding rate, in percent.
        volume: Volume of the last candle.
    """

    price: float
    price_change_pct: float
    open_interest: float
    open_interest_change_pct: float
    cvd: float
    funding_rate_avg_pct: float
    volume: float


@dataclass
class Snapshot:
    """Point-in-time view of the market at ``as_of_ms``."""

    as_of_ms: int
    summary: Dict[str, Dict[str, TimeframeSummary]]
    history: Dict[str, List[Dict[str, float]]]
    data_range: Dict[str, Optional[int]]
    primary_venue: str
    primary_timeframe: str

    @property
    def price(self) -> Optional[float]:
        venue = self.summary.get(self.primary_venue) or {}
        tf = venue.get(self.primary_timeframe)
        return tf.price if tf is not None else None


# ---------------------------------------------------------------------------
# Decisions
# ---------------------------------------------------------------------------


class Regime(BaseModel):
    type: str = "unknown"
    subtype: Optional[str] = None


class Scores(BaseModel):
    long: float = 0.0
    short: float = 0.0
    wait: float = 0.0


class DecisionPayload(BaseModel):
    """Decision emitted by the engine for one snapshot.

    Keys an engine version does not declare are kept under ``extra`` so a
    payload written by an older or newer engine still loads.
    """

    model_config = ConfigDict(extra="ignore")

    bias: Bias
    confidence: float = 0.0
    regime: Regime = Field(default_factory=Regime)
    scenario: Optional[str] = None
    scores: Scores = Field(default_factory=Scores)
    config_version: str = "unversioned"
    timeframe: Optional[str] = None
    macro_bias: Optional[Bias] = None
    micro_bias: Optional[Bias] = None
    scalping_bias: Optional[Bias] = None
    macro_anchored: Optional[bool] = None
    cvd_signal: Optional[str] = None
    oi_signal: Optional[str] = None
    funding_rate: Optional[float] = None
    extra: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _collect_unknown_keys(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        known = set(cls.model_fields)
        unknown = {k: v for k, v in data.items() if k not in known}
        if not unknown:
            return data
        data = {k: v for k, v in data.items() if k in known}
        data["extra"] = {**unknown, **(data.get("extra") or {})}
        return data

    @field_validator("confidence")
    @classmethod
    def _clip_confidence(cls, v: float) -> float:
        return max(0.0, min(10.0, float(v)))


# ---------------------------------------------------------------------------
# Execution and batches
# ---------------------------------------------------------------------------


@dataclass
class ExecutionResult:
    """Result of running one replay sample.

    ``skipped`` is True when a state already existed for the key and the
    engine was not invoked.
    """

    success: bool
    state_id: Optional[int] = None
    skipped: bool = False
    error_kind: Optional[ErrorKind] = None
    error: Optional[str] = None


@dataclass
class ReplaySample:
    as_of_ms: int
    status: SampleStatus = SampleStatus.PENDING
    state_id: Optional[int] = None
    error: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_SAMPLE_STATUSES


@dataclass
class ReplayBatch:
    """A batch of replay samples and its lifecycle.

    Counters are derived from the sample statuses so a resumed batch can
    never double count work.
    """

    batch_id: str
    symbol: str
    start_ms: int
    end_ms: int
    step: str
    data_source: DataSource
    samples: List[ReplaySample]
    status: BatchStatus = BatchStatus.PENDING
    created_at_ms: int = 0
    started_at_ms: Optional[int] = None
    finished_at_ms: Optional[int] = None
    error: Optional[str] = None
    labeling: Optional[Dict[str, Any]] = None

    def transition(self, new_status: BatchStatus) -> None:
        if new_status not in ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransition(
                f"batch {self.batch_id}: cannot move from {self.status.value} to {new_status.value}"
            )
        self.status = new_status

    @property
    def total_samples(self) -> int:
        return len(self.samples)

    @property
    def completed_samples(self) -> int:
        return sum(1 for s in self.samples if s.status == SampleStatus.COMPLETED)

    @property
    def failed_samples(self) -> int:
        return sum(
            1 for s in self.samples
            if s.status in (SampleStatus.FAILED, SampleStatus.FAILED_INSUFFICIENT_DATA)
        )

    @property
    def remaining_samples(self) -> int:
        return sum(1 for s in self.samples if not s.is_terminal)

    def pending(self) -> List[ReplaySample]:
        return [s for s in self.samples if not s.is_terminal]

    def eta_seconds(self, now_ms: int) -> Optional[float]:
        """Remaining time estimate from the average pace since the run started."""
        if self.status != BatchStatus.RUNNING or self.started_at_ms is None:
            return None
        done = self.total_samples - self.remaining_samples
        if done == 0:
            return None
        per_sample = (now_ms - self.started_at_ms) / done / 1000
        return round(per_sample * self.remaining_samples, 1)

    def to_dict(self, now_ms: Optional[int] = None) -> Dict[str, Any]:
        total = self.total_samples
        terminal = total - self.remaining_samples
        return {
            "batch_id": self.batch_id,
            "symbol": self.symbol,
            "start_ms": self.start_ms,
            "end_ms": self.end_ms,
            "step": self.step,
            "data_source": self.data_source.value,
            "status": self.status.value,
            "created_at_ms": self.created_at_ms,
            "started_at_ms": self.started_at_ms,
            "finished_at_ms": self.finished_at_ms,
            "error": self.error,
            "labeling": self.labeling,
            "progress": {
                "total": total,
                "completed": self.completed_samples,
                "failed": self.failed_samples,
                "remaining": self.remaining_samples,
                "percent": round(terminal / total * 100, 1) if total else 0.0,
                "eta_seconds": self.eta_seconds(now_ms) if now_ms is not None else None,
            },
            "samples": [
                {**asdict(s), "status": s.status.value} for s in self.samples
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplayBatch":
        samples = [
            ReplaySample(
                as_of_ms=s["as_of_ms"],
                status=SampleStatus(s["status"]),
                state_id=s.get("state_id"),
                error=s.get("error"),
                attempts=s.get("attempts", 0),
            )
            for s in data.get("samples", [])
        ]
        return cls(
            batch_id=data["batch_id"],
            symbol=data["symbol"],
            start_ms=data["start_ms"],
            end_ms=data["end_ms"],
            step=data["step"],
            data_source=DataSource(data["data_source"]),
            samples=samples,
            status=BatchStatus(data["status"]),
            created_at_ms=data.get("created_at_ms", 0),
            started_at_ms=data.get("started_at_ms"),
            finished_at_ms=data.get("finished_at_ms"),
            error=data.get("error"),
            labeling=data.get("labeling"),
        )


# ---------------------------------------------------------------------------
# Outcomes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class OutcomeResult:
    """Realized outcome of one decision over one horizon.

    Attributes:
        label: CONTINUATION, REVERSAL or NOISE.
        price_change_pct: Move from entry to the last future close, percent.
        mfe_pct: Maximum favourable excursion in percent of entry. None for WAIT.
        mae_pct: Maximum adverse excursion in percent of entry. None for WAIT.
        reason: Short human-readable explanation of the label.
        candles_used: Number of future candles evaluated.
        horizon: Horizon name the label was computed for.
    """

    label: OutcomeLabel
    price_change_pct: float
    mfe_pct: Optional[float]
    mae_pct: Optional[float]
    reason: str
    candles_used: int
    horizon: str


@dataclass(frozen=True)
class LabeledDecision:
    """Flattened view of a stored replay state used for scoring.

    Hierarchy and signal fields come from the stored decision payload and
    are None when the engine version did not emit them.
    """

    state_id: int
    symbol: str
    as_of_ms: int
    bias: Bias
    confidence: Optional[float]
    outcome: Optional[OutcomeLabel]
    price_change_pct: Optional[float] = None
    mfe_pct: Optional[float] = None
    mae_pct: Optional[float] = None
    regime: Optional[str] = None
    scenario: Optional[str] = None
    timeframe: Optional[str] = None
    macro_bias: Optional[Bias] = None
    micro_bias: Optional[Bias] = None
    scalping_bias: Optional[Bias] = None
    macro_anchored: Optional[bool] = None
    cvd_signal: Optional[str] = None
    oi_signal: Optional[str] = None
    funding_rate: Optional[float] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "LabeledDecision":
        payload = DecisionPayload.model_validate(row.get("decision") or {"bias": row["bias"]})
        outcome = row.get("outcome_label")
        return cls(
            state_id=row["id"],
            symbol=row["symbol"],
            as_of_ms=row["as_of_ms"],
            bias=Bias(row["bias"]),
            confidence=row.get("confidence"),
            outcome=OutcomeLabel(outcome) if outcome else None,
            price_change_pct=row.get("price_change_pct"),
            mfe_pct=row.get("mfe_pct"),
            mae_pct=row.get("mae_pct"),
            regime=row.get("primary_regime") or payload.regime.type,
            scenario=payload.scenario,
            timeframe=payload.timeframe,
            macro_bias=payload.macro_bias,
            micro_bias=payload.micro_bias,
            scalping_bias=payload.scalping_bias,
            macro_anchored=payload.macro_anchored,
            cvd_signal=payload.cvd_signal,
            oi_signal=payload.oi_signal,
            funding_rate=payload.funding_rate,
        )
