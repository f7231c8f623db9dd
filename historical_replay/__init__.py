"""
Historical replay domain library.

This package holds the pure parts of the replay and evaluation pipeline:

- ``intervals``: interval arithmetic, candle alignment and sample timestamps.
- ``snapshot_builder``: point-in-time market snapshots with lookahead checks.
- ``decision_engine``: the engine contract and a small reference engine.
- ``outcome_labeler``: horizon-based outcome labels and MFE/MAE.
- ``scoreboard`` / ``failure_rules``: accuracy aggregation and failure buckets.
- ``candle_loader``: CSV import of historical market rows.

Nothing here touches a database or the network; see ``replay_service``.
"""

from .errors import (
    InsufficientData,
    InvalidTransition,
    LookaheadViolation,
    NotFoundError,
    PersistenceError,
    RateLimited,
    ReplayError,
    ValidationError,
)
from .schemas import (
    BatchStatus,
    Bias,
    Candle,
    DataSource,
    DecisionPayload,
    LabeledDecision,
    OutcomeLabel,
    ReplayBatch,
    ReplaySample,
    SampleStatus,
    SeriesBundle,
    Snapshot,
)
from .snapshot_builder import build_snapshot
from .outcome_labeler import DEFAULT_HORIZONS, HorizonConfig, label_outcome
from .scoreboard import build_scoreboard, compare_reports, headline_metrics

__all__ = [
    "ReplayError",
    "LookaheadViolation",
    "InsufficientData",
    "RateLimited",
    "PersistenceError",
    "ValidationError",
    "InvalidTransition",
    "NotFoundError",
    "BatchStatus",
    "Bias",
    "Candle",
    "DataSource",
    "DecisionPayload",
    "LabeledDecision",
    "OutcomeLabel",
    "ReplayBatch",
    "ReplaySample",
    "SampleStatus",
    "SeriesBundle",
    "Snapshot",
    "build_snapshot",
    "DEFAULT_HORIZONS",
    "HorizonConfig",
    "label_outcome",
    "build_scoreboard",
    "compare_reports",
    "headline_metrics",
]
