"""
Exception taxonomy for the historical replay pipeline.

Sample-level errors (insufficient data, rate limits, persistence hiccups)
are caught by the batch orchestrator and turned into sample statuses.
``LookaheadViolation`` is a correctness bug and is never retried.
"""

from typing import Optional


class ReplayError(Exception):
    """Base class for all replay pipeline errors."""


class LookaheadViolation(ReplayError):
    """Raised when data timestamped after the as-of instant reaches a decision."""

    def __init__(self, message: str, timestamp_ms: Optional[int] = None, cutoff_ms: Optional[int] = None):
        super().__init__(message)
        self.timestamp_ms = timestamp_ms
        self.cutoff_ms = cutoff_ms


class InsufficientData(ReplayError):
    """Raised when a series has fewer candles than the lookback requires."""

    def __init__(self, message: str, venue: str = "", timeframe: str = "", available: int = 0, required: int = 0):
        super().__init__(message)
        self.venue = venue
        self.timeframe = timeframe
        self.available = available
        self.required = required


class RateLimited(ReplayError):
    """Raised when the market-data vendor rejects a call for quota reasons."""

    def __init__(self, message: str = "vendor rate limit hit", retry_after: Optional[float] = None):
        super().__init__(message)
        self.retry_after = retry_after


class PersistenceError(ReplayError):
    """Raised when the replay state store cannot be written or read."""


class ValidationError(ReplayError):
    """Raised when a command is rejected before any work is done."""


class InvalidTransition(ReplayError):
    """Raised when a batch is asked to move to a status it cannot reach."""


class NotFoundError(ReplayError):
    """Raised when a batch, state or baseline id is unknown."""
