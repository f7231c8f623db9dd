from functools import lru_cache
from typing import Dict, List, Optional

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from historical_replay.intervals import DAY_MS, HOUR_MS, INTERVAL_CONFIG
from historical_replay.outcome_labeler import DEFAULT_HORIZONS, HorizonConfig
from historical_replay.scoreboard import ScoreboardThresholds

load_dotenv()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    DATABASE_URL: str = Field("sqlite+aiosqlite:///./replay.db")
    # "sql" keeps batch descriptors in the database, "memory" for tests
    BATCH_REGISTRY: str = Field("sql")

    # Venues and timeframes fetched for every snapshot
    REPLAY_VENUES: List[str] = Field(default_factory=lambda: ["Binance", "Bybit"])
    PRIMARY_VENUE: str = Field("Binance")
    REPLAY_TIMEFRAMES: List[str] = Field(default_factory=lambda: list(INTERVAL_CONFIG))
    PRIMARY_TIMEFRAME: str = Field("4h")
    # Overrides for the per-timeframe minimum lookback, e.g. {"1h": 100}
    MIN_CANDLES_OVERRIDES: Dict[str, int] = Field(default_factory=dict)
    REPLAY_DECISION_ENGINE: str = Field("historical_replay.decision_engine:create_default_engine")

    # Batch pacing and retry policy
    DEFAULT_DATA_SOURCE: str = Field("local")
    DEFAULT_MAX_SAMPLES: int = Field(100)
    MAX_RETRIES: int = Field(3)
    RETRY_BACKOFF_SECONDS: float = Field(5.0)
    RATE_LIMIT_COOLDOWN_SECONDS: float = Field(30.0)
    SAMPLE_DELAY_SECONDS: float = Field(5.0)
    VENDOR_CALL_DELAY_SECONDS: float = Field(2.5)
    PERSIST_MAX_ATTEMPTS: int = Field(3)
    PERSIST_BACKOFF_SECONDS: float = Field(0.5)

    # Edge auto-sync on insufficient data
    AUTO_SYNC_ENABLED: bool = Field(True)
    AUTO_SYNC_EDGE_HOURS: float = Field(24.0)
    AUTO_SYNC_RECENT_HOURS: float = Field(48.0)
    AUTO_SYNC_LOOKBACK_DAYS: int = Field(3)
    SCHEDULED_SYNC_SECONDS: float = Field(0.0)  # 0 disables the in-process sync loop
    SCHEDULED_SYNC_SYMBOLS: List[str] = Field(default_factory=lambda: ["BTC"])

    # Market-data vendor
    VENDOR_BASE_URL: str = Field("")
    VENDOR_API_KEY: str = Field("")
    VENDOR_TIMEOUT_SECONDS: float = Field(15.0)
    VENDOR_MAX_ATTEMPTS: int = Field(3)

    # Labeling
    LABELING_HORIZON: str = Field("MICRO")
    AUTO_LABEL_ENABLED: bool = Field(True)
    HORIZON_THRESHOLDS_PCT: Dict[str, float] = Field(default_factory=dict)
    HORIZON_MATURATION_HOURS: Dict[str, float] = Field(default_factory=dict)

    # Scoreboard
    SCOREBOARD_MIN_BUCKET_SAMPLES: int = Field(5)
    SCOREBOARD_MIN_GROUP_SAMPLES: int = Field(5)
    WAIT_EFFECTIVE_RATIO: float = Field(0.8)
    WAIT_INVERTED_RATIO: float = Field(0.5)
    VERDICT_TOLERANCE: float = Field(0.1)

    LOG_LEVEL: str = Field("INFO")
    LOG_FILE: Optional[str] = Field(None)
    METRICS_PORT: Optional[int] = Field(None)

    def horizons(self) -> Dict[str, HorizonConfig]:
        """Default horizons with any configured threshold or maturation overrides."""
        result = {}
        for name, horizon in DEFAULT_HORIZONS.items():
            threshold = self.HORIZON_THRESHOLDS_PCT.get(name, horizon.threshold_pct)
            hours = self.HORIZON_MATURATION_HOURS.get(name)
            maturation = int(hours * HOUR_MS) if hours is not None else horizon.maturation_ms
            result[name] = HorizonConfig(
                name=name,
                timeframe=horizon.timeframe,
                candle_count=horizon.candle_count,
                maturation_ms=maturation,
                threshold_pct=threshold,
                min_future_candles=horizon.min_future_candles,
            )
        return result

    def min_candles(self) -> Dict[str, int]:
        return {
            tf: self.MIN_CANDLES_OVERRIDES.get(tf, INTERVAL_CONFIG[tf].min_candles)
            for tf in self.REPLAY_TIMEFRAMES
        }

    def scoreboard_thresholds(self) -> ScoreboardThresholds:
        return ScoreboardThresholds(
            min_bucket_samples=self.SCOREBOARD_MIN_BUCKET_SAMPLES,
            min_group_samples=self.SCOREBOARD_MIN_GROUP_SAMPLES,
            wait_effective_ratio=self.WAIT_EFFECTIVE_RATIO,
            wait_inverted_ratio=self.WAIT_INVERTED_RATIO,
            verdict_tolerance=self.VERDICT_TOLERANCE,
        )

    @property
    def auto_sync_lookback_ms(self) -> int:
        return self.AUTO_SYNC_LOOKBACK_DAYS * DAY_MS


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()


def settings_with(**overrides) -> Settings:
    """Cached settings with non-None overrides applied, e.g. from CLI flags."""
    updates = {k: v for k, v in overrides.items() if v is not None}
    return get_settings().model_copy(update=updates) if updates else get_settings()
