"""
Load market rows from CSV files into the historical series store.

Handles:
- Timestamps as epoch milliseconds, ISO-8601 or ``%Y-%m-%d %H:%M:%S`` (UTC)
- Row sorting (ascending by open time)
- Required columns: timestamp, open, high, low, close
- Optional columns: volume, open_interest, funding_rate,
  taker_buy_volume, taker_sell_volume
"""

import csv
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .errors import ValidationError
from .intervals import to_epoch_ms


@dataclass(frozen=True)
class MarketRow:
    """One candle plus the derivatives data recorded for the same open time."""

    time_ms: int
    open: float
    high: float
    low: float
    close: float
    volume: float = 0.0
    open_interest: Optional[float] = None
    funding_rate: Optional[float] = None
    taker_buy_volume: Optional[float] = None
    taker_sell_volume: Optional[float] = None


def _parse_timestamp(raw: str, timestamp_fmt: str) -> int:
    text = raw.strip()
    if text.isdigit():
        return int(text)
    try:
        ts = datetime.strptime(text, timestamp_fmt)
    except ValueError:
        return to_epoch_ms(text)
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return int(ts.timestamp() * 1000)


def _optional_float(row: dict, key: str) -> Optional[float]:
    value = row.get(key)
    if value is None or str(value).strip() == "":
        return None
    return float(value)


class CandleLoader:
    """Load and validate market rows from CSV."""

    REQUIRED_COLUMNS = {"timestamp", "open", "high", "low", "close"}
    OPTIONAL_COLUMNS = {"volume", "open_interest", "funding_rate", "taker_buy_volume", "taker_sell_volume"}

    @staticmethod
    def load_csv(csv_path: str, timestamp_fmt: str = "%Y-%m-%d %H:%M:%S") -> List[MarketRow]:
        """
        Load market rows from a CSV file.

        Args:
            csv_path: Path to CSV file
            timestamp_fmt: Format tried first for non-numeric timestamps

        Returns:
            List of MarketRow objects, sorted ascending by open time

        Raises:
            FileNotFoundError: If CSV not found
            ValidationError: If required columns are missing or a row is malformed
        """
        path = Path(csv_path)
        if not path.exists():
            raise FileNotFoundError(f"CSV not found: {csv_path}")

        rows = []
        with open(path, "r", newline="") as f:
            reader = csv.DictReader(f)
            if not reader.fieldnames:
                raise ValidationError("CSV is empty")

            missing = CandleLoader.REQUIRED_COLUMNS - set(reader.fieldnames)
            if missing:
                raise ValidationError(f"Missing required columns: {sorted(missing)}")

            for row_num, row in enumerate(reader, start=2):  # start=2 (after header)
                try:
                    rows.append(
                        MarketRow(
                            time_ms=_parse_timestamp(row["timestamp"], timestamp_fmt),
                            open=float(row["open"]),
                            high=float(row["high"]),
                            low=float(row["low"]),
                            close=float(row["close"]),
                            volume=_optional_float(row, "volume") or 0.0,
                            open_interest=_optional_float(row, "open_interest"),
                            funding_rate=_optional_float(row, "funding_rate"),
                            taker_buy_volume=_optional_float(row, "taker_buy_volume"),
                            taker_sell_volume=_optional_float(row, "taker_sell_volume"),
                        )
                    )
                except (KeyError, ValueError, ValidationError) as e:
                    raise ValidationError(f"Error parsing row {row_num}: {e}")

        if not rows:
            raise ValidationError("No valid rows loaded from CSV")

        rows.sort(key=lambda r: r.time_ms)
        return rows
