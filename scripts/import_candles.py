#!/usr/bin/env python
"""
Import historical market rows from CSV into the series store.

CSV columns: timestamp, open, high, low, close and optionally volume,
open_interest, funding_rate, taker_buy_volume, taker_sell_volume.

Usage:
    python scripts/import_candles.py --csv data/btc_4h.csv \\
        --venue Binance --symbol BTCUSDT --timeframe 4h
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path to allow running as script
sys.path.insert(0, str(Path(__file__).parent.parent))

from historical_replay.candle_loader import CandleLoader
from historical_replay.errors import ValidationError
from historical_replay.intervals import interval_to_ms, normalize_symbol
from replay_service.config import settings_with
from replay_service.series_store import HistoricalSeriesStore
from replay_service.storage import get_engine_and_session, init_models


async def _import(args) -> int:
    print(f"Loading rows from: {args.csv}")
    try:
        interval_to_ms(args.timeframe)
        rows = CandleLoader.load_csv(args.csv)
    except (FileNotFoundError, ValidationError) as e:
        print(f"✗ Error loading rows: {e}")
        return 1
    print(f"✓ Loaded {len(rows)} rows")

    settings = settings_with(DATABASE_URL=args.db)
    engine, sessionmaker = get_engine_and_session(settings.DATABASE_URL)
    try:
        await init_models(engine)
        store = HistoricalSeriesStore(sessionmaker)
        symbol = normalize_symbol(args.symbol)
        written = await store.upsert(args.venue, symbol, args.timeframe, rows)
        print(f"✓ Stored {written} rows for {args.venue}/{symbol}/{args.timeframe}")
        for series in await store.coverage(symbol):
            print(f"  {series['venue']:<10} {series['timeframe']:<4} {series['count']:>7} rows "
                  f"{series['first_ms']} .. {series['last_ms']}")
    finally:
        await engine.dispose()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Import market rows from CSV")
    parser.add_argument("--csv", required=True, help="Path to CSV file")
    parser.add_argument("--venue", required=True, help="Venue name, e.g. Binance")
    parser.add_argument("--symbol", required=True, help="Symbol, e.g. BTCUSDT")
    parser.add_argument("--timeframe", required=True, help="30m, 1h, 4h or 1d")
    parser.add_argument("--db", default=None, help="Database URL (default: DATABASE_URL setting)")
    args = parser.parse_args()
    sys.exit(asyncio.run(_import(args)))


if __name__ == "__main__":
    main()
