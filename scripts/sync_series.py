#!/usr/bin/env python
"""
Pull historical series from the market-data vendor into the local store.

Usage:
    python scripts/sync_series.py --symbol BTC --start 2025-01-01 --end 2025-03-01
    python scripts/sync_series.py --symbol BTC --every 900   # keep the recent window fresh
"""

import argparse
import asyncio
import sys
from pathlib import Path

# Add parent directory to path to allow running as script
sys.path.insert(0, str(Path(__file__).parent.parent))

import httpx

from historical_replay.errors import RateLimited, ReplayError
from historical_replay.intervals import normalize_symbol, to_epoch_ms
from replay_service.commands import build_commands
from replay_service.config import settings_with
from replay_service.logging_setup import setup_logging


async def _run(args) -> int:
    settings = settings_with(DATABASE_URL=args.db)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    if not settings.VENDOR_BASE_URL:
        print("✗ VENDOR_BASE_URL is not configured")
        return 1
    commands = await build_commands(settings)
    symbol = normalize_symbol(args.symbol)
    try:
        if args.every:
            stop = asyncio.Event()
            print(f"Syncing {symbol} every {args.every}s (Ctrl+C to stop)")
            await commands.sync_job.run_scheduled(symbol, commands.gate, args.every, stop)
        else:
            written = await commands.sync_job.sync_window(symbol, to_epoch_ms(args.start), to_epoch_ms(args.end))
            print(f"✓ Stored {written} rows for {symbol}")
    except (ReplayError, RateLimited, httpx.HTTPError) as e:
        print(f"✗ Sync failed: {e}")
        return 1
    finally:
        await commands.close()
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Vendor series sync")
    parser.add_argument("--symbol", required=True)
    parser.add_argument("--start", default=None, help="ISO-8601 or epoch ms")
    parser.add_argument("--end", default=None, help="ISO-8601 or epoch ms")
    parser.add_argument("--every", type=float, default=None, help="run continuously, seconds between cycles")
    parser.add_argument("--db", default=None, help="Database URL (default: DATABASE_URL setting)")
    args = parser.parse_args()
    if not args.every and not (args.start and args.end):
        parser.error("either --every or both --start and --end are required")
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
