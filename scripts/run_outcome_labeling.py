#!/usr/bin/env python
"""
Label matured replay states with their realized outcome.

Usage:
    python scripts/run_outcome_labeling.py --horizon MICRO --symbol BTC
    python scripts/run_outcome_labeling.py --status --batch-id <id>
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path

# Add parent directory to path to allow running as script
sys.path.insert(0, str(Path(__file__).parent.parent))

from historical_replay.errors import ReplayError
from replay_service.commands import build_commands
from replay_service.config import settings_with
from replay_service.logging_setup import setup_logging


async def _run(args) -> int:
    settings = settings_with(DATABASE_URL=args.db)
    setup_logging(settings.LOG_LEVEL, settings.LOG_FILE)
    commands = await build_commands(settings)
    try:
        if args.status:
            result = await commands.get_labeling_status(args.batch_id, args.symbol)
        elif args.state_id is not None:
            result = await commands.label_state(args.state_id, args.horizon)
        else:
            result = await commands.label_outcomes(args.horizon, args.symbol, args.limit, args.batch_id)
    except ReplayError as e:
        print(f"✗ {e}")
        return 1
    finally:
        await commands.close()
    print(json.dumps(result, indent=2, default=str))
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Outcome labeling for replay states")
    parser.add_argument("--horizon", default="MICRO", help="SCALPING, MICRO or MACRO (default: MICRO)")
    parser.add_argument("--symbol", default=None)
    parser.add_argument("--batch-id", default=None)
    parser.add_argument("--limit", type=int, default=100)
    parser.add_argument("--state-id", type=int, default=None, help="label one state regardless of age")
    parser.add_argument("--status", action="store_true", help="print labeling progress and exit")
    parser.add_argument("--db", default=None, help="Database URL (default: DATABASE_URL setting)")
    args = parser.parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
