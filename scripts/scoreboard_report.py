#!/usr/bin/env python
"""
Print the replay scoreboard and manage baselines.

Usage:
    python scripts/scoreboard_report.py --batch-id <id>
    python scripts/scoreboard_report.py --summary --symbol BTC
    python scripts/scoreboard_report.py --save-baseline "engine v3" --batch-id <id>
    python scripts/scoreboard_report.py --compare 4
    python scripts/scoreboard_report.py --list-baselines
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
    filters = {"batch_id": args.batch_id, "from_ts": args.from_ts, "to_ts": args.to_ts, "symbol": args.symbol}
    try:
        if args.list_baselines:
            result = await commands.list_baselines()
        elif args.delete_baseline is not None:
            result = {"deleted": await commands.delete_baseline(args.delete_baseline)}
        elif args.save_baseline:
            result = await commands.save_baseline(args.save_baseline, **filters)
        elif args.compare is not None:
            result = await commands.compare_to_baseline(args.compare, **filters)
        elif args.summary:
            result = await commands.get_scoreboard_summary(**filters)
        else:
            result = await commands.get_scoreboard(**filters)
    except ReplayError as e:
        print(f"✗ {e}")
        return 1
    finally:
        await commands.close()
    print(json.dumps(result, indent=2, default=str))
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Replay scoreboard and baselines")
    parser.add_argument("--batch-id", default=None)
    parser.add_argument("--symbol", default=None)
    parser.add_argument("--from", dest="from_ts", default=None, help="ISO-8601 or epoch ms")
    parser.add_argument("--to", dest="to_ts", default=None, help="ISO-8601 or epoch ms")
    parser.add_argument("--summary", action="store_true")
    parser.add_argument("--save-baseline", metavar="NAME", default=None)
    parser.add_argument("--compare", metavar="BASELINE_ID", type=int, default=None)
    parser.add_argument("--delete-baseline", metavar="BASELINE_ID", type=int, default=None)
    parser.add_argument("--list-baselines", action="store_true")
    parser.add_argument("--db", default=None, help="Database URL (default: DATABASE_URL setting)")
    args = parser.parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
