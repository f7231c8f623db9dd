#!/usr/bin/env python
"""
Run or control a historical replay batch.

Creates a batch over a time range, waits for it to finish and prints the
final status as JSON. Also pauses, resumes and inspects existing batches
when they are kept in the SQL batch registry.

Usage:
    python scripts/run_replay_batch.py run --symbol BTCUSDT \\
        --start 2025-01-01T00:00:00Z --end 2025-02-01T00:00:00Z --step 4h

    python scripts/run_replay_batch.py status <batch_id>
    python scripts/run_replay_batch.py resume <batch_id>
    python scripts/run_replay_batch.py failures <batch_id>
    python scripts/run_replay_batch.py list
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
        if args.command == "run":
            batch = await commands.create_batch(
                args.symbol,
                args.start,
                args.end,
                step=args.step,
                max_samples=args.max_samples,
                data_source=args.data_source or settings.DEFAULT_DATA_SOURCE,
                batch_id=args.batch_id,
            )
            print(f"Started batch {batch['batch_id']} with {batch['progress']['total']} samples")
            result = await commands.wait_for_batch(batch["batch_id"])
        elif args.command == "resume":
            await commands.resume_batch(args.batch_id)
            result = await commands.wait_for_batch(args.batch_id)
        elif args.command == "pause":
            result = await commands.pause_batch(args.batch_id)
        elif args.command == "status":
            result = await commands.get_batch_status(args.batch_id)
        elif args.command == "failures":
            result = await commands.get_batch_failures(args.batch_id)
        else:
            result = await commands.list_batches()
    except ReplayError as e:
        print(f"✗ {e}")
        return 1
    finally:
        await commands.close()
    print(json.dumps(result, indent=2, default=str))
    return 0


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(description="Historical replay batches")
    parser.add_argument("--db", default=None, help="Database URL (default: DATABASE_URL setting)")
    sub = parser.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="create a batch and wait for it")
    run.add_argument("--symbol", required=True, help="Symbol, e.g. BTCUSDT")
    run.add_argument("--start", required=True, help="ISO-8601 or epoch ms")
    run.add_argument("--end", required=True, help="ISO-8601 or epoch ms")
    run.add_argument("--step", default="4h", help="30m, 1h, 4h or 1d (default: 4h)")
    run.add_argument("--max-samples", type=int, default=None)
    run.add_argument("--data-source", choices=["local", "vendor_fallback"], default=None)
    run.add_argument("--batch-id", default=None, help="re-run an earlier batch, keeping states it already stored")

    for name in ("status", "pause", "resume", "failures"):
        cmd = sub.add_parser(name)
        cmd.add_argument("batch_id")
    sub.add_parser("list")

    args = parser.parse_args()
    sys.exit(asyncio.run(_run(args)))


if __name__ == "__main__":
    main()
