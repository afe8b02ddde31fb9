"""Command line entry point for maintenance jobs.

Usage:
    python -m relay.cli sweep      # run one retention sweep and exit
"""
import argparse
import asyncio
import logging
import sys

from relay.core.config import settings
from relay.services.retention_sweeper import RetentionSweeper
from relay.storage import create_backend

logger = logging.getLogger(__name__)


async def run_sweep() -> dict:
    backend = create_backend(settings)
    try:
        await backend.initialize()
        result = await RetentionSweeper(backend).sweep()
        return result.to_dict()
    finally:
        await backend.close()


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(prog="relay", description="Unciv save relay maintenance")
    subcommands = parser.add_subparsers(dest="command", required=True)
    subcommands.add_parser("sweep", help="delete expired games, orphan players and old snapshots")
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if args.command == "sweep":
        counts = asyncio.run(run_sweep())
        print(", ".join(f"{name}={count}" for name, count in counts.items()))
    return 0


if __name__ == "__main__":
    sys.exit(main())
