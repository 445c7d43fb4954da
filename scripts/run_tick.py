"""Run a single maintenance tick from the command line.

Intended for cron or a serverless scheduler that cannot reach the HTTP
receiver. Prints the tick result as JSON and exits non-zero when the tick
reported errors.

    python scripts/run_tick.py --manual
    python scripts/run_tick.py --dry-run   # in-memory store, nothing persisted
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import os

from maintenance_agent.config import reset_config
from maintenance_agent.context import EngineContext
from maintenance_agent.db import close_db, reset_db
from maintenance_agent.engine import run_tick


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument(
        "--manual",
        action="store_true",
        help="Record the tick as manually triggered",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Use the in-memory backend instead of the configured database",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    return parser


async def _run(manual: bool) -> dict:
    try:
        ctx = EngineContext.from_globals()
        result = await run_tick(ctx, trigger="manual" if manual else "scheduled")
        return result.to_dict()
    finally:
        await close_db()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if args.dry_run:
        os.environ["DB_BACKEND"] = "memory"
        reset_config()
        reset_db()

    result = asyncio.run(_run(args.manual))
    print(json.dumps(result, indent=2))
    return 1 if result["errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
