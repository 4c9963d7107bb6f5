"""Daily ingestion job, run by hand or from an external scheduler."""

from __future__ import annotations

import argparse
import asyncio
import json
import logging

from dispodeals.config import Settings, configure_logging
from dispodeals.context import build_context
from dispodeals.db.migrate import run_migrations
from dispodeals.ingest import load_dispensaries
from dispodeals.ingest.models import BatchSummary
from dispodeals.ingest.pipeline import IngestPipeline

logger = logging.getLogger(__name__)


async def run_daily(settings: Settings | None = None, *, from_file: bool = False) -> BatchSummary:
    settings = settings or Settings.from_env()
    ctx = build_context(settings)
    try:
        run_migrations(ctx.engine)
        pipeline = IngestPipeline(ctx)
        dispensaries = load_dispensaries(settings.dispensaries_path) if from_file else None
        return await pipeline.run_batch(dispensaries)
    finally:
        await ctx.aclose()


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Ingest today's dispensary deals")
    parser.add_argument(
        "--from-file",
        action="store_true",
        help="read dispensaries from DISPENSARIES_PATH instead of the database",
    )
    args = parser.parse_args(argv)
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    summary = asyncio.run(run_daily(settings, from_file=args.from_file))
    print(json.dumps(summary.as_dict()))


if __name__ == "__main__":
    main()
