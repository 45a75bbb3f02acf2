#!/usr/bin/env python3
"""Move stored objects from one backend to another.

Runs the migration in the foreground and prints the final counters. An
interrupted migration is continued with --resume; objects that were already
moved are not scanned again.

Usage:
    python scripts/migrate_storage.py s3-legacy minio-eu --prefix videos/
    python scripts/migrate_storage.py --resume 3f2b9c1e-...
"""

import argparse
import asyncio
import sys
from uuid import UUID

from dotenv import load_dotenv

load_dotenv()

from recipestream.database import async_session_factory  # noqa: E402
from recipestream.services.migration import MigrationOrchestrator  # noqa: E402
from recipestream.storage.adapter import ObjectStoreAdapter  # noqa: E402
from recipestream.storage.registry import BackendRegistry  # noqa: E402
from recipestream.utils.logging import configure_logging  # noqa: E402


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Migrate objects between storage backends")
    parser.add_argument("source", nargs="?", help="Backend objects are moved from")
    parser.add_argument("dest", nargs="?", help="Backend objects are moved to")
    parser.add_argument("--prefix", default="", help="Only migrate keys starting with this prefix")
    parser.add_argument("--delete-source", action="store_true", help="Delete the source copy after each commit")
    parser.add_argument("--concurrency", type=int, default=None)
    parser.add_argument("--resume", type=UUID, default=None, metavar="MIGRATION_ID")
    args = parser.parse_args(argv)
    if args.resume is None and not (args.source and args.dest):
        parser.error("source and dest are required unless --resume is given")
    return args


async def run(args: argparse.Namespace) -> int:
    if async_session_factory is None:
        print("ERROR: DATABASE_URL is not set")
        return 1

    async with async_session_factory() as db:
        registry = await BackendRegistry.load(db)

    orchestrator = MigrationOrchestrator(ObjectStoreAdapter(registry), concurrency=args.concurrency)
    if args.resume:
        job = await orchestrator.resume(args.resume)
    else:
        job = await orchestrator.migrate(args.source, args.dest, args.prefix, args.delete_source)

    print(f"Migration {job.id}: {job.source_backend} -> {job.dest_backend} ({job.state.value})")
    print(f"  copied:  {job.copied}")
    print(f"  skipped: {job.skipped}")
    print(f"  failed:  {job.failed}")
    if job.last_error:
        print(f"  last error: {job.last_error}")
    return 0 if job.failed == 0 else 2


if __name__ == "__main__":
    configure_logging()
    sys.exit(asyncio.run(run(parse_args())))
