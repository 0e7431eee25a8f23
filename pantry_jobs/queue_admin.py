#!/usr/bin/env python3
"""
Queue maintenance commands.

    python -m pantry_jobs.queue_admin counts [queue]
    python -m pantry_jobs.queue_admin clear <queue> --yes
    python -m pantry_jobs.queue_admin latest-failure <queue>
"""
import argparse
import asyncio
import json
import sys

from pantry_jobs.database import AsyncSessionLocal, engine, init_db
from pantry_jobs.errors import UnknownQueue
from pantry_jobs.models.queue_job import FAILED
from pantry_jobs.schemas.jobs import QueueName, parse_queue_name
from pantry_jobs.services import job_manager


async def show_counts(lanes) -> int:
    async with AsyncSessionLocal() as db:
        for lane in lanes:
            counts = await job_manager.get_counts(db, lane)
            summary = "  ".join(f"{state}={count}" for state, count in counts.items())
            print(f"{lane.value:<18} {summary}")
    return 0


async def clear(lane: QueueName) -> int:
    async with AsyncSessionLocal() as db:
        deleted = await job_manager.clear_queue(db, lane)
    print(f"Deleted {deleted} job(s) from {lane.value}")
    return 0


async def latest_failure(lane: QueueName) -> int:
    async with AsyncSessionLocal() as db:
        jobs = await job_manager.get_jobs(db, lane, states=[FAILED], limit=1, newest_first=True)
    if not jobs:
        print(f"No failed jobs in {lane.value}")
        return 0

    job = jobs[0]
    print(f"Job:       {job.id}")
    print(f"Owner:     {job.owner_id}")
    print(f"Attempts:  {job.attempts}/{job.max_attempts}")
    print(f"Finished:  {job.finished_at.isoformat() if job.finished_at else '-'}")
    print(f"Reason:    {job.failure_reason}")
    print("Payload:")
    print(json.dumps(job.payload, indent=2, default=str))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pantry_jobs.queue_admin", description="Job queue maintenance")
    commands = parser.add_subparsers(dest="command", required=True)

    counts_cmd = commands.add_parser("counts", help="Per-state job counts")
    counts_cmd.add_argument("queue", nargs="?", help="Lane name (default: all lanes)")

    clear_cmd = commands.add_parser("clear", help="Delete every job in a lane")
    clear_cmd.add_argument("queue")
    clear_cmd.add_argument("--yes", action="store_true", help="Skip the confirmation check")

    failure_cmd = commands.add_parser("latest-failure", help="Show the most recent failed job")
    failure_cmd.add_argument("queue")
    return parser


async def run(args: argparse.Namespace) -> int:
    lane = parse_queue_name(args.queue) if args.queue else None
    await init_db()
    try:
        if args.command == "counts":
            return await show_counts([lane] if lane else list(QueueName))
        if args.command == "clear":
            if not args.yes:
                print(f"Refusing to clear {lane.value} without --yes")
                return 1
            return await clear(lane)
        return await latest_failure(lane)
    finally:
        await engine.dispose()


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(run(args))
    except UnknownQueue as e:
        print(f"ERROR: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
