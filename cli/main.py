#!/usr/bin/env python3
"""
Media worker CLI - operational commands for the transcode queue.

    python -m cli.main enqueue <media-asset-id>
    python -m cli.main drain
    python -m cli.main stats
    python -m cli.main health
    python -m cli.main probe <media-asset-id>
"""

import argparse
import asyncio
import json
import sys

from rich.console import Console
from rich.table import Table

import config
from common.database import create_database
from common.enums import MediaType
from common.errors import TranscodeError
from common.logs import configure_logging, log_event
from common.redis_client import RedisClient
from common.schemas import JobPayload
from worker import job_records
from worker.context import build_queue
from worker.health_check import run_health_check
from worker.probe import probe_media
from worker.storage import MediaStorage, create_s3_client, source_suffix
from worker.workspace import job_workspace

console = Console()


class CLIError(Exception):
    """Custom exception for CLI errors."""

    pass


def _redis_client() -> RedisClient:
    return RedisClient(
        config.REDIS_URL,
        pool_size=2,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=config.REDIS_SOCKET_CONNECT_TIMEOUT,
    )


async def _load_video_asset(database, media_asset_id: str) -> dict:
    asset = await job_records.get_asset(database, media_asset_id)
    if asset is None:
        raise CLIError(f"Media asset {media_asset_id} not found")
    if asset["type"] != MediaType.VIDEO.value:
        raise CLIError(f"Media asset {media_asset_id} is not a video")
    return asset


async def enqueue(media_asset_id: str) -> dict:
    """
    Publish a fresh transcode attempt for an asset.

    The attempt number is one past the highest existing job row; a queued row
    is inserted before the message is published.
    """
    database = create_database(config.DATABASE_URL)
    redis = _redis_client()
    await database.connect()
    try:
        await _load_video_asset(database, media_asset_id)
        attempt = await job_records.next_attempt(database, media_asset_id)
        row_id = await job_records.create_queued_job(database, media_asset_id, attempt)

        await redis.connect()
        queue = build_queue(redis)
        job = await queue.enqueue(JobPayload(media_asset_id=media_asset_id, attempt=attempt))
        log_event(
            "script",
            "Enqueued media transcode job",
            queue=queue.name,
            jobId=job.job_id,
            mediaAssetId=media_asset_id,
            attempt=attempt,
            transcodeJobId=row_id,
        )
        return {"jobId": job.job_id, "attempt": attempt, "transcodeJobId": row_id}
    finally:
        await redis.close()
        await database.disconnect()


async def drain() -> dict:
    redis = _redis_client()
    try:
        await redis.connect()
        return await build_queue(redis).drain()
    finally:
        await redis.close()


async def stats() -> dict:
    redis = _redis_client()
    try:
        await redis.connect()
        return await build_queue(redis).stats()
    finally:
        await redis.close()


async def probe(media_asset_id: str) -> dict:
    """Download an asset's source to a temp file and probe it. No state changes."""
    database = create_database(config.DATABASE_URL)
    await database.connect()
    try:
        asset = await _load_video_asset(database, media_asset_id)
    finally:
        await database.disconnect()

    storage = MediaStorage(create_s3_client())
    try:
        with job_workspace(media_asset_id, source_suffix(asset["source_key"]), config.WORK_DIR) as ws:
            await storage.download_to_file(asset["source_key"], ws.source_path)
            metadata = await probe_media(ws.source_path)
    finally:
        storage.close()

    log_event("script", "Probe metadata", mediaAssetId=media_asset_id, metadata=metadata.to_dict())
    return metadata.to_dict()


def cmd_enqueue(args):
    result = asyncio.run(enqueue(args.media_asset_id))
    print(f"Enqueued {result['jobId']} (attempt {result['attempt']})")


def cmd_drain(args):
    result = asyncio.run(drain())
    print(f"Removed {result['waiting']} waiting and {result['delayed']} delayed job(s) from {config.QUEUE_NAME}")


def cmd_stats(args):
    counts = asyncio.run(stats())
    if args.json:
        print(json.dumps(counts))
        return
    table = Table(title=f"Queue {config.QUEUE_NAME}")
    table.add_column("State")
    table.add_column("Jobs", justify="right")
    for state in ("waiting", "active", "delayed", "dead"):
        table.add_row(state, str(counts.get(state, 0)))
    console.print(table)


def cmd_health(args):
    result, failures = asyncio.run(run_health_check(check_binaries=not args.skip_binaries))
    print(json.dumps(result))
    if failures:
        print(f"health-check failures: {','.join(failures)}", file=sys.stderr)
        sys.exit(1)


def cmd_probe(args):
    metadata = asyncio.run(probe(args.media_asset_id))
    print(json.dumps(metadata, indent=2))


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="media-worker", description="Media transcode queue tooling")
    subparsers = parser.add_subparsers(dest="command", required=True)

    enqueue_parser = subparsers.add_parser("enqueue", help="Enqueue a new transcode attempt for a media asset")
    enqueue_parser.add_argument("media_asset_id", help="Media asset ID")
    enqueue_parser.set_defaults(func=cmd_enqueue)

    drain_parser = subparsers.add_parser("drain", help="Remove waiting and delayed jobs (active jobs are kept)")
    drain_parser.set_defaults(func=cmd_drain)

    stats_parser = subparsers.add_parser("stats", help="Show queue counts")
    stats_parser.add_argument("--json", action="store_true", help="Print counts as JSON")
    stats_parser.set_defaults(func=cmd_stats)

    health_parser = subparsers.add_parser("health", help="Check Redis, queue, record store and binaries")
    health_parser.add_argument(
        "--skip-binaries", action="store_true", help="Do not check the ffmpeg/ffprobe binaries"
    )
    health_parser.set_defaults(func=cmd_health)

    probe_parser = subparsers.add_parser("probe", help="Download a source and print its probe metadata")
    probe_parser.add_argument("media_asset_id", help="Media asset ID")
    probe_parser.set_defaults(func=cmd_probe)

    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(config.LOG_LEVEL)
    try:
        config.validate_config()
        args.func(args)
    except config.ConfigError as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    except CLIError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)
    except TranscodeError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
