#!/usr/bin/env python3
"""
Health check script for the media worker.

Checks Redis (PING), the job queue (counts), the record store (SELECT 1) and
the ffmpeg/ffprobe binaries, prints one JSON document on stdout and lists
failures on stderr.

Used by Docker HEALTHCHECK and Kubernetes liveness/readiness probes.

Exit codes:
    0: Healthy
    1: Unhealthy
"""

import asyncio
import json
import subprocess
import sys
from datetime import datetime, timezone
from typing import Dict, List, Tuple

import sqlalchemy as sa

import config
from common.database import create_database
from common.job_queue import MediaJobQueue
from common.redis_client import RedisClient

SERVICE_NAME = "media-worker"


def check_binary(path: str, name: str) -> Tuple[bool, str]:
    """
    Check if an ffmpeg-family binary is available and functional.

    Returns:
        Tuple of (success: bool, error_message: str)
    """
    try:
        result = subprocess.run([path, "-version"], capture_output=True, timeout=5, text=True)
        if result.returncode != 0:
            return False, f"{name} returned non-zero exit code: {result.returncode}"

        # Check if output contains expected version string
        if f"{name} version" not in result.stdout.lower():
            return False, f"{name} output doesn't contain version info"

        return True, ""
    except FileNotFoundError:
        return False, f"{name} not found at {path}"
    except subprocess.TimeoutExpired:
        return False, f"{name} version check timed out"
    except OSError as e:
        return False, f"{name} check failed: {e}"


async def run_health_check(check_binaries: bool = True) -> Tuple[Dict, List[str]]:
    """
    Run all checks.

    Returns:
        (result document, list of "component:message" failures)
    """
    result = {
        "service": SERVICE_NAME,
        "status": "ok",
        "redis": "ok",
        "queue": "ok",
        "db": "ok",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    failures: List[str] = []

    def fail(component: str, message: str) -> None:
        result[component] = "error"
        failures.append(f"{component}:{message}")

    redis = RedisClient(
        config.REDIS_URL,
        pool_size=2,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=config.REDIS_SOCKET_CONNECT_TIMEOUT,
    )
    try:
        try:
            await redis.connect()
        except Exception as e:
            fail("redis", str(e) or e.__class__.__name__)
            fail("queue", "redis unavailable")
        else:
            try:
                queue = MediaJobQueue(redis.client, config.QUEUE_NAME)
                result["counts"] = await queue.stats()
            except Exception as e:
                fail("queue", str(e) or e.__class__.__name__)
    finally:
        await redis.close()

    database = create_database(config.DATABASE_URL)
    try:
        await database.connect()
        await database.fetch_val(sa.text("SELECT 1"))
    except Exception as e:
        fail("db", str(e) or e.__class__.__name__)
    finally:
        if database.is_connected:
            await database.disconnect()

    if check_binaries:
        for component, path, name in (
            ("ffmpeg", config.FFMPEG_PATH, "ffmpeg"),
            ("ffprobe", config.FFPROBE_PATH, "ffprobe"),
        ):
            result[component] = "ok"
            ok, error = check_binary(path, name)
            if not ok:
                fail(component, error)

    if failures:
        result["status"] = "error"
    return result, failures


async def main() -> int:
    """
    Returns:
        Exit code: 0 for healthy, 1 for unhealthy
    """
    try:
        config.validate_config()
    except config.ConfigError as e:
        print(json.dumps({"service": SERVICE_NAME, "status": "error", "config": "error"}))
        print(f"health-check failures: config:{e}", file=sys.stderr)
        return 1

    result, failures = await run_health_check()
    print(json.dumps(result))
    if failures:
        print(f"health-check failures: {','.join(failures)}", file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    try:
        exit_code = asyncio.run(main())
        sys.exit(exit_code)
    except KeyboardInterrupt:
        print("\nHealth check interrupted", file=sys.stderr)
        sys.exit(1)
    except Exception as e:
        print(f"ERROR: Health check failed with exception: {e}", file=sys.stderr)
        sys.exit(1)
