#!/usr/bin/env python3
"""
Queue monitor: turns the queue's lifecycle event stream into structured logs.

Passive observer only. It never acks, retries or modifies jobs. Runs inside
the worker process (``--with-monitor``) or standalone:

    python -m worker.queue_monitor
"""

import asyncio
import json
import logging
import signal
import sys
from typing import Callable, Dict, Optional, Tuple

from redis.exceptions import RedisError

import config
from common.enums import QueueEvent
from common.job_queue import MediaJobQueue
from common.logs import configure_logging, log_event
from common.redis_client import RedisClient

logger = logging.getLogger(__name__)

COMPONENT = "queue"

# Seconds to wait after a Redis error before reading again
ERROR_RETRY_DELAY = 1.0

EVENT_LOG: Dict[str, Tuple[str, str]] = {
    QueueEvent.WAITING.value: ("info", "Job waiting"),
    QueueEvent.ACTIVE.value: ("info", "Job active"),
    QueueEvent.COMPLETED.value: ("info", "Job completed"),
    QueueEvent.RETRYING.value: ("warning", "Job failed, retry scheduled"),
    QueueEvent.FAILED.value: ("error", "Job failed"),
    QueueEvent.STALLED.value: ("warning", "Job stalled"),
    QueueEvent.DEAD.value: ("error", "Job moved to dead letter stream"),
}


def handle_event(queue_name: str, entry_id: str, fields: dict) -> Optional[str]:
    """
    Log one lifecycle event.

    Returns:
        The event name, or None for entries without a known event
    """
    event = fields.get("event")
    if event not in EVENT_LOG:
        logger.debug(f"Ignoring unknown queue event {entry_id}: {fields}")
        return None

    level, message = EVENT_LOG[event]
    extra = {
        "queue": queue_name,
        "eventId": entry_id,
        "jobId": fields.get("jobId"),
        "mediaAssetId": fields.get("mediaAssetId") or None,
        "attempt": fields.get("attempt"),
        "attemptsMade": fields.get("attemptsMade"),
    }
    if event == QueueEvent.COMPLETED.value and fields.get("result"):
        try:
            extra["returnvalue"] = json.loads(fields["result"])
        except json.JSONDecodeError:
            extra["returnvalue"] = fields["result"]
    if event in (QueueEvent.FAILED.value, QueueEvent.RETRYING.value):
        extra["failedReason"] = fields.get("error")
        extra["final"] = fields.get("final") == "true"
        extra["delayMs"] = fields.get("delayMs")
    if event == QueueEvent.DEAD.value:
        extra["failedReason"] = fields.get("error")
        extra["deadId"] = fields.get("deadId")
    if event in (QueueEvent.ACTIVE.value, QueueEvent.STALLED.value):
        extra["consumer"] = fields.get("consumer")

    log_event(COMPONENT, message, level=level, **extra)
    return event


async def run_monitor(
    queue: MediaJobQueue,
    should_stop: Callable[[], bool],
    start_id: str = "$",
    block_ms: int = 1000,
) -> int:
    """
    Follow the event stream until ``should_stop()`` returns True.

    Args:
        queue: Queue whose events are read
        should_stop: Polled between reads
        start_id: Stream id to start after ("$" = only new events)
        block_ms: Maximum time a read blocks, bounding shutdown latency

    Returns:
        Number of events logged
    """
    log_event(COMPONENT, "Queue events listener ready", queue=queue.name)
    last_id = start_id
    handled = 0
    while not should_stop():
        try:
            entries = await queue.read_events(last_id, block_ms=block_ms)
        except RedisError as e:
            log_event(COMPONENT, "Queue events error", level="error", queue=queue.name, error=str(e))
            await asyncio.sleep(ERROR_RETRY_DELAY)
            continue
        for entry_id, fields in entries:
            last_id = entry_id
            if handle_event(queue.name, entry_id, fields):
                handled += 1
    return handled


async def monitor_main() -> int:
    stop = {"requested": False}

    def request_stop(sig, frame):
        logger.info(f"{signal.Signals(sig).name} received, stopping queue monitor")
        stop["requested"] = True

    signal.signal(signal.SIGTERM, request_stop)
    signal.signal(signal.SIGINT, request_stop)

    redis = RedisClient(
        config.REDIS_URL,
        pool_size=2,
        socket_timeout=config.REDIS_SOCKET_TIMEOUT,
        socket_connect_timeout=config.REDIS_SOCKET_CONNECT_TIMEOUT,
    )
    try:
        await redis.connect()
        queue = MediaJobQueue(redis.client, config.QUEUE_NAME, events_max_len=config.QUEUE_EVENTS_MAX_LEN)
        await run_monitor(queue, lambda: stop["requested"])
    finally:
        await redis.close()
    return 0


def main() -> None:
    configure_logging(config.LOG_LEVEL)
    try:
        config.validate_config()
    except config.ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    sys.exit(asyncio.run(monitor_main()))


if __name__ == "__main__":
    main()
