#!/usr/bin/env python3
"""
Media transcode worker process.

Runs N worker slots (MEDIA_WORKER_CONCURRENCY) that each claim one job at a
time from the queue, plus a maintenance task that promotes delayed retries.
SIGTERM/SIGINT stop claiming; jobs already in hand run to completion before
the connections are closed.

    python -m worker.media_worker [--concurrency N] [--with-monitor]
"""

import argparse
import asyncio
import contextlib
import logging
import signal
import socket
import sys
import uuid
from typing import List, Optional

from redis.exceptions import RedisError

import config
from common.job_queue import MediaJobQueue, QueuedJob
from common.logs import configure_logging, log_event
from worker.context import WorkerContext, create_context
from worker.queue_monitor import run_monitor
from worker.transcoder import process_job

logger = logging.getLogger(__name__)

COMPONENT = "worker"

# Seconds between delayed-retry promotions
MAINTENANCE_INTERVAL = 1.0
# Seconds to back off after a Redis error in a worker slot
CLAIM_ERROR_DELAY = 2.0
# Upper bound for a single blocking claim, so shutdown is noticed promptly
CLAIM_BLOCK_MS = 2000


class WorkerState:
    """Shutdown flag and counters shared by the slots of one process."""

    def __init__(self) -> None:
        self.worker_id = f"{socket.gethostname()}-{uuid.uuid4().hex[:8]}"
        self.shutdown_requested = False
        self.jobs_processed = 0
        self.jobs_failed = 0
        self.active_jobs = 0

    def request_shutdown(self) -> None:
        self.shutdown_requested = True

    def consumer_name(self, slot: int) -> str:
        return f"{self.worker_id}-{slot}"


def install_signal_handlers(state: WorkerState) -> None:
    def signal_handler(sig, frame):
        """Handle shutdown signals gracefully."""
        logger.info(f"{signal.Signals(sig).name} received, finishing current jobs and shutting down gracefully...")
        state.request_shutdown()

    signal.signal(signal.SIGTERM, signal_handler)
    signal.signal(signal.SIGINT, signal_handler)


async def keep_alive(queue: MediaJobQueue, job: QueuedJob) -> None:
    """Refresh a running job's pending entry so stalled recovery leaves it alone."""
    while True:
        await asyncio.sleep(queue.heartbeat_interval)
        try:
            if not await queue.heartbeat(job):
                logger.warning(f"Job {job.job_id} is no longer pending for {job.consumer}, stopping heartbeat")
                return
        except RedisError as e:
            logger.warning(f"Heartbeat for job {job.job_id} failed: {e}")


async def handle_job(ctx: WorkerContext, state: WorkerState, job: QueuedJob) -> bool:
    """
    Run one delivered job and report the outcome to the queue.

    Returns:
        True if the job succeeded (or was skipped as already done)
    """
    state.active_jobs += 1
    heartbeat = asyncio.create_task(keep_alive(ctx.queue, job), name=f"heartbeat-{job.job_id}")
    try:
        result = await process_job(ctx, job.payload, delivery=job.attempts_made + 1, job_id=job.job_id)
    except Exception as e:
        state.jobs_failed += 1
        try:
            await ctx.queue.fail(job, e)
        except Exception:
            # The entry stays pending and is redelivered by stalled recovery
            logger.exception(f"Failed to report failure of job {job.job_id} to the queue")
        return False
    finally:
        heartbeat.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await heartbeat
        state.active_jobs -= 1

    state.jobs_processed += 1
    try:
        await ctx.queue.complete(job, result)
    except Exception:
        logger.exception(f"Failed to acknowledge job {job.job_id}")
    return True


async def run_slot(ctx: WorkerContext, state: WorkerState, slot: int) -> None:
    """Claim and process jobs one at a time until shutdown."""
    consumer = state.consumer_name(slot)
    while not state.shutdown_requested:
        try:
            job = await ctx.queue.claim(consumer, block_ms=min(ctx.queue.block_ms, CLAIM_BLOCK_MS))
        except RedisError as e:
            logger.warning(f"Queue claim failed in slot {slot}: {e}")
            await asyncio.sleep(CLAIM_ERROR_DELAY)
            continue
        if job is None:
            continue
        await handle_job(ctx, state, job)


async def run_maintenance(ctx: WorkerContext, state: WorkerState, interval: float = MAINTENANCE_INTERVAL) -> None:
    """Promote delayed retries whose time has come."""
    while not state.shutdown_requested:
        try:
            promoted = await ctx.queue.promote_delayed()
            if promoted:
                logger.info(f"Promoted {promoted} delayed job(s)")
        except RedisError as e:
            logger.warning(f"Delayed job promotion failed: {e}")
        await asyncio.sleep(interval)


async def worker_loop(
    ctx: WorkerContext,
    state: WorkerState,
    concurrency: int,
    with_monitor: bool = False,
) -> None:
    """Run the worker slots and background tasks until every one has stopped."""
    tasks: List[asyncio.Task] = [
        asyncio.create_task(run_slot(ctx, state, slot), name=f"slot-{slot}") for slot in range(concurrency)
    ]
    tasks.append(asyncio.create_task(run_maintenance(ctx, state), name="maintenance"))
    if with_monitor:
        tasks.append(
            asyncio.create_task(run_monitor(ctx.queue, lambda: state.shutdown_requested), name="queue-monitor")
        )

    log_event(
        COMPONENT,
        "Worker started",
        workerId=state.worker_id,
        queue=ctx.queue.name,
        concurrency=concurrency,
        monitor=with_monitor,
    )
    results = await asyncio.gather(*tasks, return_exceptions=True)
    for task, result in zip(tasks, results):
        if isinstance(result, Exception):
            logger.error(f"Task {task.get_name()} crashed: {result!r}")


async def run_worker(concurrency: int, with_monitor: bool, state: Optional[WorkerState] = None) -> int:
    state = state or WorkerState()
    install_signal_handlers(state)

    ctx = await create_context(with_queue=True)
    try:
        await worker_loop(ctx, state, concurrency, with_monitor=with_monitor)
    finally:
        await ctx.close()
        log_event(
            COMPONENT,
            "Worker stopped",
            workerId=state.worker_id,
            jobsProcessed=state.jobs_processed,
            jobsFailed=state.jobs_failed,
        )
    return 0


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Media transcode worker")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=config.WORKER_CONCURRENCY,
        help=f"Number of jobs processed in parallel (default: {config.WORKER_CONCURRENCY})",
    )
    parser.add_argument(
        "--with-monitor",
        action="store_true",
        help="Also log queue lifecycle events from this process",
    )
    args = parser.parse_args(argv)
    if args.concurrency < 1:
        parser.error("--concurrency must be at least 1")
    return args


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    configure_logging(config.LOG_LEVEL)
    try:
        config.validate_config()
    except config.ConfigError as e:
        logger.error(f"Invalid configuration: {e}")
        sys.exit(1)
    sys.exit(asyncio.run(run_worker(args.concurrency, args.with_monitor)))


if __name__ == "__main__":
    main()
