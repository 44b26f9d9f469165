"""
Durable transcode job queue on Redis Streams.

Layout for a queue named ``q``:

- ``q:wait``     stream of deliverable jobs, read through consumer group ``q:workers``
- ``q:delayed``  sorted set of jobs waiting for their retry time (score = due epoch ms)
- ``q:dead``     stream of permanently failed jobs (bounded)
- ``q:events``   stream of lifecycle events read by the queue monitor (bounded)

Delivery is at-least-once. A job read by a worker stays in the group's pending
list until the worker acks it. While the job runs, the worker refreshes the
entry with ``heartbeat()``; if the worker dies the entry goes idle and another
consumer claims it after ``stalled_timeout_ms``. Every stall counts as a failed
delivery, so a job that keeps killing its worker still reaches the dead letter
stream.

Two counters travel with every job:

- ``attempt``: the domain attempt, chosen by whoever enqueued the job. It names
  the transcode_jobs row and is never changed by the queue.
- ``attemptsMade``: how many deliveries of this envelope have failed. It drives
  the backoff delay and the attempt ceiling and starts at 0 on every enqueue.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from pydantic import ValidationError
from redis.asyncio import Redis
from redis.exceptions import ResponseError

from common.enums import QueueEvent
from common.errors import describe_error, is_permanent_error, truncate_error
from common.schemas import JobPayload

logger = logging.getLogger(__name__)

# Maximum length of error text stored in dead letter entries and events
QUEUE_ERROR_MAX_LENGTH = 500

# Heartbeats per stalled timeout window
HEARTBEATS_PER_STALL_WINDOW = 3

# Moves due members of the delayed set (KEYS[1]) to the wait stream (KEYS[2])
# in one step. ARGV[1] = now (epoch ms), ARGV[2] = batch size.
PROMOTE_DELAYED_SCRIPT = """
local due = redis.call('ZRANGEBYSCORE', KEYS[1], '-inf', ARGV[1], 'LIMIT', 0, tonumber(ARGV[2]))
local promoted = {}
for _, member in ipairs(due) do
    if redis.call('ZREM', KEYS[1], member) == 1 then
        local data = cjson.decode(member)
        local fields = {}
        for k, v in pairs(data) do
            if k ~= 'lastError' then
                table.insert(fields, k)
                table.insert(fields, tostring(v))
            end
        end
        redis.call('XADD', KEYS[2], '*', unpack(fields))
        table.insert(promoted, data['jobId'] or '')
    end
end
return promoted
"""


def calculate_backoff(attempts_made: int, base_ms: int) -> int:
    """
    Delay before the next delivery, in milliseconds.

    ``base`` after the first failure, then doubling: base, 2*base, 4*base...
    """
    if attempts_made <= 1:
        return base_ms
    return base_ms * (2 ** (attempts_made - 1))


def now_ms() -> int:
    return int(time.time() * 1000)


def make_job_id(queue_name: str, media_asset_id: str, attempt: int) -> str:
    return f"{queue_name}:{media_asset_id}:{attempt}"


@dataclass
class QueuedJob:
    """A job delivered to this consumer."""

    payload: JobPayload
    job_id: str
    attempts_made: int = 0
    enqueued_at: Optional[str] = None
    stalled: bool = False
    # Consumer that currently holds the pending entry
    consumer: Optional[str] = None
    # Internal: Redis message ID for acknowledgment
    _message_id: Optional[str] = field(default=None, repr=False)

    @property
    def media_asset_id(self) -> Optional[str]:
        return self.payload.media_asset_id

    @property
    def attempt(self) -> int:
        return self.payload.attempt

    def to_stream_dict(self) -> Dict[str, str]:
        """Convert to Redis stream message format (all string values)."""
        return {
            "mediaAssetId": self.payload.media_asset_id or "",
            "attempt": str(self.payload.attempt),
            "attemptsMade": str(self.attempts_made),
            "jobId": self.job_id,
            "enqueuedAt": self.enqueued_at or datetime.now(timezone.utc).isoformat(),
        }

    @classmethod
    def from_stream_dict(cls, data: dict, message_id: Optional[str] = None) -> "QueuedJob":
        """
        Create from a Redis stream message.

        Raises:
            ValidationError: If ``attempt`` is not a positive integer
            ValueError: If ``attemptsMade`` is not an integer
        """
        payload = JobPayload.model_validate(
            {"mediaAssetId": data.get("mediaAssetId"), "attempt": data.get("attempt") or 1}
        )
        job = cls(
            payload=payload,
            job_id=data.get("jobId") or f"{payload.media_asset_id}:{payload.attempt}",
            attempts_made=int(data.get("attemptsMade") or 0),
            enqueued_at=data.get("enqueuedAt") or None,
        )
        job._message_id = message_id
        return job


class MediaJobQueue:
    """Producer and consumer side of the transcode queue."""

    def __init__(
        self,
        redis: Redis,
        name: str,
        backoff_ms: int = 30000,
        max_attempts: int = 3,
        block_ms: int = 5000,
        stalled_timeout_ms: int = 600000,
        dead_letter_max_len: int = 10000,
        events_max_len: int = 10000,
    ) -> None:
        self.redis = redis
        self.name = name
        self.backoff_ms = backoff_ms
        self.max_attempts = max_attempts
        self.block_ms = block_ms
        self.stalled_timeout_ms = stalled_timeout_ms
        self.dead_letter_max_len = dead_letter_max_len
        self.events_max_len = events_max_len

        self.wait_stream = f"{name}:wait"
        self.group = f"{name}:workers"
        self.delayed_key = f"{name}:delayed"
        self.dead_stream = f"{name}:dead"
        self.events_stream = f"{name}:events"

    @property
    def heartbeat_interval(self) -> float:
        """Seconds between heartbeats of a running job."""
        return self.stalled_timeout_ms / HEARTBEATS_PER_STALL_WINDOW / 1000

    async def ensure_group(self) -> None:
        """Create the consumer group (and the wait stream) if missing."""
        try:
            await self.redis.xgroup_create(self.wait_stream, self.group, id="0", mkstream=True)
            logger.info(f"Created consumer group {self.group}")
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise
            # Group already exists, that's fine

    async def emit(self, event: QueueEvent, job: Optional[QueuedJob] = None, **fields) -> None:
        """Append a lifecycle event for the queue monitor. Never raises."""
        entry = {"event": event.value, "timestamp": datetime.now(timezone.utc).isoformat()}
        if job is not None:
            entry.update(
                {
                    "jobId": job.job_id,
                    "mediaAssetId": job.media_asset_id or "",
                    "attempt": str(job.attempt),
                    "attemptsMade": str(job.attempts_made),
                }
            )
        entry.update({k: str(v) for k, v in fields.items() if v is not None})
        try:
            await self.redis.xadd(
                self.events_stream, entry, maxlen=self.events_max_len, approximate=True
            )
        except Exception as e:
            logger.warning(f"Failed to publish queue event {event.value}: {e}")

    # ------------------------------------------------------------------
    # Producer side
    # ------------------------------------------------------------------

    async def enqueue(self, payload: JobPayload) -> QueuedJob:
        """
        Publish a fresh job with ``attemptsMade = 0``.

        Returns:
            The published job (without a message id)
        """
        job = QueuedJob(
            payload=payload,
            job_id=make_job_id(self.name, payload.media_asset_id or "", payload.attempt),
            attempts_made=0,
            enqueued_at=datetime.now(timezone.utc).isoformat(),
        )
        await self.ensure_group()
        message_id = await self.redis.xadd(self.wait_stream, job.to_stream_dict())
        job._message_id = message_id
        logger.debug(f"Published job {job.job_id} to {self.wait_stream}")
        await self.emit(QueueEvent.WAITING, job)
        return job

    # ------------------------------------------------------------------
    # Consumer side
    # ------------------------------------------------------------------

    async def claim(self, consumer_name: str, block_ms: Optional[int] = None) -> Optional[QueuedJob]:
        """
        Take one job for ``consumer_name``.

        Stalled entries (idle past the timeout in another consumer's pending
        list) are reclaimed first, then new entries are read, blocking up to
        ``block_ms``.

        Returns:
            QueuedJob if a job was claimed, None if no jobs available
        """
        recovered = await self._recover_stalled(consumer_name)
        if recovered is not None:
            return recovered

        messages = await self.redis.xreadgroup(
            self.group,
            consumer_name,
            {self.wait_stream: ">"},
            count=1,
            block=self.block_ms if block_ms is None else block_ms,
        )
        if not messages:
            return None

        # messages format: [[stream_name, [(message_id, data), ...]]]
        _stream, msg_list = messages[0]
        if not msg_list:
            return None
        message_id, data = msg_list[0]
        job = await self._parse(message_id, data)
        if job is not None:
            job.consumer = consumer_name
            await self.emit(QueueEvent.ACTIVE, job, consumer=consumer_name)
        return job

    async def heartbeat(self, job: QueuedJob) -> bool:
        """
        Reset the idle time of a job this consumer is still working on.

        XCLAIM with JUSTID leaves the delivery counter alone, so heartbeats
        never count as stalls.

        Returns:
            False if the entry is no longer pending (acked or deleted)
        """
        claimed = await self.redis.xclaim(
            self.wait_stream,
            self.group,
            job.consumer,
            0,
            [job._message_id],
            justid=True,
        )
        return bool(claimed)

    async def _stall_count(self, message_id: str) -> int:
        """Deliveries of a pending entry that ended in a stall."""
        pending = await self.redis.xpending_range(
            self.wait_stream, self.group, min=message_id, max=message_id, count=1
        )
        if not pending:
            return 1
        # XAUTOCLAIM already counted the current delivery
        return max(int(pending[0]["times_delivered"]) - 1, 1)

    async def _recover_stalled(self, consumer_name: str) -> Optional[QueuedJob]:
        """
        Claim one entry abandoned by a crashed consumer.

        Each stall is a failed delivery. An entry that reaches ``max_attempts``
        this way goes to the dead letter stream instead of being handed out again.
        """
        result = await self.redis.xautoclaim(
            self.wait_stream,
            self.group,
            consumer_name,
            min_idle_time=self.stalled_timeout_ms,
            start_id="0-0",
            count=1,
        )
        # [next_start_id, [(message_id, data), ...], (deleted ids on Redis 7+)]
        claimed = result[1] if result and len(result) > 1 else []
        for message_id, data in claimed:
            if not data:
                # Entry was deleted from the stream while pending
                await self.redis.xack(self.wait_stream, self.group, message_id)
                continue
            job = await self._parse(message_id, data)
            if job is None:
                continue
            job.stalled = True
            job.consumer = consumer_name
            stalls = await self._stall_count(message_id)
            job.attempts_made += stalls
            logger.warning(
                f"Recovered stalled job {job.job_id} (idle > {self.stalled_timeout_ms}ms, "
                f"delivery {job.attempts_made}/{self.max_attempts})"
            )
            await self.emit(QueueEvent.STALLED, job, consumer=consumer_name)
            if job.attempts_made >= self.max_attempts:
                error_text = f"Job stalled {stalls} time(s) and used up its {self.max_attempts} attempts"
                await self._dead_letter(job, error_text, permanent=False)
                continue
            return job
        return None

    async def _parse(self, message_id: str, data: dict) -> Optional[QueuedJob]:
        """Decode an entry; undecodable entries go straight to the dead letter stream."""
        try:
            return QueuedJob.from_stream_dict(data, message_id=message_id)
        except (ValidationError, ValueError) as e:
            error = truncate_error(f"Malformed job message: {e}", QUEUE_ERROR_MAX_LENGTH)
            logger.error(f"Dropping malformed message {message_id}: {error}")
            dead = dict(data)
            dead.update(
                {"error": error, "failedAt": datetime.now(timezone.utc).isoformat(), "permanent": "1"}
            )
            async with self.redis.pipeline(transaction=True) as pipe:
                pipe.xadd(self.dead_stream, dead, maxlen=self.dead_letter_max_len, approximate=True)
                pipe.xack(self.wait_stream, self.group, message_id)
                pipe.xdel(self.wait_stream, message_id)
                await pipe.execute()
            await self.emit(QueueEvent.FAILED, None, messageId=message_id, error=error, final="true")
            return None

    async def complete(self, job: QueuedJob, result: Optional[dict] = None) -> None:
        """Acknowledge a successfully handled job."""
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xack(self.wait_stream, self.group, job._message_id)
            pipe.xdel(self.wait_stream, job._message_id)
            await pipe.execute()
        logger.debug(f"Acknowledged job {job.job_id}")
        await self.emit(
            QueueEvent.COMPLETED,
            job,
            result=json.dumps(result, default=str) if result is not None else None,
        )

    async def fail(self, job: QueuedJob, error: BaseException) -> str:
        """
        Record a failed delivery and decide what happens next.

        Permanent errors and jobs that reached ``max_attempts`` go to the dead
        letter stream; anything else is rescheduled after the backoff delay.
        The original entry is acknowledged in the same transaction.

        Returns:
            "dead" or "retrying"
        """
        job.attempts_made += 1
        error_text = truncate_error(describe_error(error), QUEUE_ERROR_MAX_LENGTH)
        permanent = is_permanent_error(error)

        if permanent or job.attempts_made >= self.max_attempts:
            await self._dead_letter(job, error_text, permanent)
            return "dead"

        delay_ms = calculate_backoff(job.attempts_made, self.backoff_ms)
        retry = job.to_stream_dict()
        retry["lastError"] = error_text
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(self.delayed_key, {json.dumps(retry, sort_keys=True): now_ms() + delay_ms})
            pipe.xack(self.wait_stream, self.group, job._message_id)
            pipe.xdel(self.wait_stream, job._message_id)
            await pipe.execute()
        logger.info(
            f"Job {job.job_id} failed (delivery {job.attempts_made}/{self.max_attempts}), "
            f"retrying in {delay_ms}ms"
        )
        await self.emit(QueueEvent.RETRYING, job, error=error_text, delayMs=delay_ms)
        return "retrying"

    async def _dead_letter(self, job: QueuedJob, error_text: str, permanent: bool) -> None:
        """Move a job to the dead letter stream and ack its entry, in one transaction."""
        dead = job.to_stream_dict()
        dead.update(
            {
                "error": error_text,
                "failedAt": datetime.now(timezone.utc).isoformat(),
                "permanent": "1" if permanent else "0",
            }
        )
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.xadd(self.dead_stream, dead, maxlen=self.dead_letter_max_len, approximate=True)
            pipe.xack(self.wait_stream, self.group, job._message_id)
            pipe.xdel(self.wait_stream, job._message_id)
            results = await pipe.execute()
        logger.info(f"Job {job.job_id} moved to dead letter queue: {error_text[:100]}")
        await self.emit(
            QueueEvent.FAILED,
            job,
            error=error_text,
            final="true",
            permanent="true" if permanent else "false",
        )
        await self.emit(
            QueueEvent.DEAD,
            job,
            error=error_text,
            deadId=results[0] if results else None,
        )

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def promote_delayed(self, limit: int = 100) -> int:
        """
        Move delayed jobs whose retry time has come back to the wait stream.

        Runs as one server-side script, so a job is never removed from the
        delayed set without landing in the wait stream.

        Returns:
            Number of jobs promoted by this caller
        """
        promoted = await self.redis.eval(
            PROMOTE_DELAYED_SCRIPT, 2, self.delayed_key, self.wait_stream, now_ms(), limit
        )
        for job_id in promoted or []:
            logger.debug(f"Promoted delayed job {job_id}")
        return len(promoted or [])

    async def stats(self) -> Dict[str, int]:
        """
        Queue counts.

        Returns:
            Dict with waiting, active (delivered but not acked), delayed and dead counts
        """
        length = await self.redis.xlen(self.wait_stream)
        try:
            pending_info = await self.redis.xpending(self.wait_stream, self.group)
            active = pending_info.get("pending", 0) if pending_info else 0
        except ResponseError:
            # No consumer group yet
            active = 0
        return {
            "waiting": max(length - active, 0),
            "active": active,
            "delayed": await self.redis.zcard(self.delayed_key),
            "dead": await self.redis.xlen(self.dead_stream),
        }

    async def drain(self) -> Dict[str, int]:
        """
        Remove waiting and delayed jobs. Jobs in progress are left alone.

        Returns:
            Dict with the number of waiting and delayed jobs removed
        """
        pending_ids = set()
        try:
            pending = await self.redis.xpending_range(
                self.wait_stream, self.group, min="-", max="+", count=100000
            )
            pending_ids = {p["message_id"] for p in pending}
        except ResponseError:
            # No consumer group yet
            pass

        entries: List[Tuple[str, dict]] = await self.redis.xrange(self.wait_stream)
        waiting_ids = [message_id for message_id, _ in entries if message_id not in pending_ids]
        if waiting_ids:
            await self.redis.xdel(self.wait_stream, *waiting_ids)

        delayed = await self.redis.zcard(self.delayed_key)
        await self.redis.delete(self.delayed_key)

        logger.info(f"Drained {len(waiting_ids)} waiting and {delayed} delayed jobs from {self.name}")
        return {"waiting": len(waiting_ids), "delayed": delayed}

    async def read_events(
        self, last_id: str = "$", count: int = 100, block_ms: Optional[int] = None
    ) -> List[Tuple[str, dict]]:
        """Read lifecycle events after ``last_id`` (blocking up to ``block_ms``)."""
        response = await self.redis.xread(
            {self.events_stream: last_id},
            count=count,
            block=self.block_ms if block_ms is None else block_ms,
        )
        if not response:
            return []
        _stream, entries = response[0]
        return list(entries)
