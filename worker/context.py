"""
Process-wide dependencies of the worker, built once by the entry point.

Nothing in the pipeline reaches for a global client: the record store, the
Redis connection, the queue and the storage client all travel in a
WorkerContext that the owner closes in its teardown path.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from databases import Database

import config
from common.database import create_database
from common.job_queue import MediaJobQueue
from common.redis_client import RedisClient, redact_url
from common.schemas import VariantConfig
from worker.storage import CachePolicy, MediaStorage, create_s3_client

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TranscodeSettings:
    """Pipeline settings, snapshotted from config at startup."""

    variants: List[VariantConfig] = field(default_factory=lambda: list(config.HLS_VARIANTS))
    playlist_name: str = config.HLS_PLAYLIST_NAME
    segment_duration_sec: float = config.HLS_SEGMENT_DURATION_SEC
    poster_time_fraction: float = config.HLS_POSTER_TIME_FRACTION
    ffmpeg_path: str = config.FFMPEG_PATH
    ffprobe_path: str = config.FFPROBE_PATH
    ffprobe_timeout_sec: float = config.FFPROBE_TIMEOUT_SEC
    poster_timeout_sec: float = config.POSTER_TIMEOUT_SEC
    work_dir: Optional[str] = config.WORK_DIR
    error_message_max_length: int = config.ERROR_MESSAGE_MAX_LENGTH
    error_log_max_length: int = config.ERROR_LOG_MAX_LENGTH


@dataclass
class WorkerContext:
    settings: TranscodeSettings
    database: Database
    storage: MediaStorage
    redis: Optional[RedisClient] = None
    queue: Optional[MediaJobQueue] = None

    async def close(self) -> None:
        """Release every connection. Each step runs even if an earlier one fails."""
        try:
            if self.redis is not None:
                await self.redis.close()
        except Exception as e:
            logger.warning(f"Error closing Redis: {e}")
        try:
            self.storage.close()
        except Exception as e:
            logger.warning(f"Error closing storage client: {e}")
        try:
            if self.database.is_connected:
                await self.database.disconnect()
        except Exception as e:
            logger.warning(f"Error disconnecting database: {e}")


def build_queue(redis: RedisClient) -> MediaJobQueue:
    return MediaJobQueue(
        redis.client,
        config.QUEUE_NAME,
        backoff_ms=config.TRANSCODE_BACKOFF_MS,
        max_attempts=config.TRANSCODE_MAX_ATTEMPTS,
        block_ms=config.QUEUE_BLOCK_MS,
        stalled_timeout_ms=config.QUEUE_STALLED_TIMEOUT_MS,
        dead_letter_max_len=config.QUEUE_DEAD_LETTER_MAX_LEN,
        events_max_len=config.QUEUE_EVENTS_MAX_LEN,
    )


async def create_context(with_queue: bool = True) -> WorkerContext:
    """
    Connect the record store (and Redis, if ``with_queue``) and build the context.

    On failure, whatever was already opened is closed before the error propagates.
    """
    ctx = WorkerContext(
        settings=TranscodeSettings(),
        database=create_database(config.DATABASE_URL),
        storage=MediaStorage(create_s3_client(), cache_policy=CachePolicy()),
    )
    try:
        await ctx.database.connect()
        logger.info(f"Connected to record store: {redact_url(config.DATABASE_URL)}")
        if with_queue:
            ctx.redis = RedisClient(
                config.REDIS_URL,
                pool_size=config.REDIS_POOL_SIZE,
                socket_timeout=config.REDIS_SOCKET_TIMEOUT,
                socket_connect_timeout=config.REDIS_SOCKET_CONNECT_TIMEOUT,
            )
            await ctx.redis.connect()
            ctx.queue = build_queue(ctx.redis)
            await ctx.queue.ensure_group()
    except Exception:
        await ctx.close()
        raise
    return ctx
