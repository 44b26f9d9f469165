"""
Redis connection for the job queue.

One RedisClient is built per process by the entry point and passed to the
queue, the worker and the monitor. There is no module-level instance: the
owner calls connect() at startup and close() in its teardown path.
"""

import logging
from typing import Optional

from redis.asyncio import ConnectionPool, Redis
from redis.exceptions import ConnectionError as RedisConnectionError

logger = logging.getLogger(__name__)


def redact_url(url: str) -> str:
    """Strip credentials from a connection URL before it is logged."""
    if not url:
        return ""
    scheme, sep, rest = url.partition("://")
    if not sep:
        return url.split("@")[-1]
    return f"{scheme}://{rest.split('@')[-1]}"


class RedisClient:
    """Owns a Redis connection pool for one process."""

    def __init__(
        self,
        url: str,
        pool_size: int = 10,
        socket_timeout: Optional[float] = None,
        socket_connect_timeout: Optional[float] = None,
    ) -> None:
        self.url = url
        self._pool_size = pool_size
        self._socket_timeout = socket_timeout
        self._socket_connect_timeout = socket_connect_timeout
        self._pool: Optional[ConnectionPool] = None
        self._client: Optional[Redis] = None

    async def connect(self) -> Redis:
        """
        Create the pool and verify the server answers.

        Raises:
            RedisError: If the server cannot be reached
        """
        if self._client is not None:
            return self._client

        self._pool = ConnectionPool.from_url(
            self.url,
            max_connections=self._pool_size,
            socket_timeout=self._socket_timeout,
            socket_connect_timeout=self._socket_connect_timeout,
            retry_on_error=[RedisConnectionError],
            decode_responses=True,
        )
        self._client = Redis(connection_pool=self._pool)
        try:
            await self._client.ping()
        except Exception:
            await self.close()
            raise
        logger.info(f"Redis connection established: {redact_url(self.url)}")
        return self._client

    @property
    def client(self) -> Redis:
        if self._client is None:
            raise RuntimeError("RedisClient.connect() has not been called")
        return self._client

    @property
    def is_connected(self) -> bool:
        return self._client is not None

    async def ping(self) -> bool:
        """Return True if the server answers PING."""
        return bool(await self.client.ping())

    async def close(self) -> None:
        """Close the client and its pool. Safe to call more than once."""
        if self._client is not None:
            try:
                await self._client.aclose()
            except Exception as e:
                # Ignore close errors during shutdown
                logger.debug(f"Exception while closing Redis client: {e}")
        if self._pool is not None:
            try:
                await self._pool.disconnect()
            except Exception as e:
                # Ignore disconnect errors during shutdown
                logger.debug(f"Exception while disconnecting Redis pool: {e}")
        self._client = None
        self._pool = None
