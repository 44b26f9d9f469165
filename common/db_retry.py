"""
Rerunning record-store transactions that lost a lock race.

The worker's writes are short transactions on a single asset row (claim,
commit, failure). Under contention they can fail with nothing wrong with the
job itself: PostgreSQL aborts one side of a deadlock or serialization conflict
and SQLite reports the file as busy. ``run_transaction`` reruns the whole
transaction body from the start when that happens. Every other error
propagates untouched.
"""

import asyncio
import logging
import random
import sqlite3
import time
from typing import Any, Awaitable, Callable, TypeVar

import asyncpg
from databases import Database

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Server-side aborts that a rerun resolves
POSTGRES_CONTENTION_ERRORS = (
    asyncpg.exceptions.DeadlockDetectedError,  # 40P01
    asyncpg.exceptions.SerializationError,  # 40001
    asyncpg.exceptions.LockNotAvailableError,  # 55P03
)
# Connection dropped mid-transaction; the pool hands out a fresh one on rerun
CONNECTION_LOST_ERRORS = (
    asyncpg.exceptions.ConnectionDoesNotExistError,
    ConnectionResetError,
)

# Primary result codes (extended codes keep them in the low byte)
SQLITE_BUSY = 5
SQLITE_LOCKED = 6

# Runs per transaction, including the first
TRANSACTION_ATTEMPTS = 5
RETRY_BASE_DELAY = 0.05
RETRY_MAX_DELAY = 1.0

# Transactions slower than this are logged
SLOW_TRANSACTION_THRESHOLD = 1.0


class DatabaseRetryableError(Exception):
    """A transaction kept losing lock races. Transient from the queue's point of view."""

    permanent = False


def _is_sqlite_contention(exc: sqlite3.OperationalError) -> bool:
    code = getattr(exc, "sqlite_errorcode", None)
    if code is not None:
        return code & 0xFF in (SQLITE_BUSY, SQLITE_LOCKED)
    # aiosqlite on older interpreters only carries the message
    message = str(exc).lower()
    return "is locked" in message or "busy" in message


def is_lock_contention(exc: BaseException) -> bool:
    """True if ``exc`` (or an exception it was raised from) is worth a rerun."""
    while exc is not None:
        if isinstance(exc, POSTGRES_CONTENTION_ERRORS + CONNECTION_LOST_ERRORS):
            return True
        if isinstance(exc, sqlite3.OperationalError):
            return _is_sqlite_contention(exc)
        exc = exc.__cause__
    return False


def retry_delay(attempt: int) -> float:
    """Jittered exponential pause after the ``attempt``-th contended run (1-based)."""
    delay = min(RETRY_BASE_DELAY * 2 ** (attempt - 1), RETRY_MAX_DELAY)
    return delay * random.uniform(0.5, 1.0)


async def run_transaction(
    database: Database,
    body: Callable[..., Awaitable[T]],
    *args: Any,
    name: str = "transaction",
    attempts: int = TRANSACTION_ATTEMPTS,
) -> T:
    """
    Run ``body(*args)`` inside one transaction, rerunning it on lock contention.

    A contended run is rolled back before the next one starts, so the body
    always sees a consistent snapshot and must not keep state between runs.

    Args:
        database: Connected record store
        body: Coroutine function issuing the transaction's statements
        name: Label used in log lines
        attempts: Runs before giving up

    Returns:
        Whatever ``body`` returned on the run that committed

    Raises:
        DatabaseRetryableError: If every run hit contention
    """
    for attempt in range(1, attempts + 1):
        started = time.monotonic()
        try:
            async with database.transaction():
                result = await body(*args)
        except Exception as e:
            if not is_lock_contention(e):
                raise
            if attempt == attempts:
                logger.error(f"{name} still contended after {attempts} runs, giving up: {e}")
                raise DatabaseRetryableError(f"{name} failed after {attempts} runs: {e}") from e
            delay = retry_delay(attempt)
            logger.warning(f"{name} hit lock contention (run {attempt}/{attempts}), rerunning in {delay:.2f}s: {e}")
            await asyncio.sleep(delay)
            continue

        elapsed = time.monotonic() - started
        if elapsed >= SLOW_TRANSACTION_THRESHOLD:
            logger.warning(f"Slow {name} ({elapsed:.2f}s)")
        return result

    raise ValueError("attempts must be at least 1")
