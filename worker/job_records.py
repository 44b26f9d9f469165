"""
Record store transitions for media assets and their transcode attempts.

Each multi-field transition runs inside one transaction so readers never see
an asset marked ready without its output keys, or a job marked processing
without its start time. On PostgreSQL the asset row is locked with
SELECT ... FOR UPDATE for the duration of the transition; SQLite serializes
writers on its own.
"""

import json
import logging
from typing import Any, Dict, Optional

import sqlalchemy as sa
from databases import Database

from common.database import is_postgresql, media_assets, transcode_jobs, utcnow
from common.db_retry import run_transaction
from common.enums import MediaStatus, TranscodeJobStatus
from worker.probe import MediaMetadata

logger = logging.getLogger(__name__)


def dump_logs(payload: Optional[Dict[str, Any]]) -> Optional[str]:
    if payload is None:
        return None
    return json.dumps(payload, default=str)


def load_logs(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return {"raw": raw}


async def get_asset(database: Database, media_asset_id: str) -> Optional[dict]:
    row = await run_transaction(
        database,
        database.fetch_one,
        media_assets.select().where(media_assets.c.id == media_asset_id),
        name="asset lookup",
    )
    return dict(row) if row else None


async def get_job(database: Database, media_asset_id: str, attempt: int) -> Optional[dict]:
    row = await database.fetch_one(
        transcode_jobs.select().where(
            (transcode_jobs.c.media_asset_id == media_asset_id) & (transcode_jobs.c.attempt == attempt)
        )
    )
    return dict(row) if row else None


def is_ready(asset: dict) -> bool:
    return asset["status"] == MediaStatus.READY.value and bool(asset["output_key"])


async def _lock_asset(database: Database, media_asset_id: str) -> Optional[dict]:
    query = sa.select(media_assets).where(media_assets.c.id == media_asset_id)
    if is_postgresql(database):
        query = query.with_for_update()
    row = await database.fetch_one(query)
    return dict(row) if row else None


async def mark_existing_job_done(database: Database, media_asset_id: str, attempt: int) -> bool:
    """
    Close out the job row of a redelivered job whose asset is already ready.

    Only the job row is touched; the asset keeps its committed values.

    Returns:
        True if a row was moved to done
    """

    async def do_update() -> bool:
        job = await get_job(database, media_asset_id, attempt)
        if job is None or job["status"] == TranscodeJobStatus.DONE.value:
            return False
        now = utcnow()
        await database.execute(
            transcode_jobs.update()
            .where(transcode_jobs.c.id == job["id"])
            .values(
                status=TranscodeJobStatus.DONE.value,
                finished_at=job["finished_at"] or now,
                updated_at=now,
            )
        )
        return True

    return await run_transaction(database, do_update, name="skip bookkeeping")


async def claim_job(
    database: Database,
    media_asset_id: str,
    attempt: int,
    delivery: int = 1,
) -> Optional[int]:
    """
    Move the asset to processing and upsert the (asset, attempt) job row.

    The asset's status is re-read under lock: if another delivery finished the
    asset in the meantime, nothing is written.

    Args:
        database: Connected record store
        media_asset_id: Asset to process
        attempt: Domain attempt number (job row identity)
        delivery: Queue delivery number of this attempt, kept in the row's logs

    Returns:
        The job row id, or None if the asset became ready concurrently
    """

    async def do_claim() -> Optional[int]:
        asset = await _lock_asset(database, media_asset_id)
        if asset is None or is_ready(asset):
            return None

        now = utcnow()
        logs = dump_logs({"delivery": delivery})
        job = await get_job(database, media_asset_id, attempt)
        if job is None:
            job_id = await database.execute(
                transcode_jobs.insert().values(
                    media_asset_id=media_asset_id,
                    attempt=attempt,
                    status=TranscodeJobStatus.PROCESSING.value,
                    started_at=now,
                    finished_at=None,
                    logs=logs,
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            job_id = job["id"]
            await database.execute(
                transcode_jobs.update()
                .where(transcode_jobs.c.id == job_id)
                .values(
                    status=TranscodeJobStatus.PROCESSING.value,
                    started_at=now,
                    finished_at=None,
                    logs=logs,
                    updated_at=now,
                )
            )

        await database.execute(
            media_assets.update()
            .where(media_assets.c.id == media_asset_id)
            .values(status=MediaStatus.PROCESSING.value, error_message=None, updated_at=now)
        )
        return job_id

    return await run_transaction(database, do_claim, name="job claim")


async def commit_success(
    database: Database,
    media_asset_id: str,
    job_id: int,
    metadata: MediaMetadata,
    output_key: str,
    poster_key: str,
    logs: Dict[str, Any],
) -> None:
    """Asset -> ready with derived fields, job -> done, in one transaction."""

    async def do_commit() -> None:
        await _lock_asset(database, media_asset_id)
        now = utcnow()
        await database.execute(
            media_assets.update()
            .where(media_assets.c.id == media_asset_id)
            .values(
                status=MediaStatus.READY.value,
                output_key=output_key,
                poster_key=poster_key,
                duration_sec=metadata.duration_sec,
                width=metadata.width,
                height=metadata.height,
                codec=metadata.video_codec,
                bitrate=int(round(metadata.bitrate_kbps)) if metadata.bitrate_kbps else None,
                error_message=None,
                updated_at=now,
            )
        )
        await database.execute(
            transcode_jobs.update()
            .where(transcode_jobs.c.id == job_id)
            .values(
                status=TranscodeJobStatus.DONE.value,
                finished_at=now,
                logs=dump_logs(logs),
                updated_at=now,
            )
        )

    await run_transaction(database, do_commit, name="success commit")


async def record_failure(
    database: Database,
    media_asset_id: str,
    attempt: int,
    error_message: str,
    logs: Dict[str, Any],
) -> None:
    """
    Job -> failed and asset -> failed with the same (already truncated) text.

    A ready asset is never downgraded: if a concurrent delivery committed the
    asset, only the job row records this failure.
    """

    async def do_record() -> None:
        asset = await _lock_asset(database, media_asset_id)
        now = utcnow()
        job = await get_job(database, media_asset_id, attempt)
        if job is None:
            await database.execute(
                transcode_jobs.insert().values(
                    media_asset_id=media_asset_id,
                    attempt=attempt,
                    status=TranscodeJobStatus.FAILED.value,
                    finished_at=now,
                    logs=dump_logs(logs),
                    created_at=now,
                    updated_at=now,
                )
            )
        else:
            await database.execute(
                transcode_jobs.update()
                .where(transcode_jobs.c.id == job["id"])
                .values(
                    status=TranscodeJobStatus.FAILED.value,
                    finished_at=now,
                    logs=dump_logs(logs),
                    updated_at=now,
                )
            )

        if asset is not None and not is_ready(asset):
            await database.execute(
                media_assets.update()
                .where(media_assets.c.id == media_asset_id)
                .values(status=MediaStatus.FAILED.value, error_message=error_message, updated_at=now)
            )

    await run_transaction(database, do_record, name="failure bookkeeping")



async def next_attempt(database: Database, media_asset_id: str) -> int:
    """Attempt number for a fresh enqueue: highest existing attempt + 1."""
    latest = await database.fetch_val(
        sa.select(sa.func.max(transcode_jobs.c.attempt)).where(transcode_jobs.c.media_asset_id == media_asset_id)
    )
    return (latest or 0) + 1


async def create_queued_job(database: Database, media_asset_id: str, attempt: int) -> int:
    """Insert the queued job row for a new enqueue. Returns its id."""
    now = utcnow()
    return await database.execute(
        transcode_jobs.insert().values(
            media_asset_id=media_asset_id,
            attempt=attempt,
            status=TranscodeJobStatus.QUEUED.value,
            created_at=now,
            updated_at=now,
        )
    )
