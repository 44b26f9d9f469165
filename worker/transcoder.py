"""
Per-job transcode pipeline.

claimed -> downloading -> probing -> transcoding -> posterizing -> uploading
-> committing -> done | failed

process_job() is the queue handler. It is safe to run twice for the same
message: an asset that is already ready short-circuits without touching
storage. Any failure after the claim is persisted (job and asset -> failed)
and the original exception is re-raised so the queue applies its retry
policy.
"""

import logging
import traceback
from typing import Any, Dict, Optional

from common.enums import MediaType, TranscodeStep
from common.errors import PermanentTranscodeError, describe_error, is_permanent_error, truncate_error
from common.logs import log_event
from common.schemas import JobPayload
from worker import job_records
from worker.context import WorkerContext
from worker.hls import transcode_to_hls
from worker.poster import generate_poster
from worker.probe import probe_media
from worker.storage import source_suffix
from worker.workspace import job_workspace

logger = logging.getLogger(__name__)

COMPONENT = "worker"


async def process_job(ctx: WorkerContext, payload: JobPayload, delivery: int = 1, job_id: Optional[str] = None) -> dict:
    """
    Run the full pipeline for one queue message.

    Args:
        ctx: Process dependencies
        payload: Domain message ({mediaAssetId, attempt})
        delivery: Queue delivery number of this message (1 = first try)
        job_id: Queue job id, for logs only

    Returns:
        Result summary (``skipped`` is True for an already-ready asset)

    Raises:
        PermanentTranscodeError: Bad input (missing/unsupported asset, unusable media)
        Exception: Anything else, re-raised unmodified after the failure is recorded
    """
    media_asset_id = payload.media_asset_id
    attempt = payload.attempt
    if not media_asset_id:
        raise PermanentTranscodeError("Missing mediaAssetId", step=TranscodeStep.CLAIMED.value)

    asset = await job_records.get_asset(ctx.database, media_asset_id)
    if asset is None:
        raise PermanentTranscodeError(f"Media asset {media_asset_id} not found", step=TranscodeStep.CLAIMED.value)
    if asset["type"] != MediaType.VIDEO.value:
        raise PermanentTranscodeError(
            f"Media asset {media_asset_id} is not a video (type={asset['type']})", step=TranscodeStep.CLAIMED.value
        )

    if job_records.is_ready(asset):
        return await _skip_ready(ctx, media_asset_id, attempt, job_id)

    row_id = await job_records.claim_job(ctx.database, media_asset_id, attempt, delivery=delivery)
    if row_id is None:
        # Another delivery committed the asset between our read and the claim
        return await _skip_ready(ctx, media_asset_id, attempt, job_id)

    log_event(
        COMPONENT,
        "Processing media transcode job",
        jobId=job_id,
        mediaAssetId=media_asset_id,
        attempt=attempt,
        delivery=delivery,
    )

    step = TranscodeStep.DOWNLOADING
    settings = ctx.settings
    try:
        with job_workspace(media_asset_id, source_suffix(asset["source_key"]), settings.work_dir) as ws:
            await ctx.storage.download_to_file(asset["source_key"], ws.source_path)

            step = TranscodeStep.PROBING
            metadata = await probe_media(
                ws.source_path, ffprobe_path=settings.ffprobe_path, timeout=settings.ffprobe_timeout_sec
            )

            step = TranscodeStep.TRANSCODING
            hls = await transcode_to_hls(
                ws.source_path,
                ws.hls_dir,
                metadata.duration_sec,
                variants=settings.variants,
                playlist_name=settings.playlist_name,
                segment_duration_sec=settings.segment_duration_sec,
                ffmpeg_path=settings.ffmpeg_path,
            )

            step = TranscodeStep.POSTERIZING
            poster_timestamp = await generate_poster(
                ws.source_path,
                ws.poster_path,
                metadata.duration_sec,
                fraction=settings.poster_time_fraction,
                ffmpeg_path=settings.ffmpeg_path,
                timeout=settings.poster_timeout_sec,
            )

            step = TranscodeStep.UPLOADING
            bucket = ctx.storage.bucket_for(asset["visibility"])
            summary = await ctx.storage.upload_hls_package(media_asset_id, hls, bucket, settings.playlist_name)
            poster_key, poster_bytes = await ctx.storage.upload_poster(media_asset_id, ws.poster_path, bucket)
            summary.poster_key = poster_key
            summary.bytes_written += poster_bytes

            step = TranscodeStep.COMMITTING
            logs: Dict[str, Any] = {
                "delivery": delivery,
                "probe": metadata.to_dict(),
                "posterTimestampSec": round(poster_timestamp, 2),
                "posterBytes": poster_bytes,
                **summary.to_dict(),
            }
            await job_records.commit_success(
                ctx.database,
                media_asset_id,
                row_id,
                metadata,
                output_key=summary.manifest_key,
                poster_key=poster_key,
                logs=logs,
            )
    except Exception as exc:
        await _record_failure(ctx, media_asset_id, attempt, step, exc, delivery, job_id)
        raise

    log_event(
        COMPONENT,
        "Media transcode job completed",
        jobId=job_id,
        mediaAssetId=media_asset_id,
        attempt=attempt,
        outputKey=summary.manifest_key,
        totalBytes=summary.bytes_written,
    )
    return {
        "mediaAssetId": media_asset_id,
        "attempt": attempt,
        "skipped": False,
        "outputKey": summary.manifest_key,
        "posterKey": poster_key,
        "totalBytes": summary.bytes_written,
    }


async def _skip_ready(ctx: WorkerContext, media_asset_id: str, attempt: int, job_id: Optional[str]) -> dict:
    await job_records.mark_existing_job_done(ctx.database, media_asset_id, attempt)
    log_event(
        COMPONENT,
        "Media asset already ready, skipping",
        jobId=job_id,
        mediaAssetId=media_asset_id,
        attempt=attempt,
    )
    return {"mediaAssetId": media_asset_id, "attempt": attempt, "skipped": True}


async def _record_failure(
    ctx: WorkerContext,
    media_asset_id: str,
    attempt: int,
    step: TranscodeStep,
    exc: Exception,
    delivery: int,
    job_id: Optional[str],
) -> None:
    """Best-effort failure bookkeeping. Never raises."""
    settings = ctx.settings
    message = truncate_error(describe_error(exc), settings.error_message_max_length)
    failed_step = getattr(exc, "step", None) or step.value
    log_event(
        COMPONENT,
        "Media transcode job failed",
        level="error",
        jobId=job_id,
        mediaAssetId=media_asset_id,
        attempt=attempt,
        delivery=delivery,
        step=failed_step,
        permanent=is_permanent_error(exc),
        failedReason=message,
    )
    logs = {
        "delivery": delivery,
        "step": failed_step,
        "error": message,
        "errorType": exc.__class__.__name__,
        "permanent": is_permanent_error(exc),
        "stack": truncate_error(
            "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)),
            settings.error_log_max_length,
        ),
    }
    try:
        await job_records.record_failure(ctx.database, media_asset_id, attempt, message, logs)
    except Exception:
        logger.exception(f"Failed to persist failure state for media asset {media_asset_id}")
