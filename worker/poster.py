"""Poster frame extraction."""

import logging
import math
from pathlib import Path

from common.enums import TranscodeStep
from common.errors import TransientTranscodeError
from config import FFMPEG_PATH, HLS_POSTER_TIME_FRACTION, POSTER_TIMEOUT_SEC
from worker.subprocess_runner import describe_failure, run_subprocess

logger = logging.getLogger(__name__)


def clamp_poster_time(duration_sec: float, fraction: float) -> float:
    """
    Timestamp (seconds) of the frame used as poster.

    ``duration * fraction`` kept inside [min(1, d - 1), max(d - 1, 1)]. A
    non-finite or non-positive value falls back to the midpoint, and a value
    at or past the end is pulled back by 0.1s (or to the midpoint for clips
    shorter than that).
    """
    if isinstance(duration_sec, (int, float)) and math.isfinite(duration_sec) and duration_sec > 0:
        safe_duration = float(duration_sec)
    else:
        safe_duration = 1.0

    max_ts = max(safe_duration - 1, 1.0)
    min_ts = min(1.0, max_ts)

    raw = safe_duration * fraction
    timestamp = min(max(raw, min_ts), max_ts) if math.isfinite(raw) else float("nan")
    if not math.isfinite(timestamp) or timestamp <= 0:
        timestamp = min(max(safe_duration / 2, min_ts), max_ts)
    if timestamp >= safe_duration:
        timestamp = max(safe_duration - 0.1, min_ts)
    # Sub-second clips: the one second floor lands past the end
    if timestamp >= safe_duration:
        timestamp = safe_duration / 2
    return timestamp


def build_poster_command(ffmpeg_path: str, input_path: Path, output_path: Path, timestamp: float) -> list:
    # Input seeking (-ss before -i) jumps to the nearest keyframe without decoding up to it
    return [
        ffmpeg_path,
        "-y",
        "-ss",
        f"{timestamp:.2f}",
        "-i",
        str(input_path),
        "-frames:v",
        "1",
        "-q:v",
        "2",
        str(output_path),
    ]


async def generate_poster(
    input_path: Path,
    output_path: Path,
    duration_sec: float,
    fraction: float = HLS_POSTER_TIME_FRACTION,
    ffmpeg_path: str = FFMPEG_PATH,
    timeout: float = POSTER_TIMEOUT_SEC,
) -> float:
    """
    Extract one JPEG frame from the video.

    Args:
        input_path: Source video
        output_path: JPEG to write
        duration_sec: Probed source duration
        fraction: Position of the frame as a fraction of the duration
        ffmpeg_path: ffmpeg binary
        timeout: Maximum time to wait for ffmpeg

    Returns:
        The timestamp used, in seconds

    Raises:
        TransientTranscodeError: If ffmpeg fails, times out or writes nothing
    """
    timestamp = clamp_poster_time(duration_sec, fraction)
    output_path.parent.mkdir(parents=True, exist_ok=True)
    cmd = build_poster_command(ffmpeg_path, input_path, output_path, timestamp)

    result = await run_subprocess(cmd, timeout=timeout, context="ffmpeg poster", step=TranscodeStep.POSTERIZING.value)
    if result.returncode != 0:
        raise TransientTranscodeError(
            describe_failure("Poster generation", result), step=TranscodeStep.POSTERIZING.value
        )
    if not output_path.exists() or output_path.stat().st_size == 0:
        raise TransientTranscodeError(
            f"Poster generation produced no image at {timestamp:.2f}s", step=TranscodeStep.POSTERIZING.value
        )
    return timestamp
