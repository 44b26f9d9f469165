"""Probe a local media file with ffprobe."""

import json
import logging
import math
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Optional

from common.enums import TranscodeStep
from common.errors import PermanentTranscodeError, TransientTranscodeError
from config import FFPROBE_PATH, FFPROBE_TIMEOUT_SEC
from worker.subprocess_runner import describe_failure, run_subprocess

logger = logging.getLogger(__name__)


@dataclass
class MediaMetadata:
    duration_sec: float
    width: int
    height: int
    video_codec: str
    audio_codec: Optional[str] = None
    bitrate_kbps: Optional[float] = None

    def to_dict(self) -> dict:
        return asdict(self)


def parse_number(value: Any) -> Optional[float]:
    """Parse an ffprobe numeric field ("12.34", 12, "N/A"); None if missing or not finite."""
    if value is None or isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


def parse_probe_output(data: dict) -> MediaMetadata:
    """
    Extract pipeline metadata from ffprobe's JSON document.

    Raises:
        PermanentTranscodeError: If there is no video stream or duration/dimensions are unusable
    """
    streams = data.get("streams") or []
    fmt = data.get("format") or {}

    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is None:
        raise PermanentTranscodeError("No video stream found in media", step=TranscodeStep.PROBING.value)
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)

    # Container duration first, stream duration as fallback
    duration = parse_number(fmt.get("duration"))
    if duration is None:
        duration = parse_number(video_stream.get("duration"))
    if not duration or duration <= 0:
        raise PermanentTranscodeError("Unable to determine media duration", step=TranscodeStep.PROBING.value)

    width = parse_number(video_stream.get("width"))
    height = parse_number(video_stream.get("height"))
    if not width or not height or width <= 0 or height <= 0:
        raise PermanentTranscodeError("Unable to determine video dimensions", step=TranscodeStep.PROBING.value)

    bitrate_bits = parse_number(fmt.get("bit_rate"))
    if bitrate_bits is None:
        bitrate_bits = parse_number(video_stream.get("bit_rate"))

    audio_codec = None
    if audio_stream is not None:
        audio_codec = audio_stream.get("codec_name") or audio_stream.get("codec_long_name") or None

    return MediaMetadata(
        duration_sec=duration,
        width=int(width),
        height=int(height),
        video_codec=video_stream.get("codec_name") or video_stream.get("codec_long_name") or "unknown",
        audio_codec=audio_codec,
        bitrate_kbps=bitrate_bits / 1000 if bitrate_bits else None,
    )


async def probe_media(
    input_path: Path,
    ffprobe_path: str = FFPROBE_PATH,
    timeout: float = FFPROBE_TIMEOUT_SEC,
) -> MediaMetadata:
    """
    Get video metadata using ffprobe.

    Args:
        input_path: Path to the media file
        ffprobe_path: ffprobe binary
        timeout: Maximum time to wait for ffprobe

    Returns:
        MediaMetadata for the file

    Raises:
        PermanentTranscodeError: If the file has no usable video stream or ffprobe output is not JSON
        TransientTranscodeError: If ffprobe cannot run, times out or exits non-zero
    """
    cmd = [
        ffprobe_path,
        "-v",
        "error",
        "-print_format",
        "json",
        "-show_streams",
        "-show_format",
        str(input_path),
    ]
    result = await run_subprocess(cmd, timeout=timeout, context="ffprobe", step=TranscodeStep.PROBING.value)
    if result.returncode != 0:
        raise TransientTranscodeError(describe_failure("ffprobe", result), step=TranscodeStep.PROBING.value)

    try:
        data = json.loads(result.stdout_text or "{}")
    except json.JSONDecodeError as e:
        raise PermanentTranscodeError(
            f"ffprobe returned invalid JSON: {e}", step=TranscodeStep.PROBING.value
        ) from e
    if not isinstance(data, dict):
        raise PermanentTranscodeError("ffprobe returned unexpected output", step=TranscodeStep.PROBING.value)

    metadata = parse_probe_output(data)
    logger.debug(
        f"Probed {input_path.name}: {metadata.width}x{metadata.height}, "
        f"{metadata.duration_sec:.2f}s, {metadata.video_codec}"
    )
    return metadata
