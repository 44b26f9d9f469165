"""
HLS packaging: one ffmpeg run per rendition, then the master playlist.

Output layout inside ``output_dir``::

    <playlist name>            master playlist
    v<variant>/index.m3u8      rendition playlist
    v<variant>/segment_00000.ts ...

Renditions are encoded and listed in configured order. The master playlist is
never re-sorted by bandwidth or resolution.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

from common.enums import TranscodeStep
from common.errors import PermanentTranscodeError, TransientTranscodeError
from common.schemas import VariantConfig, round_half_up
from config import (
    FFMPEG_PATH,
    FFMPEG_TIMEOUT_MAXIMUM,
    FFMPEG_TIMEOUT_MINIMUM,
    FFMPEG_TIMEOUT_MULTIPLIER,
    HLS_PLAYLIST_NAME,
    HLS_SEGMENT_DURATION_SEC,
    HLS_VARIANTS,
)
from worker.subprocess_runner import calculate_ffmpeg_timeout, describe_failure, run_subprocess

logger = logging.getLogger(__name__)

VARIANT_PLAYLIST_NAME = "index.m3u8"
SEGMENT_PATTERN = "segment_%05d.ts"
# H.264 Main profile level 3.1 + AAC-LC
CODECS = "avc1.4d401f,mp4a.40.2"


@dataclass
class HlsVariantOutput:
    variant: VariantConfig
    directory: Path
    playlist_path: Path
    segment_paths: List[Path] = field(default_factory=list)

    @property
    def name(self) -> str:
        return self.variant.name


@dataclass
class HlsResult:
    manifest_path: Path
    variant_outputs: List[HlsVariantOutput]


def variant_dir_name(variant: VariantConfig) -> str:
    return f"v{variant.name}"


def format_seconds(value: float) -> str:
    """6.0 -> "6", 2.5 -> "2.5"."""
    return f"{value:g}"


def build_hls_command(
    ffmpeg_path: str,
    input_path: Path,
    variant: VariantConfig,
    segment_duration_sec: float,
    playlist_path: Path,
    segment_pattern: Path,
) -> List[str]:
    """Build the ffmpeg argument list for one rendition."""
    video_bitrate = max(variant.video_bitrate_kbps, 1)
    audio_bitrate = max(variant.audio_bitrate_kbps, 1)
    max_rate = max(round_half_up(video_bitrate * 1.2), video_bitrate + 1)
    buf_size = max(video_bitrate * 2, video_bitrate + 1)
    return [
        ffmpeg_path,
        "-y",
        "-i",
        str(input_path),
        "-vf",
        # Fit inside the target box, keep aspect ratio, even dimensions for yuv420p
        f"scale=w={variant.width}:h={variant.height}:force_original_aspect_ratio=decrease:force_divisible_by=2",
        "-c:v",
        "h264",
        "-profile:v",
        "main",
        "-preset",
        "veryfast",
        "-b:v",
        f"{video_bitrate}k",
        "-maxrate",
        f"{max_rate}k",
        "-bufsize",
        f"{buf_size}k",
        "-sc_threshold",
        "0",
        "-c:a",
        "aac",
        "-b:a",
        f"{audio_bitrate}k",
        "-ac",
        "2",
        "-ar",
        "48000",
        "-hls_time",
        format_seconds(segment_duration_sec),
        "-hls_playlist_type",
        "vod",
        "-hls_segment_filename",
        str(segment_pattern),
        "-hls_flags",
        "independent_segments",
        "-hls_list_size",
        "0",
        "-f",
        "hls",
        str(playlist_path),
    ]


def build_master_manifest(
    output_dir: Path,
    variants: Sequence[VariantConfig],
    variant_outputs: Sequence[HlsVariantOutput],
) -> str:
    """
    Render the master playlist for ``variants`` in the given order.

    Raises:
        PermanentTranscodeError: If a configured variant has no matching output
    """
    if len(variant_outputs) != len(variants):
        raise PermanentTranscodeError(
            f"Expected {len(variants)} HLS outputs, got {len(variant_outputs)}",
            step=TranscodeStep.TRANSCODING.value,
        )

    lines = ["#EXTM3U", "#EXT-X-VERSION:3", "#EXT-X-INDEPENDENT-SEGMENTS"]
    for variant, output in zip(variants, variant_outputs):
        if output.name != variant.name:
            raise PermanentTranscodeError(
                f"Missing HLS output for variant {variant.name}", step=TranscodeStep.TRANSCODING.value
            )
        relative_path = output.playlist_path.relative_to(output_dir).as_posix()
        lines.append(
            f"#EXT-X-STREAM-INF:BANDWIDTH={variant.bandwidth},"
            f"AVERAGE-BANDWIDTH={variant.average_bandwidth},"
            f"RESOLUTION={variant.width}x{variant.height},"
            f'CODECS="{CODECS}"'
        )
        lines.append(relative_path)
    return "\n".join(lines) + "\n"


def list_segments(variant_dir: Path) -> List[Path]:
    """Segment files of one rendition in lexical filename order."""
    return sorted((p for p in variant_dir.iterdir() if p.is_file() and p.suffix == ".ts"), key=lambda p: p.name)


async def transcode_variant(
    input_path: Path,
    output_dir: Path,
    variant: VariantConfig,
    duration_sec: float,
    segment_duration_sec: float = HLS_SEGMENT_DURATION_SEC,
    ffmpeg_path: str = FFMPEG_PATH,
    timeout: Optional[float] = None,
) -> HlsVariantOutput:
    """
    Encode and segment one rendition.

    Raises:
        TransientTranscodeError: If ffmpeg fails, times out or leaves no playlist/segments
    """
    variant_dir = output_dir / variant_dir_name(variant)
    variant_dir.mkdir(parents=True, exist_ok=True)
    playlist_path = variant_dir / VARIANT_PLAYLIST_NAME

    if timeout is None:
        timeout = calculate_ffmpeg_timeout(
            duration_sec,
            variant.height,
            multiplier=FFMPEG_TIMEOUT_MULTIPLIER,
            minimum=FFMPEG_TIMEOUT_MINIMUM,
            maximum=FFMPEG_TIMEOUT_MAXIMUM,
        )

    cmd = build_hls_command(
        ffmpeg_path,
        input_path,
        variant,
        segment_duration_sec,
        playlist_path,
        variant_dir / SEGMENT_PATTERN,
    )
    context = f"ffmpeg {variant.name}"
    result = await run_subprocess(cmd, timeout=timeout, context=context, step=TranscodeStep.TRANSCODING.value)
    if result.returncode != 0:
        raise TransientTranscodeError(describe_failure(context, result), step=TranscodeStep.TRANSCODING.value)

    segments = list_segments(variant_dir)
    if not playlist_path.exists() or not segments:
        raise TransientTranscodeError(
            f"{context} produced no HLS output in {variant_dir.name}", step=TranscodeStep.TRANSCODING.value
        )

    logger.info(f"Transcoded {variant.name}: {len(segments)} segments")
    return HlsVariantOutput(
        variant=variant, directory=variant_dir, playlist_path=playlist_path, segment_paths=segments
    )


async def transcode_to_hls(
    input_path: Path,
    output_dir: Path,
    duration_sec: float,
    variants: Sequence[VariantConfig] = HLS_VARIANTS,
    playlist_name: str = HLS_PLAYLIST_NAME,
    segment_duration_sec: float = HLS_SEGMENT_DURATION_SEC,
    ffmpeg_path: str = FFMPEG_PATH,
) -> HlsResult:
    """
    Produce the full HLS package for ``input_path`` under ``output_dir``.

    Renditions run one after another; the first failure aborts the package
    before a master playlist is written.

    Returns:
        HlsResult with the master playlist path and per-rendition outputs in configured order
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    outputs = []
    for variant in variants:
        outputs.append(
            await transcode_variant(
                input_path,
                output_dir,
                variant,
                duration_sec,
                segment_duration_sec=segment_duration_sec,
                ffmpeg_path=ffmpeg_path,
            )
        )

    manifest_path = output_dir / playlist_name
    manifest_path.write_text(build_master_manifest(output_dir, variants, outputs))
    return HlsResult(manifest_path=manifest_path, variant_outputs=outputs)
