"""
Run ffmpeg/ffprobe with a deadline.

Every CLI call in the pipeline goes through run_subprocess(): the child is
killed and reaped when the deadline passes or the calling task is cancelled,
so a hung encoder never outlives its job or its temp directory.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import List, Optional

from common.errors import TransientTranscodeError, tail

logger = logging.getLogger(__name__)

# Seconds to wait for a killed process to be reaped
KILL_WAIT_TIMEOUT = 5.0


@dataclass
class SubprocessResult:
    returncode: int
    stdout: bytes
    stderr: bytes

    @property
    def stdout_text(self) -> str:
        return self.stdout.decode("utf-8", errors="ignore")

    @property
    def stderr_text(self) -> str:
        return self.stderr.decode("utf-8", errors="ignore")


def calculate_ffmpeg_timeout(
    duration: float,
    height: int,
    multiplier: float,
    minimum: float,
    maximum: float,
) -> float:
    """
    Deadline for one rendition encode.

    Scales with source duration and with the target height relative to 720p,
    clamped to [minimum, maximum].

    Args:
        duration: Source duration in seconds
        height: Target rendition height
        multiplier: Seconds of budget per second of source at 720p
        minimum: Lower bound in seconds
        maximum: Upper bound in seconds

    Returns:
        Timeout in seconds
    """
    resolution_factor = height / 720 if height and height > 0 else 1.0
    timeout = max(duration, 0.0) * multiplier * resolution_factor
    return max(minimum, min(timeout, maximum))


async def cleanup_process(process: asyncio.subprocess.Process, context: str) -> None:
    """
    Kill and reap a subprocess, handling the race where it exits between
    checking returncode and calling kill().
    """
    if process.returncode is None:
        try:
            process.kill()
        except (ProcessLookupError, OSError):
            # Process already terminated
            pass
        try:
            await asyncio.wait_for(process.wait(), timeout=KILL_WAIT_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"{context} process did not terminate after kill")


async def run_subprocess(
    cmd: List[str],
    timeout: float,
    context: str,
    step: Optional[str] = None,
) -> SubprocessResult:
    """
    Run a command to completion, capturing stdout and stderr.

    A non-zero exit code is returned, not raised: callers decide whether it is
    fatal and how to word the error.

    Args:
        cmd: Command and arguments
        timeout: Deadline in seconds
        context: Description for logs and errors (e.g. "ffprobe", "ffmpeg 720p")
        step: Pipeline step recorded on raised errors

    Returns:
        SubprocessResult with the exit code and captured output

    Raises:
        TransientTranscodeError: If the binary cannot be started or the deadline passes
    """
    logger.debug(f"Running {context}: {' '.join(cmd)}")
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        raise TransientTranscodeError(f"{context} could not be started: {e}", step=step) from e

    loop = asyncio.get_running_loop()
    start_time = loop.time()
    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        elapsed = loop.time() - start_time
        logger.warning(f"{context} exceeded {timeout:.0f}s limit (ran for {elapsed:.0f}s), killing")
        await cleanup_process(process, context)
        raise TransientTranscodeError(
            f"{context} timed out after {elapsed:.0f} seconds (limit: {timeout:.0f}s)", step=step
        )
    finally:
        # Covers cancellation and unexpected errors; no-op once the process has exited
        await cleanup_process(process, context)

    return SubprocessResult(returncode=process.returncode, stdout=stdout or b"", stderr=stderr or b"")


def describe_failure(context: str, result: SubprocessResult, max_chars: int = 1000) -> str:
    """Error text for a non-zero exit, including the end of stderr."""
    message = f"{context} exited with code {result.returncode}"
    detail = tail(result.stderr_text, max_chars)
    if detail:
        message = f"{message}: {detail}"
    return message
