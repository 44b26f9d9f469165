"""
Error taxonomy for the transcode pipeline.

Every fallible step raises either a permanent error (bad input: retrying cannot
help) or a transient one (infrastructure: a later attempt may succeed). The
queue reads ``permanent`` to decide between backoff and the dead letter stream.
Exceptions that are not ``TranscodeError`` are treated as transient.
"""

from typing import Optional

TRUNCATION_SUFFIX = "..."


class TranscodeError(Exception):
    """Base class for pipeline failures."""

    permanent: bool = False

    def __init__(self, message: str, step: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.step = step


class PermanentTranscodeError(TranscodeError):
    """Input problem: missing/unsupported asset, unreadable media, bad metadata."""

    permanent = True


class TransientTranscodeError(TranscodeError):
    """Infrastructure problem: timeouts, subprocess crashes, storage/network failures."""

    permanent = False


def is_permanent_error(exc: BaseException) -> bool:
    """True if retrying this exception cannot succeed."""
    return bool(getattr(exc, "permanent", False))


def truncate_error(message: Optional[str], max_length: int) -> str:
    """
    Bound an error message for persistence.

    Args:
        message: Error text (None becomes an empty string)
        max_length: Maximum length of the result, suffix included

    Returns:
        The message unchanged if short enough, otherwise cut and suffixed with "..."
    """
    if not message:
        return ""
    message = message.strip()
    if len(message) <= max_length:
        return message
    if max_length <= len(TRUNCATION_SUFFIX):
        return message[:max_length]
    return message[: max_length - len(TRUNCATION_SUFFIX)] + TRUNCATION_SUFFIX


def describe_error(exc: BaseException) -> str:
    """Human-readable error text, falling back to the class name for empty messages."""
    text = str(exc).strip()
    return text or exc.__class__.__name__


def tail(text: str, max_chars: int = 1000) -> str:
    """Keep the end of a subprocess stderr dump, where ffmpeg puts the actual error."""
    text = (text or "").strip()
    if len(text) <= max_chars:
        return text
    return TRUNCATION_SUFFIX + text[-max_chars:]
