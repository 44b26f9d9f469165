"""
Centralized enums for status values used throughout the worker.
Using str-based enums for database compatibility.
"""

from enum import Enum


class MediaType(str, Enum):
    """Kinds of media asset. Only videos are transcoded."""

    VIDEO = "video"
    IMAGE = "image"


class MediaStatus(str, Enum):
    """Status values for a media asset."""

    UPLOADED = "uploaded"
    PROCESSING = "processing"
    READY = "ready"
    FAILED = "failed"


class Visibility(str, Enum):
    """Decides which bucket receives the produced artifacts."""

    PUBLIC = "public"
    PRIVATE = "private"


class TranscodeJobStatus(str, Enum):
    """Status values for one transcode attempt."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    FAILED = "failed"


class TranscodeStep(str, Enum):
    """Orchestrator states, in execution order."""

    CLAIMED = "claimed"
    DOWNLOADING = "downloading"
    PROBING = "probing"
    TRANSCODING = "transcoding"
    POSTERIZING = "posterizing"
    UPLOADING = "uploading"
    COMMITTING = "committing"
    DONE = "done"
    FAILED = "failed"


class QueueEvent(str, Enum):
    """Lifecycle events published on the queue events stream."""

    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    RETRYING = "retrying"
    FAILED = "failed"
    STALLED = "stalled"
    DEAD = "dead"
