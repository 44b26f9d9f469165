"""
Pydantic models shared by the worker, the queue and the CLI.

Field aliases follow the camelCase JSON used by the job producer
(``mediaAssetId``, ``videoBitrateKbps``...) while Python code uses snake_case.
"""

import math
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def round_half_up(value: float) -> int:
    """Round .5 away from zero for positive values (Python's round() is banker's rounding)."""
    return int(math.floor(value + 0.5))


class VariantConfig(BaseModel):
    """One HLS rendition: target box and bitrates."""

    model_config = ConfigDict(populate_by_name=True, frozen=True)

    name: str = Field(min_length=1)
    width: int = Field(gt=0)
    height: int = Field(gt=0)
    video_bitrate_kbps: int = Field(gt=0, alias="videoBitrateKbps")
    audio_bitrate_kbps: int = Field(gt=0, alias="audioBitrateKbps")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Names become folder names in object storage, so keep them path-safe."""
        v = v.strip()
        if not v:
            raise ValueError("name must not be blank")
        if "/" in v or "\\" in v or v in (".", ".."):
            raise ValueError("name must not contain path separators")
        return v

    @property
    def bandwidth(self) -> int:
        """Peak bandwidth in bits per second (video + audio)."""
        return max(round_half_up((self.video_bitrate_kbps + self.audio_bitrate_kbps) * 1000), 1)

    @property
    def average_bandwidth(self) -> int:
        return max(round_half_up(self.bandwidth * 0.95), 1)


class JobPayload(BaseModel):
    """Domain message carried by the transcode queue."""

    model_config = ConfigDict(populate_by_name=True)

    media_asset_id: Optional[str] = Field(default=None, alias="mediaAssetId")
    attempt: int = Field(default=1, ge=1)

    @field_validator("media_asset_id")
    @classmethod
    def blank_to_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return None
        v = v.strip()
        return v or None

    def to_message(self) -> dict:
        """Serialize with the producer's field names."""
        return {"mediaAssetId": self.media_asset_id or "", "attempt": self.attempt}
