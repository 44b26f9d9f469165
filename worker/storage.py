"""
Object storage I/O for the transcode pipeline.

Sources are read from the private bucket. Outputs go to the public or private
bucket depending on the asset's visibility, each object carrying the
content-type and Cache-Control of its artifact kind. Transfers stream between
S3 and local files and run in a worker thread so the event loop stays free.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from common.enums import TranscodeStep, Visibility
from common.errors import TransientTranscodeError
from config import (
    HLS_MANIFEST_MAX_AGE_SEC,
    HLS_SEGMENT_MAX_AGE_SEC,
    POSTER_MAX_AGE_SEC,
    S3_ACCESS_KEY,
    S3_ENDPOINT,
    S3_FORCE_PATH_STYLE,
    S3_MAX_POOL_CONNECTIONS,
    S3_PRIVATE_BUCKET,
    S3_PUBLIC_BUCKET,
    S3_REGION,
    S3_SECRET_KEY,
)
from worker.hls import HlsResult

logger = logging.getLogger(__name__)

HLS_PREFIX = "processed/hls"
POSTER_PREFIX = "processed/posters"
POSTER_FILENAME = "poster.jpg"


class ArtifactKind(str, Enum):
    MANIFEST = "manifest"
    SEGMENT = "segment"
    POSTER = "poster"
    SOURCE = "source"


CONTENT_TYPES = {
    ArtifactKind.MANIFEST: "application/vnd.apple.mpegurl",
    ArtifactKind.SEGMENT: "video/mp2t",
    ArtifactKind.POSTER: "image/jpeg",
}

SOURCE_CACHE_CONTROL = "private, max-age=0, no-store"


@dataclass(frozen=True)
class CachePolicy:
    """Cache-Control max-age per artifact kind, in seconds."""

    manifest_max_age: int = HLS_MANIFEST_MAX_AGE_SEC
    segment_max_age: int = HLS_SEGMENT_MAX_AGE_SEC
    poster_max_age: int = POSTER_MAX_AGE_SEC

    def cache_control(self, kind: ArtifactKind) -> str:
        if kind == ArtifactKind.MANIFEST:
            return f"public, max-age={self.manifest_max_age}"
        if kind == ArtifactKind.SEGMENT:
            return f"public, max-age={self.segment_max_age}, immutable"
        if kind == ArtifactKind.POSTER:
            return f"public, max-age={self.poster_max_age}, immutable"
        return SOURCE_CACHE_CONTROL


def hls_prefix(media_asset_id: str) -> str:
    return f"{HLS_PREFIX}/{media_asset_id}/"


def manifest_key(media_asset_id: str, playlist_name: str) -> str:
    return f"{hls_prefix(media_asset_id)}{playlist_name}"


def poster_key(media_asset_id: str) -> str:
    return f"{POSTER_PREFIX}/{media_asset_id}/{POSTER_FILENAME}"


def source_suffix(source_key: Optional[str], default: str = ".mp4") -> str:
    """File extension of the source object, used for the local temp file."""
    suffix = Path(source_key or "").suffix
    return suffix if suffix and len(suffix) <= 10 else default


def create_s3_client(
    endpoint: Optional[str] = S3_ENDPOINT,
    region: str = S3_REGION,
    access_key: str = S3_ACCESS_KEY,
    secret_key: str = S3_SECRET_KEY,
    force_path_style: bool = S3_FORCE_PATH_STYLE,
    max_pool_connections: int = S3_MAX_POOL_CONNECTIONS,
):
    """Build a boto3 S3 client for AWS or an S3-compatible endpoint (MinIO, R2...)."""
    boto_config = Config(
        region_name=region,
        retries={"max_attempts": 5, "mode": "standard"},
        connect_timeout=5,
        read_timeout=60,
        max_pool_connections=max_pool_connections,
        s3={"addressing_style": "path" if force_path_style else "auto"},
    )
    return boto3.client(
        "s3",
        endpoint_url=endpoint,
        aws_access_key_id=access_key or None,
        aws_secret_access_key=secret_key or None,
        config=boto_config,
    )


@dataclass
class VariantUploadSummary:
    name: str
    playlist_key: str
    segment_count: int = 0
    bytes_written: int = 0


@dataclass
class UploadSummary:
    bucket: str
    manifest_key: str
    poster_key: Optional[str] = None
    variants: List[VariantUploadSummary] = field(default_factory=list)
    bytes_written: int = 0

    def to_dict(self) -> Dict:
        return {
            "bucket": self.bucket,
            "manifestKey": self.manifest_key,
            "posterKey": self.poster_key,
            "variants": [
                {
                    "name": v.name,
                    "playlistKey": v.playlist_key,
                    "segments": v.segment_count,
                    "bytes": v.bytes_written,
                }
                for v in self.variants
            ],
            "totalBytes": self.bytes_written,
        }


class MediaStorage:
    """Bucket selection and transfers for one process; owns its boto3 client."""

    def __init__(
        self,
        client,
        public_bucket: str = S3_PUBLIC_BUCKET,
        private_bucket: str = S3_PRIVATE_BUCKET,
        cache_policy: Optional[CachePolicy] = None,
    ) -> None:
        self.client = client
        self.public_bucket = public_bucket
        self.private_bucket = private_bucket
        self.cache_policy = cache_policy or CachePolicy()

    def bucket_for(self, visibility: Optional[str]) -> str:
        """Public assets go to the public bucket; anything else stays private."""
        if visibility == Visibility.PUBLIC.value:
            return self.public_bucket
        return self.private_bucket

    async def download_to_file(self, key: str, local_path: Path, bucket: Optional[str] = None) -> int:
        """
        Stream an object to a local file.

        Returns:
            Bytes written

        Raises:
            TransientTranscodeError: On any S3 or local I/O failure
        """
        bucket = bucket or self.private_bucket

        def _download() -> None:
            with open(local_path, "wb") as f:
                self.client.download_fileobj(bucket, key, f)

        try:
            await asyncio.to_thread(_download)
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransientTranscodeError(
                f"Failed to download s3://{bucket}/{key}: {e}", step=TranscodeStep.DOWNLOADING.value
            ) from e

        size = local_path.stat().st_size
        logger.info(f"Downloaded s3://{bucket}/{key} ({size} bytes)")
        return size

    async def upload_file(self, local_path: Path, bucket: str, key: str, kind: ArtifactKind) -> int:
        """
        Stream a local file to S3 with the headers of its artifact kind.

        Returns:
            Bytes uploaded

        Raises:
            TransientTranscodeError: On any S3 or local I/O failure
        """
        extra_args = {
            "ContentType": CONTENT_TYPES[kind],
            "CacheControl": self.cache_policy.cache_control(kind),
        }

        def _upload() -> int:
            with open(local_path, "rb") as f:
                self.client.upload_fileobj(f, bucket, key, ExtraArgs=extra_args)
            return local_path.stat().st_size

        try:
            return await asyncio.to_thread(_upload)
        except (BotoCoreError, ClientError, OSError) as e:
            raise TransientTranscodeError(
                f"Failed to upload s3://{bucket}/{key}: {e}", step=TranscodeStep.UPLOADING.value
            ) from e

    async def upload_hls_package(
        self,
        media_asset_id: str,
        hls: HlsResult,
        bucket: str,
        playlist_name: str,
    ) -> UploadSummary:
        """Upload the master playlist, then each rendition's playlist and segments."""
        prefix = hls_prefix(media_asset_id)
        summary = UploadSummary(bucket=bucket, manifest_key=manifest_key(media_asset_id, playlist_name))
        summary.bytes_written += await self.upload_file(
            hls.manifest_path, bucket, summary.manifest_key, ArtifactKind.MANIFEST
        )

        output_dir = hls.manifest_path.parent
        for output in hls.variant_outputs:
            playlist_key = prefix + output.playlist_path.relative_to(output_dir).as_posix()
            variant_summary = VariantUploadSummary(name=output.name, playlist_key=playlist_key)
            variant_summary.bytes_written += await self.upload_file(
                output.playlist_path, bucket, playlist_key, ArtifactKind.MANIFEST
            )
            for segment in output.segment_paths:
                segment_key = prefix + segment.relative_to(output_dir).as_posix()
                variant_summary.bytes_written += await self.upload_file(
                    segment, bucket, segment_key, ArtifactKind.SEGMENT
                )
                variant_summary.segment_count += 1
            summary.variants.append(variant_summary)
            summary.bytes_written += variant_summary.bytes_written

        return summary

    async def upload_poster(self, media_asset_id: str, local_path: Path, bucket: str) -> tuple:
        """
        Returns:
            (poster key, bytes uploaded)
        """
        key = poster_key(media_asset_id)
        size = await self.upload_file(local_path, bucket, key, ArtifactKind.POSTER)
        return key, size

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if close is not None:
            close()
