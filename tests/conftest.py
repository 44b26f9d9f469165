"""
Pytest configuration and fixtures for media worker tests.

Tests run against a throwaway SQLite record store per test, a MagicMock in
place of the boto3 client and AsyncMock Redis connections, so no external
service is needed. The ffmpeg end-to-end tests are the only ones that shell
out, and they skip when the binaries are not installed.
"""

import os
import sys
from pathlib import Path
from typing import AsyncGenerator, Callable, Dict, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest
import sqlalchemy as sa
from databases import Database

# Set test mode BEFORE importing config so module-level settings use test values
os.environ["MEDIA_TEST_MODE"] = "1"
os.environ.setdefault("MEDIA_DATABASE_URL", "sqlite:///./test-media.db")
os.environ.setdefault("MEDIA_S3_PUBLIC_BUCKET", "media-public")
os.environ.setdefault("MEDIA_S3_PRIVATE_BUCKET", "media-private")
os.environ.setdefault("MEDIA_S3_ACCESS_KEY", "test-access-key")
os.environ.setdefault("MEDIA_S3_SECRET_KEY", "test-secret-key")

# Add project root to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from common.database import media_assets, metadata, utcnow  # noqa: E402
from common.enums import MediaStatus, MediaType, Visibility  # noqa: E402
from worker.context import TranscodeSettings, WorkerContext  # noqa: E402
from worker.storage import CachePolicy, MediaStorage  # noqa: E402

PUBLIC_BUCKET = "media-public"
PRIVATE_BUCKET = "media-private"
SOURCE_BYTES = b"\x00\x00\x00\x20ftypisom" + b"\x00" * 1024


@pytest.fixture(scope="function")
def test_db_url(tmp_path: Path) -> str:
    """Create a fresh SQLite file with all tables and return its URL."""
    db_path = tmp_path / "media.db"
    engine = sa.create_engine(f"sqlite:///{db_path}")
    metadata.create_all(engine)
    engine.dispose()
    return f"sqlite:///{db_path}"


@pytest.fixture(scope="function")
async def test_database(test_db_url: str) -> AsyncGenerator[Database, None]:
    """Connected record store for one test."""
    database = Database(test_db_url)
    await database.connect()

    yield database

    await database.disconnect()


async def insert_asset(
    database: Database,
    media_asset_id: str,
    type: str = MediaType.VIDEO.value,
    visibility: str = Visibility.PUBLIC.value,
    status: str = MediaStatus.UPLOADED.value,
    source_key: Optional[str] = None,
    **values,
) -> dict:
    now = utcnow()
    row = {
        "id": media_asset_id,
        "type": type,
        "visibility": visibility,
        "status": status,
        "source_key": source_key or f"uploads/{media_asset_id}/source.mp4",
        "created_at": now,
        "updated_at": now,
    }
    row.update(values)
    await database.execute(media_assets.insert().values(**row))
    return row


@pytest.fixture(scope="function")
async def sample_video(test_database: Database) -> dict:
    """An uploaded public video waiting for its first transcode."""
    return await insert_asset(test_database, "asset-video-1")


@pytest.fixture(scope="function")
async def private_video(test_database: Database) -> dict:
    return await insert_asset(test_database, "asset-private-1", visibility=Visibility.PRIVATE.value)


@pytest.fixture(scope="function")
async def sample_image(test_database: Database) -> dict:
    return await insert_asset(
        test_database,
        "asset-image-1",
        type=MediaType.IMAGE.value,
        source_key="uploads/asset-image-1/photo.jpg",
    )


@pytest.fixture(scope="function")
async def ready_video(test_database: Database) -> dict:
    """A video that an earlier delivery already finished."""
    return await insert_asset(
        test_database,
        "asset-ready-1",
        status=MediaStatus.READY.value,
        output_key="processed/hls/asset-ready-1/index.m3u8",
        poster_key="processed/posters/asset-ready-1/poster.jpg",
        duration_sec=42.0,
        width=1280,
        height=720,
        codec="h264",
        bitrate=2400,
    )


class FakeS3Client:
    """
    In-memory stand-in for the boto3 S3 client methods the worker calls.

    Objects are stored as bytes keyed by (bucket, key); uploads keep their
    ExtraArgs so tests can check headers.
    """

    def __init__(self) -> None:
        self.objects: Dict[tuple, bytes] = {}
        self.extra_args: Dict[tuple, dict] = {}
        self.upload_order: list = []
        self.download_fileobj = MagicMock(side_effect=self._download_fileobj)
        self.upload_fileobj = MagicMock(side_effect=self._upload_fileobj)
        self.close = MagicMock()

    def put(self, bucket: str, key: str, body: bytes) -> None:
        self.objects[(bucket, key)] = body

    def _download_fileobj(self, bucket, key, fileobj):
        from botocore.exceptions import ClientError

        if (bucket, key) not in self.objects:
            raise ClientError({"Error": {"Code": "404", "Message": "Not Found"}}, "HeadObject")
        fileobj.write(self.objects[(bucket, key)])

    def _upload_fileobj(self, fileobj, bucket, key, ExtraArgs=None):
        self.objects[(bucket, key)] = fileobj.read()
        self.extra_args[(bucket, key)] = dict(ExtraArgs or {})
        self.upload_order.append((bucket, key))

    def keys(self, bucket: str) -> list:
        return [key for (b, key) in self.upload_order if b == bucket]


@pytest.fixture
def s3_client() -> FakeS3Client:
    return FakeS3Client()


@pytest.fixture
def cache_policy() -> CachePolicy:
    return CachePolicy(manifest_max_age=60, segment_max_age=31536000, poster_max_age=86400)


@pytest.fixture
def storage(s3_client: FakeS3Client, cache_policy: CachePolicy) -> MediaStorage:
    return MediaStorage(s3_client, PUBLIC_BUCKET, PRIVATE_BUCKET, cache_policy)


@pytest.fixture
def work_dir(tmp_path: Path) -> Path:
    path = tmp_path / "work"
    path.mkdir()
    return path


@pytest.fixture
def settings(work_dir: Path) -> TranscodeSettings:
    return TranscodeSettings(work_dir=str(work_dir))


@pytest.fixture
async def worker_context(
    settings: TranscodeSettings, test_database: Database, storage: MediaStorage
) -> WorkerContext:
    """Context without Redis: enough for process_job()."""
    return WorkerContext(settings=settings, database=test_database, storage=storage)


@pytest.fixture
def mock_queue() -> MagicMock:
    queue = MagicMock()
    queue.name = "media-transcode"
    queue.block_ms = 100
    queue.complete = AsyncMock()
    queue.fail = AsyncMock(return_value="retrying")
    queue.claim = AsyncMock(return_value=None)
    queue.promote_delayed = AsyncMock(return_value=0)
    queue.heartbeat = AsyncMock(return_value=True)
    queue.heartbeat_interval = 60.0
    return queue


def make_redis_mock():
    """
    AsyncMock Redis whose pipeline() works as ``async with``.

    Returns:
        (redis, pipe): commands queued on ``pipe`` are plain MagicMock calls,
        ``pipe.execute`` is awaited
    """
    redis = AsyncMock()
    pipe = MagicMock()
    pipe.execute = AsyncMock(return_value=[])
    pipeline_cm = MagicMock()
    pipeline_cm.__aenter__ = AsyncMock(return_value=pipe)
    pipeline_cm.__aexit__ = AsyncMock(return_value=False)
    redis.pipeline = MagicMock(return_value=pipeline_cm)
    return redis, pipe


def write_fake_hls_output(cmd: list) -> None:
    """Create the playlist and two segments an ffmpeg HLS command would produce."""
    playlist_path = Path(cmd[-1])
    segment_pattern = cmd[cmd.index("-hls_segment_filename") + 1]
    playlist_path.parent.mkdir(parents=True, exist_ok=True)
    playlist_path.write_text("#EXTM3U\n#EXT-X-ENDLIST\n")
    for index in range(2):
        Path(segment_pattern % index).write_bytes(b"\x47" * 188)


def write_fake_poster(cmd: list) -> None:
    Path(cmd[-1]).write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")


@pytest.fixture
def fake_ffmpeg() -> Callable:
    """
    Replacement for run_subprocess that writes the files ffmpeg would write.

    ffprobe calls answer with ``fake_ffmpeg.probe_output``.
    """
    from worker.subprocess_runner import SubprocessResult

    state = {
        "probe_output": (
            b'{"streams": [{"codec_type": "video", "codec_name": "h264", "width": 1920, "height": 1080},'
            b' {"codec_type": "audio", "codec_name": "aac"}],'
            b' "format": {"duration": "30.0", "bit_rate": "4500000"}}'
        ),
        "calls": [],
    }

    async def run(cmd, timeout, context, step=None):
        state["calls"].append(list(cmd))
        if context == "ffprobe":
            return SubprocessResult(returncode=0, stdout=state["probe_output"], stderr=b"")
        if "-hls_segment_filename" in cmd:
            write_fake_hls_output(cmd)
        else:
            write_fake_poster(cmd)
        return SubprocessResult(returncode=0, stdout=b"", stderr=b"")

    run.state = state
    return run
