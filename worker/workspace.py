"""Scoped local scratch space for one job."""

import logging
import re
import shutil
import tempfile
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Iterator, Optional

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


@dataclass
class JobWorkspace:
    """Paths of one job's scratch area. Everything lives under ``root``."""

    root: Path
    source_path: Path
    hls_dir: Path
    poster_path: Path


def cleanup_workspace(root: Path) -> bool:
    """
    Remove a workspace directory. Errors are logged, never raised.

    Returns:
        True if nothing is left on disk
    """
    try:
        shutil.rmtree(root)
    except FileNotFoundError:
        return True
    except OSError as e:
        logger.error(f"Failed to clean up workspace {root}: {e}")
        return False
    return True


@contextmanager
def job_workspace(
    media_asset_id: str,
    source_suffix: str = ".mp4",
    base_dir: Optional[str] = None,
) -> Iterator[JobWorkspace]:
    """
    Create a private temp directory holding the source file, the HLS output
    directory and the poster file, and remove it on every exit path.

    Args:
        media_asset_id: Used in the directory name for easier debugging
        source_suffix: Extension of the downloaded source (ffmpeg sniffs by content,
            but some demuxers want the right one)
        base_dir: Parent directory (None = system temp dir)
    """
    if base_dir is not None:
        Path(base_dir).mkdir(parents=True, exist_ok=True)
    prefix = f"media-{_UNSAFE_CHARS.sub('_', media_asset_id)[:40]}-"
    root = Path(tempfile.mkdtemp(prefix=prefix, dir=base_dir))
    workspace = JobWorkspace(
        root=root,
        source_path=root / f"source{source_suffix}",
        hls_dir=root / "hls",
        poster_path=root / "poster.jpg",
    )
    workspace.hls_dir.mkdir()
    logger.debug(f"Created workspace {root}")
    try:
        yield workspace
    finally:
        if cleanup_workspace(root):
            logger.debug(f"Removed workspace {root}")
