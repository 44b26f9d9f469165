"""
Tests for poster timestamp selection and extraction.
"""

from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from common.errors import TransientTranscodeError
from worker.poster import build_poster_command, clamp_poster_time, generate_poster
from worker.subprocess_runner import SubprocessResult


class TestClampPosterTime:
    """Tests for the poster frame position."""

    @pytest.mark.parametrize("duration", [0.05, 0.5, 0.95, 1.0, 1.05, 1.5, 2.0, 5.0, 30.0, 3600.0])
    @pytest.mark.parametrize("fraction", [0.0, 0.1, 0.5, 0.9, 1.0])
    def test_always_inside_the_video(self, duration, fraction):
        timestamp = clamp_poster_time(duration, fraction)
        assert 0 < timestamp < duration

    def test_midpoint(self):
        assert clamp_poster_time(30.0, 0.5) == 15.0

    def test_end_pulled_back_one_second(self):
        assert clamp_poster_time(30.0, 1.0) == 29.0

    def test_start_pushed_to_one_second(self):
        assert clamp_poster_time(30.0, 0.0) == 1.0

    def test_sub_second_clip_uses_midpoint(self):
        assert clamp_poster_time(0.5, 0.5) == 0.25

    @pytest.mark.parametrize("duration", [0, -5, float("nan"), float("inf")])
    def test_invalid_duration_falls_back(self, duration):
        timestamp = clamp_poster_time(duration, 0.5)
        assert 0 < timestamp < 1.0


class TestBuildPosterCommand:
    def test_seeks_before_input(self):
        cmd = build_poster_command("ffmpeg", Path("/w/source.mp4"), Path("/w/poster.jpg"), 15.0)
        assert cmd == [
            "ffmpeg",
            "-y",
            "-ss",
            "15.00",
            "-i",
            "/w/source.mp4",
            "-frames:v",
            "1",
            "-q:v",
            "2",
            "/w/poster.jpg",
        ]


class TestGeneratePoster:
    """Tests for generate_poster() with a mocked ffmpeg."""

    @pytest.mark.asyncio
    async def test_writes_poster(self, tmp_path):
        output = tmp_path / "poster.jpg"

        async def fake_run(cmd, timeout, context, step=None):
            Path(cmd[-1]).write_bytes(b"\xff\xd8jpeg")
            return SubprocessResult(returncode=0, stdout=b"", stderr=b"")

        with patch("worker.poster.run_subprocess", side_effect=fake_run) as mock_run:
            timestamp = await generate_poster(tmp_path / "source.mp4", output, 30.0, fraction=0.5, timeout=9)

        assert timestamp == 15.0
        assert output.read_bytes() == b"\xff\xd8jpeg"
        assert mock_run.call_args.kwargs["timeout"] == 9

    @pytest.mark.asyncio
    async def test_non_zero_exit_is_transient(self, tmp_path):
        result = SubprocessResult(returncode=1, stdout=b"", stderr=b"Output file is empty")
        with patch("worker.poster.run_subprocess", AsyncMock(return_value=result)):
            with pytest.raises(TransientTranscodeError, match="Poster generation") as exc_info:
                await generate_poster(tmp_path / "source.mp4", tmp_path / "poster.jpg", 30.0)
        assert exc_info.value.step == "posterizing"

    @pytest.mark.asyncio
    async def test_empty_output_is_transient(self, tmp_path):
        output = tmp_path / "poster.jpg"

        async def fake_run(cmd, timeout, context, step=None):
            Path(cmd[-1]).write_bytes(b"")
            return SubprocessResult(returncode=0, stdout=b"", stderr=b"")

        with patch("worker.poster.run_subprocess", side_effect=fake_run):
            with pytest.raises(TransientTranscodeError, match="produced no image"):
                await generate_poster(tmp_path / "source.mp4", output, 30.0)
