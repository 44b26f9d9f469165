"""
Tests for the error taxonomy and error text helpers.
"""

import pytest

from common.db_retry import DatabaseRetryableError
from common.errors import (
    PermanentTranscodeError,
    TranscodeError,
    TransientTranscodeError,
    describe_error,
    is_permanent_error,
    tail,
    truncate_error,
)


class TestClassification:
    def test_permanent_error(self):
        exc = PermanentTranscodeError("No video stream found in media", step="probing")
        assert is_permanent_error(exc)
        assert exc.step == "probing"
        assert exc.message == "No video stream found in media"

    def test_transient_error(self):
        assert not is_permanent_error(TransientTranscodeError("ffmpeg timed out"))

    def test_base_error_is_transient(self):
        assert not is_permanent_error(TranscodeError("boom"))

    @pytest.mark.parametrize("exc", [RuntimeError("x"), OSError("disk"), DatabaseRetryableError("locked")])
    def test_foreign_exceptions_are_transient(self, exc):
        assert not is_permanent_error(exc)


class TestTruncateError:
    """Tests for bounding persisted error text."""

    def test_short_message_unchanged(self):
        assert truncate_error("short", 100) == "short"

    def test_long_message_suffixed(self):
        result = truncate_error("x" * 600, 500)
        assert len(result) == 500
        assert result.endswith("...")

    def test_exact_length_not_truncated(self):
        assert truncate_error("y" * 50, 50) == "y" * 50

    def test_none_becomes_empty(self):
        assert truncate_error(None, 10) == ""

    def test_tiny_limit(self):
        assert truncate_error("abcdef", 2) == "ab"


class TestDescribeError:
    def test_uses_message(self):
        assert describe_error(ValueError("bad value")) == "bad value"

    def test_falls_back_to_class_name(self):
        assert describe_error(TimeoutError()) == "TimeoutError"


class TestTail:
    def test_keeps_end_of_output(self):
        text = "frame=1\n" * 500 + "Conversion failed!"
        result = tail(text, 100)
        assert result.endswith("Conversion failed!")
        assert result.startswith("...")
        assert len(result) == 103

    def test_empty(self):
        assert tail("", 10) == ""
        assert tail(None, 10) == ""
