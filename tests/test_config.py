"""
Tests for configuration parsing and validation.
"""

import json
import os
from unittest import mock

import pytest

import config
from config import ConfigError, get_bool_env, get_float_env, get_int_env, parse_variants


class TestGetIntEnv:
    """Tests for integer environment parsing."""

    def test_returns_default_when_unset(self):
        with mock.patch.dict(os.environ, {}, clear=False):
            os.environ.pop("MEDIA_TEST_INT", None)
            assert get_int_env("MEDIA_TEST_INT", 42) == 42

    def test_blank_value_uses_default(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_INT": "  "}):
            assert get_int_env("MEDIA_TEST_INT", 7) == 7

    def test_parses_value(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_INT": "12"}):
            assert get_int_env("MEDIA_TEST_INT", 1) == 12

    def test_invalid_value_raises(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_INT": "twelve"}):
            with pytest.raises(ConfigError, match="expected an integer"):
                get_int_env("MEDIA_TEST_INT", 1)

    def test_below_minimum_raises(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_INT": "0"}):
            with pytest.raises(ConfigError, match="below minimum"):
                get_int_env("MEDIA_TEST_INT", 1, min_val=1)

    def test_above_maximum_raises(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_INT": "100"}):
            with pytest.raises(ConfigError, match="above maximum"):
                get_int_env("MEDIA_TEST_INT", 1, max_val=64)


class TestGetFloatEnv:
    """Tests for float environment parsing."""

    def test_parses_value(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_FLOAT": "2.5"}):
            assert get_float_env("MEDIA_TEST_FLOAT", 1.0) == 2.5

    @pytest.mark.parametrize("value", ["inf", "-inf", "nan"])
    def test_special_values_rejected(self, value):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_FLOAT": value}):
            with pytest.raises(ConfigError, match="special float values"):
                get_float_env("MEDIA_TEST_FLOAT", 1.0)

    def test_range_checked(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_FLOAT": "1.5"}):
            with pytest.raises(ConfigError):
                get_float_env("MEDIA_TEST_FLOAT", 0.5, min_val=0.0, max_val=1.0)


class TestGetBoolEnv:
    """Tests for boolean flags."""

    @pytest.mark.parametrize("value,expected", [("true", True), ("1", True), ("YES", True), ("false", False), ("0", False), ("no", False)])
    def test_accepted_values(self, value, expected):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_BOOL": value}):
            assert get_bool_env("MEDIA_TEST_BOOL", not expected) is expected

    def test_invalid_value_raises(self):
        with mock.patch.dict(os.environ, {"MEDIA_TEST_BOOL": "maybe"}):
            with pytest.raises(ConfigError):
                get_bool_env("MEDIA_TEST_BOOL", False)


class TestParseVariants:
    """Tests for the HLS variant ladder setting."""

    def test_default_ladder(self):
        variants = parse_variants(json.dumps(config.DEFAULT_VARIANTS))
        assert [v.name for v in variants] == ["240p", "480p", "720p"]
        assert variants[2].width == 1280
        assert variants[2].video_bitrate_kbps == 2500

    def test_configured_order_is_kept(self):
        raw = json.dumps(
            [
                {"name": "hi", "width": 1280, "height": 720, "videoBitrateKbps": 2500, "audioBitrateKbps": 128},
                {"name": "lo", "width": 426, "height": 240, "videoBitrateKbps": 400, "audioBitrateKbps": 64},
            ]
        )
        assert [v.name for v in parse_variants(raw)] == ["hi", "lo"]

    def test_malformed_json(self):
        with pytest.raises(ConfigError, match="valid JSON"):
            parse_variants("[{name: 240p}")

    @pytest.mark.parametrize("raw", ["[]", "{}", '"240p"'])
    def test_empty_or_not_a_list(self, raw):
        with pytest.raises(ConfigError, match="non-empty JSON array"):
            parse_variants(raw)

    def test_invalid_entry_reports_index(self):
        raw = json.dumps(
            [
                {"name": "240p", "width": 426, "height": 240, "videoBitrateKbps": 400, "audioBitrateKbps": 64},
                {"name": "bad", "width": 0, "height": 240, "videoBitrateKbps": 400, "audioBitrateKbps": 64},
            ]
        )
        with pytest.raises(ConfigError, match=r"MEDIA_HLS_VARIANTS\[1\]"):
            parse_variants(raw)

    def test_duplicate_names(self):
        entry = {"name": "240p", "width": 426, "height": 240, "videoBitrateKbps": 400, "audioBitrateKbps": 64}
        with pytest.raises(ConfigError, match="duplicate"):
            parse_variants(json.dumps([entry, entry]))


class TestValidateConfig:
    """Tests for startup validation."""

    def test_valid_configuration_passes(self):
        config.validate_config()

    def test_missing_bucket_listed(self):
        with mock.patch.object(config, "S3_PUBLIC_BUCKET", ""), mock.patch.object(config, "S3_SECRET_KEY", ""):
            with pytest.raises(ConfigError) as exc_info:
                config.validate_config()
        assert "MEDIA_S3_PUBLIC_BUCKET" in str(exc_info.value)
        assert "MEDIA_S3_SECRET_KEY" in str(exc_info.value)

    def test_playlist_name_must_be_bare_m3u8(self):
        with mock.patch.object(config, "HLS_PLAYLIST_NAME", "hls/master.m3u8"):
            with pytest.raises(ConfigError, match="MEDIA_HLS_PLAYLIST_NAME"):
                config.validate_config()

    def test_timeout_bounds_must_be_ordered(self):
        with mock.patch.object(config, "FFMPEG_TIMEOUT_MINIMUM", 900), mock.patch.object(
            config, "FFMPEG_TIMEOUT_MAXIMUM", 600
        ):
            with pytest.raises(ConfigError, match="MEDIA_FFMPEG_TIMEOUT_MINIMUM"):
                config.validate_config()

    def test_block_time_must_fit_socket_timeout(self):
        with mock.patch.object(config, "QUEUE_BLOCK_MS", 10000), mock.patch.object(
            config, "REDIS_SOCKET_TIMEOUT", 5.0
        ):
            with pytest.raises(ConfigError, match="MEDIA_QUEUE_BLOCK_MS"):
                config.validate_config()
