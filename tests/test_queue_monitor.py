"""
Tests for the queue event monitor.
"""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from worker.queue_monitor import handle_event, main, run_monitor


class TestHandleEvent:
    """Tests for turning one event into a log line."""

    def test_completed_event_includes_result(self):
        fields = {
            "event": "completed",
            "jobId": "media-transcode:abc:1",
            "mediaAssetId": "abc",
            "attempt": "1",
            "attemptsMade": "0",
            "result": '{"skipped": false}',
        }
        with patch("worker.queue_monitor.log_event") as mock_log:
            assert handle_event("media-transcode", "5-0", fields) == "completed"

        args, kwargs = mock_log.call_args
        assert args == ("queue", "Job completed")
        assert kwargs["level"] == "info"
        assert kwargs["returnvalue"] == {"skipped": False}
        assert kwargs["eventId"] == "5-0"
        assert kwargs["jobId"] == "media-transcode:abc:1"

    def test_failed_event_is_error(self):
        fields = {"event": "failed", "jobId": "j", "error": "No video stream found in media", "final": "true"}
        with patch("worker.queue_monitor.log_event") as mock_log:
            handle_event("media-transcode", "6-0", fields)

        kwargs = mock_log.call_args.kwargs
        assert kwargs["level"] == "error"
        assert kwargs["failedReason"] == "No video stream found in media"
        assert kwargs["final"] is True

    def test_retrying_event_is_warning(self):
        fields = {"event": "retrying", "jobId": "j", "error": "timeout", "delayMs": "30000"}
        with patch("worker.queue_monitor.log_event") as mock_log:
            handle_event("media-transcode", "7-0", fields)

        kwargs = mock_log.call_args.kwargs
        assert kwargs["level"] == "warning"
        assert kwargs["final"] is False
        assert kwargs["delayMs"] == "30000"

    def test_stalled_event_names_consumer(self):
        with patch("worker.queue_monitor.log_event") as mock_log:
            handle_event("media-transcode", "8-0", {"event": "stalled", "consumer": "host-1"})
        assert mock_log.call_args.kwargs["consumer"] == "host-1"

    def test_dead_event_carries_dead_letter_id(self):
        fields = {"event": "dead", "jobId": "j", "error": "Job stalled 3 time(s)", "deadId": "42-0"}
        with patch("worker.queue_monitor.log_event") as mock_log:
            assert handle_event("media-transcode", "9-0", fields) == "dead"

        args, kwargs = mock_log.call_args
        assert args == ("queue", "Job moved to dead letter stream")
        assert kwargs["level"] == "error"
        assert kwargs["deadId"] == "42-0"
        assert kwargs["failedReason"] == "Job stalled 3 time(s)"

    def test_unknown_event_ignored(self):
        with patch("worker.queue_monitor.log_event") as mock_log:
            assert handle_event("media-transcode", "9-0", {"event": "paused"}) is None
        mock_log.assert_not_called()


class TestRunMonitor:
    """Tests for the monitor loop."""

    @pytest.mark.asyncio
    async def test_follows_stream_until_stopped(self):
        queue = MagicMock()
        queue.name = "media-transcode"
        batches = [
            [("1-0", {"event": "waiting"}), ("2-0", {"event": "active"})],
            [("3-0", {"event": "unknown"})],
        ]
        queue.read_events = AsyncMock(side_effect=lambda last_id, block_ms: batches.pop(0))

        handled = await run_monitor(queue, lambda: not batches, block_ms=10)

        assert handled == 2
        last_ids = [c.args[0] for c in queue.read_events.await_args_list]
        assert last_ids == ["$", "2-0"]

    @pytest.mark.asyncio
    async def test_redis_errors_are_logged_and_retried(self):
        queue = MagicMock()
        queue.name = "media-transcode"
        results = [RedisConnectionError("Connection refused"), [("1-0", {"event": "completed"})]]

        def read(last_id, block_ms):
            result = results.pop(0)
            if isinstance(result, Exception):
                raise result
            return result

        queue.read_events = AsyncMock(side_effect=read)

        with patch("worker.queue_monitor.asyncio.sleep", new_callable=AsyncMock) as mock_sleep, patch(
            "worker.queue_monitor.log_event"
        ) as mock_log:
            handled = await run_monitor(queue, lambda: not results, block_ms=10)

        assert handled == 1
        mock_sleep.assert_awaited_once()
        error_calls = [c for c in mock_log.call_args_list if c.args[1] == "Queue events error"]
        assert error_calls[0].kwargs["error"] == "Connection refused"


class TestMain:
    def test_invalid_config_exits_before_connecting(self, monkeypatch):
        monkeypatch.setattr("config.S3_PRIVATE_BUCKET", "")
        with patch("worker.queue_monitor.RedisClient") as mock_redis:
            with pytest.raises(SystemExit) as exc_info:
                main()

        assert exc_info.value.code == 1
        mock_redis.assert_not_called()
