"""Tests for structured event logging."""

import json
import logging

from common.logs import EVENTS_LOGGER_NAME, configure_logging, log_event


def test_log_event_writes_one_json_document(caplog):
    with caplog.at_level(logging.DEBUG, logger=EVENTS_LOGGER_NAME):
        logging.getLogger(EVENTS_LOGGER_NAME).propagate = True
        try:
            log_event("worker", "Media transcode job failed", level="error", jobId="j", attempt=2, step=None)
        finally:
            logging.getLogger(EVENTS_LOGGER_NAME).propagate = False

    [record] = [r for r in caplog.records if r.name == EVENTS_LOGGER_NAME]
    assert record.levelno == logging.ERROR
    entry = json.loads(record.getMessage())
    assert entry["component"] == "worker"
    assert entry["message"] == "Media transcode job failed"
    assert entry["jobId"] == "j"
    assert entry["attempt"] == 2
    assert "step" not in entry
    assert "timestamp" in entry


def test_configure_logging_is_idempotent():
    configure_logging("DEBUG")
    configure_logging("INFO")
    events = logging.getLogger(EVENTS_LOGGER_NAME)
    assert len(events.handlers) == 1
    assert events.propagate is False
    assert logging.getLogger("botocore").level == logging.WARNING
