"""Tests for the JSONL audit trail."""

import json

from inboxkeeper.structured_logger import StructuredLogger


def read_events(path):
    return [json.loads(line) for line in path.read_text().splitlines()]


class TestStructuredLogger:
    def test_sync_event(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        StructuredLogger(str(path)).log_sync("me@example.com", "delta", 3, 40, "1001")

        event = read_events(path)[0]
        assert event["event_type"] == "sync_completed"
        assert event["changed"] == 3
        assert event["checkpoint"] == "1001"
        assert "timestamp" in event

    def test_values_sanitized(self, tmp_path):
        path = tmp_path / "audit.jsonl"
        StructuredLogger(str(path)).log_fallback("priority", "m1", "bad\x00reply" + "x" * 600)

        reason = read_events(path)[0]["reason"]
        assert "\x00" not in reason
        assert len(reason) == 500
        assert reason.endswith("...")

    def test_no_file_is_noop(self):
        StructuredLogger(None).log_shutdown()

    def test_write_failure_not_raised(self, tmp_path):
        logger = StructuredLogger(str(tmp_path / "missing" / "audit.jsonl"))
        logger.log_error("NetworkError", "offline")
