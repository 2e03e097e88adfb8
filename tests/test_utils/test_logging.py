"""Tests for the JSON structured logger and argument sanitizing."""

import json
import logging

from mediaqueue.utils.logging import get_logger, sanitize_args, truncate


class TestStructuredLogger:
    def test_json_output_includes_bound_context(self, caplog):
        """Test bind() context is merged into every entry."""
        logger = get_logger("tests.structured").bind(request_id="req_1")

        with caplog.at_level(logging.INFO, logger="tests.structured"):
            logger.info("download_started", attempt="default")

        entry = json.loads(caplog.records[-1].getMessage())
        assert entry == {"event": "download_started", "request_id": "req_1", "attempt": "default"}

    def test_bind_does_not_mutate_parent(self, caplog):
        parent = get_logger("tests.structured.parent")
        parent.bind(request_id="req_1")

        with caplog.at_level(logging.INFO, logger="tests.structured.parent"):
            parent.info("plain")

        assert json.loads(caplog.records[-1].getMessage()) == {"event": "plain"}


class TestSanitizeArgs:
    def test_redacts_sensitive_values(self):
        args = ["--cookies-from-browser", "chrome:Profile 1", "--proxy", "http://u:p@h", "url"]

        assert sanitize_args(args) == [
            "--cookies-from-browser",
            "***REDACTED***",
            "--proxy",
            "***REDACTED***",
            "url",
        ]

    def test_truncates_long_args(self):
        sanitized = sanitize_args(["x" * 500])

        assert sanitized[0] == "x" * 200 + "..."


class TestTruncate:
    def test_keeps_tail(self):
        assert truncate("abcdef", limit=3) == "...def"
        assert truncate("abc", limit=3) == "abc"
