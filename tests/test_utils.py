"""
Tests for retry and logging utilities.
"""

import json
import logging
from unittest.mock import Mock, patch

import pytest

from src.utils.logging import _DefaultFields, _make_formatter, get_logger, link_context
from src.utils.retry import RetryConfig, get_retry_stats, reset_retry_stats, retry_call, with_retry


class TestRetry:
    """Test retry_call and with_retry."""

    def setup_method(self):
        reset_retry_stats()

    @patch("src.utils.retry.time.sleep")
    def test_succeeds_after_transient_failures(self, mock_sleep):
        fn = Mock(side_effect=[ConnectionError("down"), ConnectionError("down"), "ok"])
        cfg = RetryConfig(max_retries=3, initial_backoff=0.1, max_backoff=1.0, jitter=0.0, retry_on=(ConnectionError,))

        assert retry_call(fn, cfg=cfg) == "ok"
        assert fn.call_count == 3
        assert [c.args[0] for c in mock_sleep.call_args_list] == [0.1, 0.2]
        assert get_retry_stats()["retries"] == 2

    @patch("src.utils.retry.time.sleep")
    def test_exhaustion_reraises(self, mock_sleep):
        fn = Mock(side_effect=TimeoutError("slow"))
        cfg = RetryConfig(max_retries=2, jitter=0.0, retry_on=(TimeoutError,))

        with pytest.raises(TimeoutError):
            retry_call(fn, cfg=cfg)
        assert fn.call_count == 3
        assert get_retry_stats()["retry_exhaustions"] == 1

    def test_other_errors_propagate_immediately(self):
        fn = Mock(side_effect=ValueError("bad"))

        with pytest.raises(ValueError):
            retry_call(fn, cfg=RetryConfig(retry_on=(ConnectionError,)))
        assert fn.call_count == 1

    @patch("src.utils.retry.time.sleep")
    def test_decorator(self, mock_sleep):
        calls = []

        @with_retry(cfg=RetryConfig(max_retries=1, jitter=0.0, retry_on=(ConnectionError,)))
        def flaky(x):
            calls.append(x)
            if len(calls) == 1:
                raise ConnectionError("once")
            return x * 2

        assert flaky(4) == 8
        assert calls == [4, 4]


class TestLogging:
    """Test structured logging helpers."""

    def test_link_context(self):
        assert link_context("ACME_LIVE_abc12345", "CLICKED") == {
            "link_uid": "ACME_LIVE_abc12345",
            "status": "CLICKED",
            "request_id": "",
        }

    def test_default_fields_filter(self):
        record = logging.LogRecord("x", logging.INFO, __file__, 1, "hello", None, None)

        assert _DefaultFields().filter(record)
        assert record.link_uid == "" and record.status == "" and record.request_id == ""

    def test_key_value_format(self, monkeypatch):
        monkeypatch.delenv("LOG_FORMAT", raising=False)
        record = logging.LogRecord("linkgate", logging.INFO, __file__, 1, "admitted", None, None)
        record.__dict__.update(link_context("TEST_abc12345", "CLICKED"))
        _DefaultFields().filter(record)

        line = _make_formatter().format(record)

        assert "msg=admitted" in line
        assert "link_uid=TEST_abc12345" in line
        assert "status=CLICKED" in line

    def test_json_format(self, monkeypatch):
        monkeypatch.setenv("LOG_FORMAT", "json")
        record = logging.LogRecord("linkgate", logging.WARNING, __file__, 1, "blocked", None, None)
        record.__dict__.update(link_context("TEST_abc12345", "GEO_BLOCKED"))
        _DefaultFields().filter(record)

        payload = json.loads(_make_formatter().format(record))

        assert payload["message"] == "blocked"
        assert payload["link_uid"] == "TEST_abc12345"
        assert payload["status"] == "GEO_BLOCKED"

    def test_get_logger_is_cached(self):
        first = get_logger("linkgate.test")
        assert get_logger("linkgate.test") is first
        assert len(first.handlers) == 1
        assert first.propagate is False
