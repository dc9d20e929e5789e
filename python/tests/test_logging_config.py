"""Tests for structured logging configuration."""

import json
import logging
import sys

import pytest

from bucketsync.logging_config import JSONFormatter, configure_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    yield root
    root.handlers[:] = handlers
    root.setLevel(level)


def make_record(msg="Fetched %d objects", args=(3,), **extra) -> logging.LogRecord:
    record = logging.LogRecord(
        name="bucketsync.executor",
        level=logging.WARNING,
        pathname=__file__,
        lineno=1,
        msg=msg,
        args=args,
        exc_info=None,
    )
    record.__dict__.update(extra)
    return record


class TestJSONFormatter:
    """Tests for JSONFormatter."""

    def test_basic_fields(self):
        entry = json.loads(JSONFormatter().format(make_record()))
        assert entry["level"] == "WARNING"
        assert entry["logger"] == "bucketsync.executor"
        assert entry["message"] == "Fetched 3 objects"
        assert entry["timestamp"].endswith("+00:00")
        assert "thread" in entry

    def test_extras_included(self):
        record = make_record(key="docs/a.txt", attempt=2, duration_ms=12.5)
        entry = json.loads(JSONFormatter().format(record))
        assert entry["key"] == "docs/a.txt"
        assert entry["attempt"] == 2
        assert entry["duration_ms"] == 12.5
        assert "status" not in entry

    def test_exception_rendered(self):
        try:
            raise ValueError("boom")
        except ValueError:
            record = make_record(msg="failed", args=())
            record.exc_info = sys.exc_info()
        entry = json.loads(JSONFormatter().format(record))
        assert "ValueError: boom" in entry["exception"]


class TestConfigureLogging:
    """Tests for configure_logging()."""

    def test_json_format(self, restore_root_logger):
        configure_logging(level="DEBUG", fmt="json")
        assert restore_root_logger.level == logging.DEBUG
        assert len(restore_root_logger.handlers) == 1
        assert isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)

    def test_text_format(self, restore_root_logger):
        configure_logging(level="warning", fmt="text")
        assert restore_root_logger.level == logging.WARNING
        assert not isinstance(restore_root_logger.handlers[0].formatter, JSONFormatter)

    def test_unknown_level_defaults_to_info(self, restore_root_logger):
        configure_logging(level="CHATTY")
        assert restore_root_logger.level == logging.INFO
