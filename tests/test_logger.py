"""Unit tests for structured JSON logging."""
import sys
sys.path.insert(0, 'backend')

import json
import logging

from logger import JSONFormatter, setup_logging


def make_record(message="Recorded turn", **extra):
    record = logging.LogRecord(
        name="services.ledger_service",
        level=logging.INFO,
        pathname=__file__,
        lineno=1,
        msg=message,
        args=(),
        exc_info=None,
    )
    for key, value in extra.items():
        setattr(record, key, value)
    return record


class TestJSONFormatter:
    """Test suite for JSONFormatter."""

    def test_basic_fields(self):
        data = json.loads(JSONFormatter().format(make_record()))

        assert data["level"] == "INFO"
        assert data["logger"] == "services.ledger_service"
        assert data["message"] == "Recorded turn"
        assert data["timestamp"].endswith("Z")

    def test_ledger_context_fields(self):
        record = make_record(conversation_id="c1", turn_index=2, chain_hash="abc", duration_ms=15)

        data = json.loads(JSONFormatter().format(record))

        assert data["conversation_id"] == "c1"
        assert data["turn_index"] == 2
        assert data["chain_hash"] == "abc"
        assert data["duration_ms"] == 15
        assert "error_code" not in data

    def test_exception_included(self):
        try:
            raise ValueError("bad state")
        except ValueError:
            record = make_record()
            record.exc_info = sys.exc_info()

        data = json.loads(JSONFormatter().format(record))

        assert "ValueError: bad state" in data["exception"]


class TestSetupLogging:
    """Test suite for setup_logging."""

    def test_replaces_root_handlers(self):
        root = logging.getLogger()
        saved_handlers, saved_level = list(root.handlers), root.level
        try:
            setup_logging("DEBUG")

            assert len(root.handlers) == 1
            assert isinstance(root.handlers[0].formatter, JSONFormatter)
            assert root.level == logging.DEBUG
        finally:
            for handler in list(root.handlers):
                root.removeHandler(handler)
            for handler in saved_handlers:
                root.addHandler(handler)
            root.setLevel(saved_level)
