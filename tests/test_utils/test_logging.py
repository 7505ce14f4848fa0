"""Tests for structlog configuration."""

import json
import logging

import pytest
import structlog

from bulkgen.utils.logging import configure_logging, get_logger


@pytest.fixture(autouse=True)
def restore_logging():
    """configure_logging mutates global state; put it back afterwards."""
    root = logging.getLogger()
    level = root.level
    yield
    root.handlers = [
        handler
        for handler in root.handlers
        if not isinstance(handler.formatter, structlog.stdlib.ProcessorFormatter)
    ]
    root.setLevel(level)
    structlog.reset_defaults()


class TestConfigureLogging:
    def test_json_output_carries_event_and_fields(self, capsys):
        """[P2] Events render as one JSON object per line with bound fields."""
        configure_logging(level="INFO", json_output=True)

        get_logger("bulkgen.test").info("row_completed", row_id="r-1", credits_charged=2)

        line = capsys.readouterr().out.strip().splitlines()[-1]
        record = json.loads(line)
        assert record["event"] == "row_completed"
        assert record["row_id"] == "r-1"
        assert record["credits_charged"] == 2
        assert record["level"] == "info"

    def test_level_from_environment(self, monkeypatch):
        monkeypatch.setenv("LOG_LEVEL", "warning")

        configure_logging(json_output=False)

        assert logging.getLogger().level == logging.WARNING
        assert logging.getLogger("httpx").level == logging.WARNING
