import json
import logging

import pytest

from tierstack.logger import JsonFormatter, configure_logging


@pytest.fixture
def root_logger():
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    formatters = [h.formatter for h in handlers]
    yield root
    for handler, formatter in zip(handlers, formatters):
        handler.setFormatter(formatter)
    root.handlers[:] = handlers
    root.setLevel(level)


class TestJsonLogging:
    def test_extra_fields_are_emitted(self):
        """Test one JSON object per record, carrying the extra fields"""
        record = logging.LogRecord("tierstack.orchestrator", logging.INFO, __file__, 1, "Stack %s", ("available",), None)
        record.stack = "quarkfin-network-dev"

        line = json.loads(JsonFormatter().format(record))

        assert line["message"] == "Stack available"
        assert line["level"] == "INFO"
        assert line["logger"] == "tierstack.orchestrator"
        assert line["stack"] == "quarkfin-network-dev"
        assert "msg" not in line

    def test_configure_sets_level_and_formatter(self, root_logger):
        """Test module loggers inherit the configured root"""
        configure_logging("warning")

        assert root_logger.level == logging.WARNING
        assert all(isinstance(h.formatter, JsonFormatter) for h in root_logger.handlers)
        assert not logging.getLogger("tierstack.ledger").isEnabledFor(logging.INFO)
