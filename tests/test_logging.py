"""
Tests for structured logging setup
"""

import json
import logging

from lending_ledger.logging_config import JSONFormatter, setup_logging, get_logger, log_action


class ListHandler(logging.Handler):

    def __init__(self):
        super().__init__()
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


class TestStructuredLogging:

    def setup_method(self):
        self.logger = setup_logging(level="INFO", logger_name="lending_ledger.test")
        self.handler = ListHandler()
        self.handler.setFormatter(JSONFormatter())
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        for handler in self.logger.handlers[:]:
            self.logger.removeHandler(handler)

    def test_log_action_fields(self):
        log_action(
            self.logger, "info", "Transaction 7 posted",
            user_id="alice", action="post_transaction", resource="ledger_transaction:7",
            extra={"amount_cents": 1000, "currency": "USD"}
        )

        entry = json.loads(self.handler.lines[-1])
        assert entry["level"] == "INFO"
        assert entry["logger"] == "lending_ledger.test"
        assert entry["message"] == "Transaction 7 posted"
        assert entry["user_id"] == "alice"
        assert entry["resource"] == "ledger_transaction:7"
        assert entry["extra"] == {"amount_cents": 1000, "currency": "USD"}
        assert "correlation_id" not in entry

    def test_below_level_is_dropped(self):
        log_action(self.logger, "debug", "Idempotent replay", action="post_transaction")

        assert self.handler.lines == []

    def test_exception_is_included(self):
        try:
            raise RuntimeError("storage offline")
        except RuntimeError:
            self.logger.exception("mature_due: loan 3 failed unexpectedly")

        entry = json.loads(self.handler.lines[-1])
        assert entry["level"] == "ERROR"
        assert "storage offline" in entry["exception"]

    def test_setup_replaces_handlers(self):
        logger = setup_logging(level="WARNING", logger_name="lending_ledger.test", log_format="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate
        assert get_logger("lending_ledger.test") is logger
