"""
Tests for configuration and structured logging
"""

import json
import logging

from loan_ledger.config import LedgerConfig, get_config, reload_config
from loan_ledger.logging_config import JSONFormatter, get_logger, log_action, setup_logging


class TestConfig:

    def test_defaults(self):
        config = LedgerConfig()
        assert config.currency == "DOP"
        assert config.conflict_max_attempts == 5
        assert config.receipt_upload_required is True
        assert config.upload_url == ""

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("LEDGER_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LEDGER_RECEIPT_UPLOAD_REQUIRED", "false")
        monkeypatch.setenv("LEDGER_CONFLICT_MAX_ATTEMPTS", "9")

        config = reload_config()

        assert config.storage_backend == "memory"
        assert config.receipt_upload_required is False
        assert config.conflict_max_attempts == 9
        assert get_config() is config

        monkeypatch.undo()
        reload_config()


class TestStructuredLogging:

    def setup_method(self):
        """Set up test fixtures"""
        self.records = []

        class ListHandler(logging.Handler):
            def emit(handler, record):
                self.records.append(record)

        self.logger = get_logger("loan_ledger.tests")
        self.logger.setLevel(logging.DEBUG)
        self.handler = ListHandler()
        self.logger.addHandler(self.handler)

    def teardown_method(self):
        self.logger.removeHandler(self.handler)

    def test_log_action_attaches_fields(self):
        log_action(self.logger, "info", "Loan created", user_id="OWNER001",
                   action="create_loan", resource="loan:1", extra={"total_amount": "2200"})

        record = self.records[0]
        assert record.action == "create_loan"
        assert record.resource == "loan:1"
        assert record.extra == {"total_amount": "2200"}

        entry = json.loads(JSONFormatter().format(record))
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "OWNER001"
        assert entry["extra"]["total_amount"] == "2200"
        assert "correlation_id" not in entry

    def test_disabled_level_is_skipped(self):
        self.logger.setLevel(logging.WARNING)
        log_action(self.logger, "debug", "noise")
        assert self.records == []

    def test_setup_logging_replaces_handlers(self):
        logger = setup_logging(level="DEBUG", logger_name="loan_ledger.setup_test")
        setup_logging(level="WARNING", logger_name="loan_ledger.setup_test", format_type="text")

        assert len(logger.handlers) == 1
        assert logger.level == logging.WARNING
        assert not logger.propagate
