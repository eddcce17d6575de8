"""
Tests for configuration loading and structured logging
"""

import json
import logging
import pytest
import sys

from loan_ledger import config as config_module
from loan_ledger.config import LedgerConfig, reload_config
from loan_ledger.logging_config import JSONFormatter, log_action, setup_logging


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__()
        self.records = []

    def emit(self, record):
        self.records.append(record)


@pytest.fixture
def isolated_logger():
    """A logger outside the package hierarchy, restored afterwards"""
    name = "ledger_test_logging"
    logger = logging.getLogger(name)
    saved = (logger.handlers[:], logger.level, logger.propagate)
    yield name
    logger.handlers[:] = saved[0]
    logger.setLevel(saved[1])
    logger.propagate = saved[2]


class TestConfig:
    """Test environment-driven settings"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LEDGER_ACCOUNT_ID", raising=False)
        config = LedgerConfig(_env_file=None)

        assert config.account_id == "default"
        assert config.storage_backend == "sqlite"
        assert config.max_field_bytes is None
        assert config.paid_tolerance == "1"
        assert config.enable_penalty_sweep

    def test_environment_override(self, monkeypatch):
        monkeypatch.setenv("LEDGER_ACCOUNT_ID", "lender-7")
        monkeypatch.setenv("LEDGER_STORAGE_BACKEND", "memory")
        monkeypatch.setenv("LEDGER_MAX_FIELD_BYTES", "2048")
        monkeypatch.setenv("LEDGER_ENABLE_PENALTY_SWEEP", "false")
        original = config_module.config
        try:
            config = reload_config()

            assert config.account_id == "lender-7"
            assert config.storage_backend == "memory"
            assert config.max_field_bytes == 2048
            assert not config.enable_penalty_sweep
            assert config_module.get_config() is config
        finally:
            config_module.config = original


class TestStructuredLogging:
    """Test JSON output and action logging"""

    def test_json_formatter_fields(self):
        record = logging.LogRecord("loan_ledger.ledger", logging.INFO, __file__, 1, "Payment received", (), None)
        record.account_id = "acct-1"
        record.action = "PAYMENT"
        record.entity_id = "loan-1"

        data = json.loads(JSONFormatter().format(record))

        assert data["level"] == "INFO"
        assert data["logger"] == "loan_ledger.ledger"
        assert data["message"] == "Payment received"
        assert data["action"] == "PAYMENT"
        assert data["entity_id"] == "loan-1"
        assert "extra" not in data

    def test_json_formatter_exception(self):
        try:
            raise ValueError("broken")
        except ValueError:
            record = logging.LogRecord("x", logging.ERROR, __file__, 1, "failed", (), sys.exc_info())

        data = json.loads(JSONFormatter().format(record))
        assert "ValueError: broken" in data["exception"]

    def test_setup_logging_replaces_handlers(self, isolated_logger):
        setup_logging("DEBUG", "json", logger_name=isolated_logger)
        logger = setup_logging("WARNING", "text", logger_name=isolated_logger)

        assert len(logger.handlers) == 1
        assert not isinstance(logger.handlers[0].formatter, JSONFormatter)
        assert logger.level == logging.WARNING
        assert not logger.propagate

    def test_log_action_attaches_fields(self, isolated_logger):
        logger = setup_logging("INFO", "json", logger_name=isolated_logger)
        handler = ListHandler()
        logger.addHandler(handler)

        log_action(logger, "info", "Added borrower", account_id="acct-1",
                   action="CREATE_BORROWER", entity_id="b1", extra={"risk": "LOW"})
        log_action(logger, "debug", "not emitted")

        assert len(handler.records) == 1
        record = handler.records[0]
        assert record.action == "CREATE_BORROWER"
        assert record.entity_id == "b1"
        assert record.extra == {"risk": "LOW"}
