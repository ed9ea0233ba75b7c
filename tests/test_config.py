"""
Tests for configuration, logging and system wiring
"""

import json
import logging
import pytest

from bank_ledger.config import LedgerConfig, reload_config, get_config
from bank_ledger.logging_config import setup_logging, log_action, JSONFormatter
from bank_ledger.storage import InMemoryStorage, SQLiteStorage
from bank_ledger.system import BankingSystem, create_storage


class TestLedgerConfig:
    """Test environment-driven settings"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("BANK_LEDGER_MAX_CONFLICT_RETRIES", raising=False)
        config = LedgerConfig(_env_file=None)

        assert config.database_url == "sqlite:///bank_ledger.db"
        assert config.default_currency == "USD"
        assert config.account_number_prefix == "ACC"
        assert config.max_conflict_retries == 3
        assert config.enable_audit_logging

    def test_environment_overrides(self, monkeypatch):
        monkeypatch.setenv("BANK_LEDGER_DATABASE_URL", "memory://")
        monkeypatch.setenv("BANK_LEDGER_MAX_CONFLICT_RETRIES", "7")
        monkeypatch.setenv("BANK_LEDGER_ENABLE_AUDIT_LOGGING", "false")

        config = reload_config()

        assert config is get_config()
        assert config.database_url == "memory://"
        assert config.max_conflict_retries == 7
        assert not config.enable_audit_logging

        monkeypatch.undo()
        reload_config()


class TestLogging:
    """Test structured JSON logging"""

    def test_log_action_emits_structured_json(self, tmp_path):
        log_file = tmp_path / "ledger.log"
        logger = setup_logging(level="INFO", logger_name="bank_ledger.test", log_file=str(log_file))

        log_action(
            logger, "info", "Transfer completed",
            user_id="user-1", action="transfer_funds", resource="transfer:TXN_1",
            extra={"amount": "USD 30.00"}
        )
        log_action(logger, "debug", "Not emitted")
        for handler in logger.handlers:
            handler.flush()

        lines = log_file.read_text().splitlines()
        assert len(lines) == 1
        entry = json.loads(lines[0])
        assert entry["message"] == "Transfer completed"
        assert entry["level"] == "INFO"
        assert entry["user_id"] == "user-1"
        assert entry["action"] == "transfer_funds"
        assert entry["resource"] == "transfer:TXN_1"
        assert entry["extra"] == {"amount": "USD 30.00"}

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_setup_logging_closes_replaced_handlers(self, tmp_path):
        logger = setup_logging(logger_name="bank_ledger.reload", log_file=str(tmp_path / "first.log"))
        first_handler = logger.handlers[0]

        logger = setup_logging(logger_name="bank_ledger.reload", log_file=str(tmp_path / "second.log"))

        assert first_handler not in logger.handlers
        assert first_handler.stream is None
        assert len(logger.handlers) == 1

        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

    def test_exception_attached_when_requested(self, tmp_path):
        log_file = tmp_path / "errors.log"
        logger = setup_logging(logger_name="bank_ledger.errors_test", log_file=str(log_file))

        try:
            raise RuntimeError("audit disk full")
        except RuntimeError:
            log_action(logger, "error", "Audit event could not be written", exc_info=True)
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)

        entry = json.loads(log_file.read_text().splitlines()[0])
        assert "RuntimeError: audit disk full" in entry["exception"]

    def test_formatter_omits_missing_fields(self):
        record = logging.LogRecord("bank_ledger", logging.WARNING, __file__, 1, "plain", (), None)
        entry = json.loads(JSONFormatter().format(record))

        assert entry["message"] == "plain"
        assert "user_id" not in entry
        assert "extra" not in entry


class TestSystemWiring:
    """Test composition from configuration"""

    def test_create_storage(self, tmp_path):
        assert isinstance(create_storage("memory://"), InMemoryStorage)

        storage = create_storage(f"sqlite:///{tmp_path / 'ledger.db'}")
        assert isinstance(storage, SQLiteStorage)
        assert storage.db_path == str(tmp_path / "ledger.db")
        storage.close()

        with pytest.raises(ValueError, match="Unsupported database URL"):
            create_storage("postgresql://localhost/ledger")

    def test_banking_system_uses_config(self):
        config = LedgerConfig(
            database_url="memory://",
            account_number_prefix="NB",
            max_conflict_retries=5,
            enable_audit_logging=False,
            default_currency="EUR",
            log_level="WARNING"
        )
        system = BankingSystem(config)

        assert isinstance(system.storage, InMemoryStorage)
        assert system.ledger.max_conflict_retries == 5
        assert not system.audit_trail.enabled

        account = system.account_manager.open_account("user-1", "Alice")
        assert account.account_number.startswith("NB")
        assert system.handlers.default_currency.code == "EUR"
        system.close()
