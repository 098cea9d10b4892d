"""
Tests for configuration and structured logging
"""

import json
import logging

from loan_servicing.config import ServicingConfig, reload_config, get_config
from loan_servicing.logging_config import JSONFormatter, get_logger, log_action


class TestServicingConfig:
    """Test environment-based settings"""

    def test_defaults(self, monkeypatch):
        monkeypatch.delenv("LOANS_CURRENCY", raising=False)
        config = ServicingConfig()

        assert config.currency == "KES"
        assert config.collector_id == "mpesa_system"
        assert config.transaction_max_attempts == 5

    def test_environment_prefix(self, monkeypatch):
        monkeypatch.setenv("LOANS_DATABASE_URL", "memory://")
        monkeypatch.setenv("LOANS_SMS_ENABLED", "false")
        monkeypatch.setenv("LOANS_TRANSACTION_MAX_ATTEMPTS", "9")

        config = reload_config()

        assert get_config() is config
        assert config.database_url == "memory://"
        assert config.sms_enabled is False
        assert config.transaction_max_attempts == 9

        monkeypatch.undo()
        reload_config()


class TestStructuredLogging:
    """Test JSON log records"""

    def test_log_action_fields(self):
        logger = logging.getLogger("loan_servicing.test")
        logger.setLevel(logging.INFO)
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(
                logger, "info", "Payment allocated",
                action="payment_allocated", resource="loan:L1", correlation_id="QK1",
                extra={"amount": "1500.00"}
            )
        finally:
            logger.removeHandler(handler)

        [record] = records
        entry = json.loads(JSONFormatter().format(record))
        assert entry["message"] == "Payment allocated"
        assert entry["level"] == "INFO"
        assert entry["action"] == "payment_allocated"
        assert entry["resource"] == "loan:L1"
        assert entry["correlation_id"] == "QK1"
        assert entry["extra"] == {"amount": "1500.00"}

    def test_disabled_level_skipped(self):
        logger = logging.getLogger("loan_servicing.quiet")
        logger.setLevel(logging.ERROR)
        records = []

        class Capture(logging.Handler):
            def emit(self, record):
                records.append(record)

        handler = Capture()
        logger.addHandler(handler)
        try:
            log_action(logger, "info", "not emitted")
        finally:
            logger.removeHandler(handler)

        assert records == []

    def test_module_loggers_share_namespace(self):
        from loan_servicing import async_storage, matching, notifications

        assert matching.logger is get_logger("loan_servicing.matching")
        assert notifications.logger is get_logger("loan_servicing.notifications")
        assert async_storage.logger is get_logger("loan_servicing.storage")
