"""
Unit tests for configuration loading and validation.

Tests strict validation and error handling for settings files.
"""

import logging
import os
import tempfile
from decimal import Decimal

import pytest
import yaml

from ledger_saga.config.loader import (
    HealthConfig,
    LoggingConfig,
    MediaBackend,
    MonitorConfig,
    OrchestratorConfig,
    Settings,
    describe,
    load_settings,
)
from ledger_saga.logging_utils import LOG_FORMAT, configure_logging


class TestSettingsLoading:
    """Test settings loading and validation."""

    def setup_method(self):
        """Set up test environment."""
        self.temp_dir = tempfile.mkdtemp()

    def teardown_method(self):
        """Clean up test environment."""
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write_config(self, config_data: dict, filename: str = "config.yaml") -> str:
        """Write configuration data to temporary file."""
        config_path = os.path.join(self.temp_dir, filename)
        with open(config_path, 'w', encoding='utf-8') as f:
            yaml.dump(config_data, f)
        return config_path

    def test_no_path_returns_defaults(self):
        """Test that omitting the path yields default settings."""
        settings = load_settings(None)

        assert settings == Settings()
        assert settings.orchestrator.verification_attempts == 5
        assert settings.health.cache_ttl_s == 60.0
        assert settings.stores.media.backend == MediaBackend.LOCAL

    def test_valid_config_loads_correctly(self):
        """Test that a valid configuration loads correctly."""
        config_data = {
            "orchestrator": {
                "verification_attempts": 8,
                "verification_delay_s": 2,
                "orphan_grace_period_minutes": 30,
                "critical_fields": ["title", "ticket_price", "start_date"],
                "min_principal_balance": "0.5",
                "allowed_networks": [43114],
            },
            "health": {"cache_ttl_s": 30, "timeout_s": 2.5},
            "monitor": {"alerts_enabled": False, "sweep_interval_minutes": 15},
            "stores": {
                "cache_db_path": "/tmp/cache.db",
                "network_id": 43114,
                "media": {"backend": "KUBO", "api_url": "http://ipfs:5001"},
            },
            "logging": {"level": "debug", "file": "/tmp/saga.log"},
        }

        settings = load_settings(self._write_config(config_data))

        assert settings.orchestrator.verification_attempts == 8
        assert settings.orchestrator.verification_delay_s == 2.0
        assert settings.orchestrator.critical_fields == ("title", "ticket_price", "start_date")
        assert settings.orchestrator.min_principal_balance == Decimal("0.5")
        assert settings.orchestrator.allowed_networks == (43114,)
        assert settings.health.cache_ttl_s == 30.0
        assert settings.health.degraded_threshold_ms == 2000.0
        assert settings.monitor.alerts_enabled is False
        assert settings.stores.network_id == 43114
        assert settings.stores.media.backend == MediaBackend.KUBO
        assert settings.stores.media.api_url == "http://ipfs:5001"
        assert settings.stores.ledger_db_path == "ledger_saga_ledger.db"
        assert settings.logging.file == "/tmp/saga.log"

    def test_missing_file_raises_error(self):
        """Test that missing config file raises error."""
        with pytest.raises(FileNotFoundError, match="Config file not found"):
            load_settings("nonexistent.yaml")

    def test_empty_config_raises_error(self):
        """Test that empty config file raises error."""
        config_path = self._write_config({})

        with pytest.raises(ValueError, match="Configuration file is empty"):
            load_settings(config_path)

    def test_invalid_yaml_raises_error(self):
        """Test that invalid YAML raises error."""
        config_path = os.path.join(self.temp_dir, "invalid.yaml")
        with open(config_path, 'w') as f:
            f.write("invalid: yaml: content: [")

        with pytest.raises(yaml.YAMLError):
            load_settings(config_path)

    def test_non_mapping_root_raises_error(self):
        config_path = os.path.join(self.temp_dir, "list.yaml")
        with open(config_path, 'w') as f:
            f.write("- a\n- b\n")

        with pytest.raises(ValueError, match="must be a dictionary"):
            load_settings(config_path)

    def test_unknown_top_level_keys_raise_error(self):
        """Test that unknown top-level keys raise error."""
        config_path = self._write_config({"orchestrator": {}, "metrics": {"port": 9000}})

        with pytest.raises(ValueError, match="Unknown keys in config"):
            load_settings(config_path)

    def test_unknown_section_keys_raise_error(self):
        """Test that unknown keys inside a section raise error."""
        config_path = self._write_config({"health": {"cache_ttl_s": 30, "retries": 3}})

        with pytest.raises(ValueError, match="Unknown keys in health"):
            load_settings(config_path)

    def test_unknown_media_keys_raise_error(self):
        config_path = self._write_config({"stores": {"media": {"backend": "local", "bucket": "x"}}})

        with pytest.raises(ValueError, match="Unknown keys in stores.media"):
            load_settings(config_path)

    @pytest.mark.parametrize("section,values,message", [
        ("orchestrator", {"verification_attempts": "five"}, "must be an integer"),
        ("orchestrator", {"verification_attempts": True}, "must be an integer"),
        ("orchestrator", {"critical_fields": "title"}, "list of strings"),
        ("orchestrator", {"allowed_networks": ["fuji"]}, "list of integers"),
        ("orchestrator", {"min_principal_balance": "lots"}, "decimal number"),
        ("health", {"timeout_s": "fast"}, "must be a number"),
        ("monitor", {"alerts_enabled": "yes"}, "must be a boolean"),
        ("stores", {"cache_db_path": 42}, "must be a string"),
        ("stores", {"media": {"backend": "s3"}}, "must be one of"),
    ])
    def test_wrong_types_raise_error(self, section, values, message):
        config_path = self._write_config({section: values})

        with pytest.raises(ValueError, match=message):
            load_settings(config_path)

    @pytest.mark.parametrize("section,values,message", [
        ("orchestrator", {"verification_attempts": 0}, "verification_attempts must be >= 1"),
        ("orchestrator", {"critical_fields": []}, "critical_fields must not be empty"),
        ("orchestrator", {"signer_pattern": "("}, "not a valid regex"),
        ("health", {"timeout_s": 0}, "timeout_s must be > 0"),
        ("monitor", {"error_rate_threshold_pct": 120}, "between 0 and 100"),
        ("monitor", {"latency_smoothing": 0}, "latency_smoothing"),
        ("logging", {"level": "LOUD"}, "Unknown logging level"),
    ])
    def test_out_of_range_values_raise_error(self, section, values, message):
        config_path = self._write_config({section: values})

        with pytest.raises(ValueError, match=message):
            load_settings(config_path)


class TestConfigDataclasses:
    """Test direct construction and diagnostics."""

    def test_defaults_are_valid(self):
        OrchestratorConfig()
        HealthConfig()
        MonitorConfig()

    def test_negative_grace_period_is_rejected(self):
        with pytest.raises(ValueError, match="orphan_grace_period_minutes"):
            OrchestratorConfig(orphan_grace_period_minutes=-1)

    def test_describe_contains_no_secrets(self):
        summary = describe(Settings())

        assert summary["media_backend"] == "local"
        assert summary["allowed_networks"] == [43113, 43114]
        assert not any("token" in key for key in summary)


class TestLoggingSetup:
    """Test process-wide logging configuration."""

    def teardown_method(self):
        for handler in logging.getLogger().handlers[:]:
            handler.close()
            logging.getLogger().removeHandler(handler)

    def test_file_handler_receives_records(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            log_file = os.path.join(temp_dir, "logs", "saga.log")

            configure_logging(LoggingConfig(level="DEBUG", file=log_file))
            logging.getLogger("ledger_saga.test").debug("sweep finished")
            for handler in logging.getLogger().handlers:
                handler.flush()

            with open(log_file, encoding='utf-8') as f:
                content = f.read()
            self.teardown_method()

        assert "| DEBUG | ledger_saga.test | sweep finished" in content
        assert logging.getLogger().level == logging.DEBUG

    def test_reconfiguring_replaces_handlers(self):
        configure_logging(LoggingConfig(level="INFO"))
        configure_logging(LoggingConfig(level="WARNING"))

        ours = [h for h in logging.getLogger().handlers if h.formatter and h.formatter._fmt == LOG_FORMAT]
        assert len(ours) == 1
        assert logging.getLogger().level == logging.WARNING
