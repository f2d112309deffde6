"""
Unit tests for configuration loading, logging setup, typed settings and
persisted installation state.
"""

import logging
from datetime import UTC, datetime
from unittest.mock import patch

import pytest
import yaml

from config_manager import (
    DEFAULT_CONFIG,
    BudgetSettings,
    InsightSettings,
    InstallationState,
    MemoryKeyValueStore,
    SyncSettings,
    YamlKeyValueStore,
    load_config,
    save_config,
    setup_logging,
)
from exceptions import ConfigError


@pytest.fixture
def restore_root_logger():
    """Restore root handlers after tests that reconfigure logging."""
    root = logging.getLogger()
    handlers = list(root.handlers)
    level = root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers = handlers
    root.setLevel(level)


class TestSetupLogging:
    """Test setup_logging function."""

    def test_basic_logging_config(self, restore_root_logger):
        """Test basic logging configuration with defaults."""
        config = {
            "logging": {
                "level": "INFO",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        }

        setup_logging(config)

        assert logging.getLogger().level == logging.INFO
        stream_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.StreamHandler)]
        assert len(stream_handlers) >= 1

    def test_file_logging_enabled(self, tmp_path, restore_root_logger):
        """Test file logging is enabled when a file is specified."""
        log_file = tmp_path / "logs" / "sync.log"
        config = {"logging": {"level": "DEBUG", "file": str(log_file)}}

        setup_logging(config)

        file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert len(file_handlers) == 1
        assert log_file.exists()
        assert logging.getLogger().level == logging.DEBUG

    def test_invalid_log_level_defaults_to_info(self, restore_root_logger):
        """Test that invalid log level defaults to INFO with a warning."""
        config = {"logging": {"level": "INVALID_LEVEL"}}

        with patch('config_manager.logger') as mock_logger:
            setup_logging(config)

        assert logging.getLogger().level == logging.INFO
        mock_logger.warning.assert_called_once()

    def test_log_format_includes_timestamp(self, restore_root_logger):
        """Formats without a timestamp get one prepended."""
        config = {"logging": {"format": "%(levelname)s - %(message)s"}}

        setup_logging(config)

        formatter = logging.getLogger().handlers[0].formatter
        assert formatter._fmt.startswith("%(asctime)s")

    def test_file_logging_error_non_fatal(self, restore_root_logger):
        """An unopenable log file only produces a warning."""
        config = {"logging": {"file": "sync.log"}}

        with patch('config_manager.logging.FileHandler', side_effect=PermissionError("denied")), \
                patch('config_manager.resolve_log_path', return_value="sync.log"), \
                patch('config_manager.logger') as mock_logger:
            setup_logging(config)

        mock_logger.warning.assert_called_once()
        file_handlers = [h for h in logging.getLogger().handlers if isinstance(h, logging.FileHandler)]
        assert file_handlers == []

    def test_missing_logging_config_uses_defaults(self, restore_root_logger):
        """No logging section means INFO to stdout."""
        setup_logging({})

        assert logging.getLogger().level == logging.INFO


class TestLoadConfig:
    """Test YAML configuration loading."""

    def test_load_config_success(self, tmp_path):
        """Values in the file override defaults; missing keys are filled in."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.dump({"sync": {"min_interval_seconds": 60}}))

        config = load_config(config_file)

        assert config["sync"]["min_interval_seconds"] == 60
        assert config["sync"]["batch_headroom"] == 50
        assert config["database"]["max_batch_size"] == 500

    def test_load_config_file_not_found(self, tmp_path):
        """A missing file yields a copy of the defaults."""
        config = load_config(tmp_path / "missing.yaml")

        assert config == DEFAULT_CONFIG
        config["sync"]["min_interval_seconds"] = 1
        assert DEFAULT_CONFIG["sync"]["min_interval_seconds"] == 3600

    def test_load_config_invalid_yaml(self, tmp_path):
        """Malformed YAML raises ConfigError."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("sync: [unclosed")

        with pytest.raises(ConfigError):
            load_config(config_file)

    def test_load_config_not_a_mapping(self, tmp_path):
        """A top-level list is rejected."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("- a\n- b\n")

        with pytest.raises(ConfigError):
            load_config(config_file)

    def test_load_config_empty_file(self, tmp_path):
        """An empty file yields defaults."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text("")

        assert load_config(config_file) == DEFAULT_CONFIG

    def test_save_config_preserves_existing_keys(self, tmp_path):
        """Saving keeps keys that are not being written."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(yaml.dump({"security": {"encryption_key": "abc"}}))

        assert save_config({"sync": {"min_interval_seconds": 10}}, config_file)

        saved = yaml.safe_load(config_file.read_text())
        assert saved["security"]["encryption_key"] == "abc"
        assert saved["sync"]["min_interval_seconds"] == 10


class TestSettings:
    """Test typed settings built from configuration."""

    def test_defaults(self):
        """Test settings built from the default configuration."""
        sync = SyncSettings.from_config({})
        budget = BudgetSettings.from_config({})
        insights = InsightSettings.from_config({})

        assert sync.min_interval_seconds == 3600
        assert sync.batch_headroom == 50
        assert budget.history_buffer == pytest.approx(1.10)
        assert budget.default_monthly_income == 4000.0
        assert insights.dining_min_count == 5
        assert "netflix" in insights.subscription_brands

    def test_overrides_and_keyword_case(self):
        """Configured values win and keywords are lowercased."""
        config = {"insights": {"dining_keywords": ["Cafe", "BISTRO"], "dining_min_count": 2}}

        insights = InsightSettings.from_config(config)

        assert insights.dining_keywords == ["cafe", "bistro"]
        assert insights.dining_min_count == 2
        assert insights.subscription_keywords == DEFAULT_CONFIG["insights"]["subscription_keywords"]


class TestKeyValueStores:
    """Test the key/value stores backing installation state."""

    def test_memory_store(self):
        """Test get, set and delete on the in-memory store."""
        store = MemoryKeyValueStore({"a": 1})
        store.set("b", 2)
        store.delete("a")
        store.delete("missing")

        assert store.get("a") is None
        assert store.get("b") == 2
        assert store.get("c", "fallback") == "fallback"

    def test_yaml_store_persists_across_instances(self, tmp_path):
        """Values written to the YAML store are seen by a new instance."""
        path = tmp_path / "state" / "state.yaml"
        YamlKeyValueStore(path).set("key", "value")

        reopened = YamlKeyValueStore(path)
        assert reopened.get("key") == "value"

        reopened.delete("key")
        assert YamlKeyValueStore(path).get("key") is None

    def test_yaml_store_invalid_file(self, tmp_path):
        """Test that a corrupt state file raises ConfigError."""
        path = tmp_path / "state.yaml"
        path.write_text("key: [unclosed")

        with pytest.raises(ConfigError):
            YamlKeyValueStore(path).get("key")


class TestInstallationState:
    """Test per-user sync state."""

    def test_last_sync_time_round_trip(self, tmp_path):
        """Sync times are kept per user."""
        state = InstallationState(YamlKeyValueStore(tmp_path / "state.yaml"))
        when = datetime(2024, 6, 15, 12, 0, tzinfo=UTC)

        assert state.last_sync_time("u1") is None
        state.set_last_sync_time("u1", when)

        assert state.last_sync_time("u1") == when
        assert state.last_sync_time("u2") is None

    def test_malformed_last_sync_time_ignored(self):
        """Test that an unparseable sync time reads as None."""
        store = MemoryKeyValueStore({"user_u1_last_sync_time": "not-a-date"})

        assert InstallationState(store).last_sync_time("u1") is None

    def test_naive_timestamp_in_state_file_is_utc(self, tmp_path):
        """An unquoted timestamp written by hand is read back as UTC."""
        path = tmp_path / "state.yaml"
        path.write_text("user_u1_last_sync_time: 2024-06-15 12:00:00\n")

        last = InstallationState(YamlKeyValueStore(path)).last_sync_time("u1")

        assert last == datetime(2024, 6, 15, 12, 0, tzinfo=UTC)
        assert last.tzinfo is not None

    def test_migration_flag_is_per_user(self):
        """The migration flag is kept per user."""
        state = InstallationState(MemoryKeyValueStore())

        state.mark_migration_complete("u1")

        assert state.has_completed_migration("u1") is True
        assert state.has_completed_migration("u2") is False
