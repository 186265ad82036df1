"""Tests for configuration management."""

import pytest
import yaml

from crawlfront.foundation.config import (
    BillingConfig, ConfigManager, CrawlfrontConfig, EngineSettings
)
from crawlfront.foundation.errors import ConfigurationError


class TestConfigDefaults:
    """Default configuration values."""

    def test_default_sections(self):
        config = CrawlfrontConfig()

        assert config.engines.http.max_concurrency == 10
        assert config.engines.playwright.enabled is True
        assert config.crawl.strategy == "same-domain"
        assert config.jobs.expire_seconds["crawl_root"] == 3 * 3600
        assert config.jobs.expire_seconds["scrape"] == 3600
        assert config.storage.database_path.endswith("crawlfront.db")

    def test_billing_defaults_allow_negative_balance(self):
        billing = BillingConfig()

        assert billing.credits_enabled is True
        assert billing.pre_check is False
        assert billing.default_cost == 1

    def test_global_section_uses_alias(self):
        manager = ConfigManager()

        assert manager.get_setting("global.log_level") == "INFO"
        assert manager.config.global_.log_level == "INFO"


class TestConfigManager:
    """Dot-notation access and loading."""

    def test_get_and_set_setting(self):
        manager = ConfigManager()

        manager.set_setting("engines.http.max_retries", 5)

        assert manager.get_setting("engines.http.max_retries") == 5
        assert manager.config.engines.http.max_retries == 5

    def test_get_setting_default_for_missing_key(self):
        manager = ConfigManager()

        assert manager.get_setting("engines.unknown.max_retries", "fallback") == "fallback"

    def test_load_from_file_merges_over_defaults(self, temp_dir):
        config_file = temp_dir / "config.yaml"
        config_file.write_text(yaml.safe_dump({
            "engines": {"http": {"max_concurrency": 3}},
            "billing": {"default_cost": 2},
        }))

        manager = ConfigManager(config_path=config_file)
        manager.load_from_file()

        assert manager.config.engines.http.max_concurrency == 3
        # Untouched keys in the same section keep their defaults
        assert manager.config.engines.http.max_retries == 2
        assert manager.config.billing.default_cost == 2

    def test_invalid_yaml_raises_configuration_error(self, temp_dir):
        config_file = temp_dir / "broken.yaml"
        config_file.write_text("engines: [unclosed")

        manager = ConfigManager(config_path=config_file)
        with pytest.raises(ConfigurationError):
            manager.load_from_file()

    def test_non_mapping_yaml_rejected(self, temp_dir):
        config_file = temp_dir / "list.yaml"
        config_file.write_text("- a\n- b\n")

        manager = ConfigManager(config_path=config_file)
        with pytest.raises(ConfigurationError):
            manager.load_from_file()

    def test_environment_overrides_file(self, temp_dir, monkeypatch):
        config_file = temp_dir / "config.yaml"
        config_file.write_text(yaml.safe_dump({"engines": {"http": {"max_retries": 4}}}))
        monkeypatch.setenv("CRAWLFRONT_CONFIG_PATH", str(temp_dir / "absent.yaml"))
        monkeypatch.setenv("CRAWLFRONT_ENGINES__HTTP__MAX_RETRIES", "7")
        monkeypatch.setenv("CRAWLFRONT_BILLING__PRE_CHECK", "true")

        manager = ConfigManager(config_path=config_file)
        manager.load_hierarchical()

        assert manager.get_setting("engines.http.max_retries") == 7
        assert manager.get_setting("billing.pre_check") is True

    def test_save_and_reload(self, temp_dir):
        config_file = temp_dir / "saved.yaml"
        manager = ConfigManager(config_path=config_file)
        manager.set_setting("crawl.limit", 42)
        manager.save_to_file()

        reloaded = ConfigManager(config_path=config_file)
        reloaded.load_from_file()

        assert reloaded.config.crawl.limit == 42


class TestEngineSettings:
    """Validation of per-engine pool settings."""

    def test_get_engine_settings(self):
        manager = ConfigManager()

        settings = manager.get_engine_settings("http")

        assert isinstance(settings, EngineSettings)
        assert settings.max_concurrency == 10

    def test_unknown_engine_gets_defaults(self):
        settings = ConfigManager().get_engine_settings("custom")

        assert settings.min_concurrency == 1
        assert settings.max_concurrency == 5

    @pytest.mark.parametrize("overrides", [
        {"min_concurrency": 0},
        {"max_concurrency": 0},
        {"min_concurrency": 4, "max_concurrency": 2},
        {"max_retries": -1},
        {"request_timeout": 0},
        {"retry_base_delay": -1},
    ])
    def test_invalid_settings_rejected(self, overrides):
        with pytest.raises(ConfigurationError):
            EngineSettings(**overrides).validate_settings("http")

    def test_invalid_values_are_not_clamped(self):
        manager = ConfigManager()
        manager.set_setting("engines.http.min_concurrency", 8)
        manager.set_setting("engines.http.max_concurrency", 2)

        with pytest.raises(ConfigurationError) as exc_info:
            manager.get_engine_settings("http")

        assert exc_info.value.details["config_key"] == "engines.http.min_concurrency"

    @pytest.mark.parametrize("key", ["min_concurrency", "max_concurrency", "max_retries"])
    def test_boolean_counts_rejected(self, key):
        manager = ConfigManager()
        manager.set_setting(f"engines.http.{key}", True)

        with pytest.raises(ConfigurationError):
            manager.get_engine_settings("http")

    def test_boolean_concurrency_rejected_on_unvalidated_settings(self):
        settings = EngineSettings.model_construct(max_concurrency=True)

        with pytest.raises(ConfigurationError) as exc_info:
            settings.validate_settings("http")

        assert exc_info.value.details["config_key"] == "engines.http.max_concurrency"
