"""Configuration management for crawlfront."""

import os
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml
from pydantic import BaseModel, Field, field_validator, ConfigDict
from pydantic_settings import BaseSettings

from .errors import ConfigurationError


def _not_int(value: Any) -> bool:
    return isinstance(value, bool) or not isinstance(value, int)


class EngineSettings(BaseModel):
    """Worker pool and retry settings for one fetch engine."""
    enabled: bool = True
    min_concurrency: int = 1
    max_concurrency: int = 5
    max_retries: int = 2
    request_timeout: float = 60.0
    idle_timeout: float = 30.0
    retry_base_delay: float = 1.0
    retry_max_delay: float = 30.0

    model_config = ConfigDict(extra="allow")

    @field_validator("min_concurrency", "max_concurrency", "max_retries", mode="before")
    @classmethod
    def reject_booleans(cls, v):
        if isinstance(v, bool):
            raise ValueError(f"expected an integer, got {v}")
        return v

    def validate_settings(self, engine: str = "engine") -> "EngineSettings":
        """Check the pool settings, raising ConfigurationError on bad values.

        Values are never clamped.
        """
        if _not_int(self.min_concurrency) or self.min_concurrency < 1:
            raise ConfigurationError(
                f"{engine}: min_concurrency must be at least 1, got {self.min_concurrency}",
                config_key=f"engines.{engine}.min_concurrency"
            )
        if _not_int(self.max_concurrency) or self.max_concurrency < 1:
            raise ConfigurationError(
                f"{engine}: max_concurrency must be at least 1, got {self.max_concurrency}",
                config_key=f"engines.{engine}.max_concurrency"
            )
        if self.min_concurrency > self.max_concurrency:
            raise ConfigurationError(
                f"{engine}: min_concurrency ({self.min_concurrency}) cannot be greater "
                f"than max_concurrency ({self.max_concurrency})",
                config_key=f"engines.{engine}.min_concurrency"
            )
        if _not_int(self.max_retries) or self.max_retries < 0:
            raise ConfigurationError(
                f"{engine}: max_retries must be a non-negative integer, got {self.max_retries}",
                config_key=f"engines.{engine}.max_retries"
            )
        if self.request_timeout <= 0:
            raise ConfigurationError(
                f"{engine}: request_timeout must be positive",
                config_key=f"engines.{engine}.request_timeout"
            )
        if self.idle_timeout <= 0:
            raise ConfigurationError(
                f"{engine}: idle_timeout must be positive",
                config_key=f"engines.{engine}.idle_timeout"
            )
        if self.retry_base_delay < 0 or self.retry_max_delay < 0:
            raise ConfigurationError(
                f"{engine}: retry delays cannot be negative",
                config_key=f"engines.{engine}.retry_base_delay"
            )
        return self


class EnginesConfig(BaseModel):
    """Per-engine settings, keyed by engine identifier."""
    http: EngineSettings = Field(default_factory=lambda: EngineSettings(max_concurrency=10))
    playwright: EngineSettings = Field(default_factory=EngineSettings)
    chromium: EngineSettings = Field(default_factory=EngineSettings)

    model_config = ConfigDict(extra="allow")


class CrawlConfig(BaseModel):
    """Default crawling configuration."""
    max_depth: int = 10
    limit: int = 100
    strategy: str = "same-domain"
    ignore_query_parameters: bool = False

    model_config = ConfigDict(extra="allow")


class JobsConfig(BaseModel):
    """Job retention settings."""
    expire_seconds: Dict[str, int] = Field(default_factory=lambda: {
        "scrape": 3600,
        "search": 3600,
        "crawl_root": 3 * 3600,
        "crawl_child": 3 * 3600,
    })
    default_expire_seconds: int = 3600
    poll_interval: float = 0.5

    model_config = ConfigDict(extra="allow")


class BillingConfig(BaseModel):
    """Credit billing settings."""
    credits_enabled: bool = True
    pre_check: bool = False
    default_cost: int = 1
    extract_json_credits: int = 0

    model_config = ConfigDict(extra="allow")


class HttpConfig(BaseModel):
    """Settings for the HTTP fetch engine."""
    user_agent: str = "crawlfront/0.1"
    follow_redirects: bool = True

    model_config = ConfigDict(extra="allow")


class StorageConfig(BaseModel):
    """Storage configuration."""
    database_path: str = "~/.crawlfront/crawlfront.db"

    model_config = ConfigDict(extra="allow")


class GlobalConfig(BaseModel):
    """Global system configuration."""
    log_level: str = "INFO"
    log_file: Optional[str] = None

    model_config = ConfigDict(extra="allow")


class CrawlfrontConfig(BaseSettings):
    """Main configuration class that combines all settings."""

    version: str = "1.0"

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    engines: EnginesConfig = Field(default_factory=EnginesConfig)
    crawl: CrawlConfig = Field(default_factory=CrawlConfig)
    jobs: JobsConfig = Field(default_factory=JobsConfig)
    billing: BillingConfig = Field(default_factory=BillingConfig)
    http: HttpConfig = Field(default_factory=HttpConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)

    model_config = ConfigDict(
        env_prefix="CRAWLFRONT_",
        env_nested_delimiter="__",
        case_sensitive=False,
        extra="allow",
        populate_by_name=True,
    )

    @field_validator("storage")
    @classmethod
    def expand_storage_paths(cls, v):
        """Expand user paths in storage configuration."""
        if isinstance(v, dict):
            v = StorageConfig(**v)
        if v.database_path != ":memory:":
            v.database_path = str(Path(v.database_path).expanduser())
        return v

    @field_validator("global_")
    @classmethod
    def expand_global_paths(cls, v):
        """Expand user paths in global configuration."""
        if isinstance(v, dict):
            v = GlobalConfig(**v)
        if v.log_file and v.log_file.startswith("~"):
            v.log_file = str(Path(v.log_file).expanduser())
        return v


class ConfigManager:
    """Manages configuration loading, validation, and access."""

    def __init__(self, config_path: Optional[Union[str, Path]] = None):
        self.config_path = Path(config_path) if config_path else None
        self._config: Dict[str, Any] = {}
        self._pydantic_config: Optional[CrawlfrontConfig] = None
        self._load_default_config()

    def _get_default_config_path(self) -> Path:
        """Get the default configuration file path."""
        env_path = os.getenv("CRAWLFRONT_CONFIG_PATH")
        if env_path:
            return Path(env_path).expanduser()
        return Path.home() / ".crawlfront" / "config.yaml"

    def get_system_config_path(self) -> Path:
        """Get the system configuration file path."""
        return Path("/etc/crawlfront/config.yaml")

    def _load_default_config(self) -> None:
        """Load default configuration as dict."""
        default_config = CrawlfrontConfig()
        self._config = default_config.model_dump(by_alias=True)
        self._pydantic_config = default_config

    @property
    def config(self) -> CrawlfrontConfig:
        """Get the current configuration as Pydantic model.

        Raises:
            ConfigurationError: If the merged configuration does not validate
        """
        if self._pydantic_config is None:
            try:
                self._pydantic_config = CrawlfrontConfig(**self._config)
            except ValueError as e:
                raise ConfigurationError(f"Invalid configuration: {e}") from e
        return self._pydantic_config

    def get_setting(self, key: str, default: Any = None) -> Any:
        """Get a configuration setting using dot notation.

        Args:
            key: Setting key in dot notation (e.g., 'engines.http.max_retries')
            default: Default value if setting is not found

        Returns:
            Configuration value or default
        """
        value: Any = self._config
        for k in key.split('.'):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def set_setting(self, key: str, value: Any) -> None:
        """Set a configuration setting (runtime only).

        Args:
            key: Setting key in dot notation
            value: Value to set
        """
        keys = key.split('.')
        current = self._config
        for k in keys[:-1]:
            if not isinstance(current.get(k), dict):
                current[k] = {}
            current = current[k]
        current[keys[-1]] = value

        # Rebuilt lazily on next access
        self._pydantic_config = None

    def get_engine_settings(self, engine: str) -> EngineSettings:
        """Get validated pool settings for an engine.

        Raises:
            ConfigurationError: If the engine settings are invalid
        """
        raw = self.get_setting(f"engines.{engine}")
        if raw is None:
            settings = EngineSettings()
        else:
            try:
                settings = EngineSettings(**raw)
            except ValueError as e:
                raise ConfigurationError(
                    f"Invalid settings for engine {engine}: {e}",
                    config_key=f"engines.{engine}"
                ) from e
        return settings.validate_settings(engine)

    def load_from_file(self) -> None:
        """Load configuration from file.

        Raises:
            ConfigurationError: If the file exists but cannot be parsed
        """
        if not self.config_path or not self.config_path.exists():
            return

        self.merge_config(self._read_yaml(self.config_path))

    @staticmethod
    def _read_yaml(path: Path) -> Dict[str, Any]:
        try:
            with open(path, 'r', encoding='utf-8') as f:
                file_data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"Failed to load configuration from {path}: {e}"
            ) from e

        if not isinstance(file_data, dict):
            raise ConfigurationError(
                f"Configuration file {path} must contain a mapping"
            )
        return file_data

    def save_to_file(self) -> None:
        """Save configuration to file."""
        if not self.config_path:
            return

        self.config_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.safe_dump(self._config, f, default_flow_style=False, indent=2)

    def load_from_environment(self) -> None:
        """Load CRAWLFRONT_ prefixed environment variables.

        ``CRAWLFRONT_ENGINES__HTTP__MAX_RETRIES=3`` maps to
        ``engines.http.max_retries``.
        """
        for key, value in os.environ.items():
            if not key.startswith("CRAWLFRONT_") or key == "CRAWLFRONT_CONFIG_PATH":
                continue

            config_key = key[len("CRAWLFRONT_"):].lower().replace("__", ".")

            if value.lower() in ("true", "false"):
                value = value.lower() == "true"
            elif value.isdigit():
                value = int(value)
            elif value.count(".") == 1 and value.replace(".", "").isdigit():
                value = float(value)

            self.set_setting(config_key, value)

        self._pydantic_config = None

    def merge_config(self, new_config: Dict[str, Any]) -> None:
        """Merge new configuration with existing."""
        self._deep_merge(self._config, new_config)
        self._pydantic_config = None

    def _deep_merge(self, target: Dict[str, Any], source: Dict[str, Any]) -> None:
        """Deep merge source into target dictionary."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._deep_merge(target[key], value)
            else:
                target[key] = value

    def load_hierarchical(self) -> None:
        """Load configuration hierarchically (system -> user -> custom -> env)."""
        self._load_default_config()

        for path in (self.get_system_config_path(), self._get_default_config_path()):
            if path.exists():
                self.merge_config(self._read_yaml(path))

        if self.config_path and self.config_path.exists():
            self.load_from_file()

        self.load_from_environment()

