"""Configuration management with YAML and environment variable support"""

import os
from typing import Any, Dict, List, Optional, Tuple, Type

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource, SettingsConfigDict

MIN_MINUTES = 1


class BaseConfigSection(BaseSettings):
    """Base class for all config sections with correct environment variable precedence.

    Priority, highest first:
    1. Environment variables
    2. Init kwargs (YAML data)
    3. Default values
    """

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: Type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> Tuple[PydanticBaseSettingsSource, ...]:
        """Customize settings source priority: env vars > init kwargs > defaults."""
        return (env_settings, init_settings, dotenv_settings, file_secret_settings)


class ServerConfig(BaseConfigSection):
    """Server configuration"""

    host: str = (
        "0.0.0.0"  # nosec B104 - Intentional binding to all interfaces for containerized deployment
    )
    port: int = 8000

    model_config = SettingsConfigDict(env_prefix="APP_SERVER_")


class DownloadsConfig(BaseConfigSection):
    """Download job lifecycle configuration"""

    scratch_dir: str = "temp"
    ytdlp_binary: str = "yt-dlp"
    active_ttl_minutes: int = 15
    completed_ttl_minutes: int = 15
    cleanup_interval_minutes: int = 5
    max_file_size_mb: int = 500
    chunk_size: int = 65536  # bytes per streamed chunk

    model_config = SettingsConfigDict(env_prefix="APP_DOWNLOADS_")

    @field_validator("active_ttl_minutes", "completed_ttl_minutes", "cleanup_interval_minutes")
    @classmethod
    def clamp_minutes(cls, v: int) -> int:
        return max(v, MIN_MINUTES)

    @field_validator("max_file_size_mb")
    @classmethod
    def clamp_file_size(cls, v: int) -> int:
        return max(v, 1)

    @field_validator("chunk_size")
    @classmethod
    def validate_chunk_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("chunk_size must be positive")
        return v

    @property
    def scratch_path(self) -> str:
        """Absolute scratch directory path."""
        return os.path.abspath(self.scratch_dir)


class RateLimitingConfig(BaseConfigSection):
    """Rate limiting configuration"""

    max_requests: int = 5  # admissions per window and client
    window_minutes: int = 60

    model_config = SettingsConfigDict(env_prefix="APP_RATE_LIMITING_")

    @field_validator("max_requests")
    @classmethod
    def clamp_max_requests(cls, v: int) -> int:
        return max(v, 1)

    @field_validator("window_minutes")
    @classmethod
    def clamp_window(cls, v: int) -> int:
        return max(v, MIN_MINUTES)


class LoggingConfig(BaseConfigSection):
    """Logging configuration"""

    level: str = "INFO"
    format: str = "json"

    model_config = SettingsConfigDict(env_prefix="APP_LOGGING_")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        v_upper = v.upper()
        if v_upper not in valid_levels:
            raise ValueError(f"level must be one of {valid_levels}")
        return v_upper


class SecurityConfig(BaseConfigSection):
    """Security configuration"""

    cors_origins: List[str] = Field(default_factory=lambda: ["*"])
    trust_forwarded_headers: bool = True

    model_config = SettingsConfigDict(env_prefix="APP_SECURITY_")


class MonitoringConfig(BaseConfigSection):
    """Monitoring configuration"""

    metrics_enabled: bool = True

    model_config = SettingsConfigDict(env_prefix="APP_MONITORING_")


class TestingConfig(BaseConfigSection):
    """Test mode configuration"""

    __test__ = False  # not a pytest test class

    mock_extractor: bool = False

    model_config = SettingsConfigDict(env_prefix="APP_TESTING_")


class Config(BaseSettings):
    """Main application configuration"""

    server: ServerConfig = Field(default_factory=ServerConfig)
    downloads: DownloadsConfig = Field(default_factory=DownloadsConfig)
    rate_limiting: RateLimitingConfig = Field(default_factory=RateLimitingConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    security: SecurityConfig = Field(default_factory=SecurityConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    testing: TestingConfig = Field(default_factory=TestingConfig)

    model_config = SettingsConfigDict(env_prefix="APP_")


SECTIONS: Dict[str, Type[BaseConfigSection]] = {
    "server": ServerConfig,
    "downloads": DownloadsConfig,
    "rate_limiting": RateLimitingConfig,
    "logging": LoggingConfig,
    "security": SecurityConfig,
    "monitoring": MonitoringConfig,
    "testing": TestingConfig,
}


class ConfigService:
    """Service for loading and managing configuration"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or os.environ.get("APP_CONFIG_PATH", "config.yaml")
        self._config: Optional[Config] = None

    def load(self) -> Config:
        """Load configuration from YAML file with environment variable overrides.

        BaseConfigSection.settings_customise_sources() makes environment variables
        win over YAML values, which in turn win over defaults.
        """
        config_data: Dict[str, Any] = {}

        if os.path.exists(self.config_path):
            with open(self.config_path, "r", encoding="utf-8") as f:
                yaml_data = yaml.safe_load(f)
                if yaml_data:
                    config_data = yaml_data

        sections = {
            name: section_cls(**(config_data.get(name) or {}))
            for name, section_cls in SECTIONS.items()
        }
        self._config = Config(**sections)

        return self._config

    def validate(self) -> bool:
        """Validate the loaded configuration"""
        if self._config is None:
            raise ValueError("Configuration not loaded. Call load() first.")

        if not self._config.downloads.scratch_dir.strip():
            raise ValueError("downloads.scratch_dir must not be empty")

        return True

    @property
    def config(self) -> Config:
        """Get the loaded configuration"""
        if self._config is None:
            raise ValueError("Configuration not loaded. Call load() first.")
        return self._config
