"""Configuration module for the Approver service.

Implements Pydantic v2 Settings for configuration management with support for:
- Environment variables (APPROVER_* prefix)
- YAML/TOML configuration files
- Command-line argument overrides
- Fail-fast validation at startup

Configuration priority (later overrides earlier):
1. Built-in defaults
2. Configuration file (YAML/TOML)
3. Environment variables
4. Command-line arguments
"""

import warnings
from pathlib import Path
from typing import Literal

from pydantic import Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration with sensible defaults.

    Example:
        # Load from environment only
        settings = Settings()

        # Override specific values
        settings = Settings(kv_backend="redis", redis_url="redis://cache:6379/0")
    """

    model_config = SettingsConfigDict(
        env_prefix="APPROVER_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",  # Ignore unknown fields
    )

    # ========================================
    # Application Settings
    # ========================================

    environment: Literal["lab", "staging", "prod"] = Field(
        default="lab", description="Deployment environment"
    )

    debug: bool = Field(default=False, description="Enable debug mode with verbose logging")

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO", description="Logging level"
    )

    log_format: Literal["json", "text"] = Field(default="json", description="Log output format")

    log_file: str | None = Field(default=None, description="Optional JSON log file path")

    # ========================================
    # Key/Value Storage
    # ========================================

    kv_backend: Literal["memory", "redis"] = Field(
        default="memory", description="Backing key/value store for approval records"
    )

    redis_url: str = Field(
        default="redis://localhost:6379/0",
        description="Redis connection URL (redis:// or rediss:// for TLS)",
    )

    redis_pool_size: int = Field(default=10, ge=1, le=100, description="Redis connection pool size")

    redis_timeout_seconds: float = Field(
        default=5.0, ge=0.1, le=60.0, description="Redis socket timeout"
    )

    redis_key_prefix: str = Field(
        default="", description="Namespace prepended to every key written to Redis"
    )

    kv_max_scan_keys: int = Field(
        default=10000,
        ge=1,
        le=1_000_000,
        description="Upper bound on keys examined by a single index scan",
    )

    kv_list_page_size: int = Field(
        default=1000, ge=1, le=100_000, description="Keys requested per list call during scans"
    )

    # ========================================
    # Timeout Sweeper
    # ========================================

    timeout_sweeper_enabled: bool = Field(
        default=True, description="Automatically cancel pending requests that time out"
    )

    timeout_check_interval_seconds: int = Field(
        default=300, ge=1, le=86400, description="Interval between timeout sweeps"
    )

    approval_timeout_seconds: int = Field(
        default=1800, ge=1, le=30 * 86400, description="Age after which a pending request times out"
    )

    timeout_cancel_retry_attempts: int = Field(
        default=1, ge=0, le=10, description="Extra attempts for a timeout cancel that fails to persist"
    )

    # ========================================
    # Observability
    # ========================================

    metrics_port: int | None = Field(
        default=None, ge=1, le=65535, description="Serve Prometheus metrics on this port"
    )

    metrics_host: str = Field(default="127.0.0.1", description="Metrics endpoint bind address")

    # ========================================
    # Validators
    # ========================================

    @field_validator("redis_url")
    @classmethod
    def validate_redis_url(cls, v: str) -> str:
        """Validate Redis URL scheme."""
        if not (v.startswith("redis://") or v.startswith("rediss://") or v.startswith("unix://")):
            raise ValueError("redis_url must start with redis://, rediss:// or unix://")
        return v

    @model_validator(mode="after")
    def validate_sweep_interval(self) -> "Settings":
        """Warn when sweeps run less often than requests time out."""
        if self.timeout_check_interval_seconds > self.approval_timeout_seconds:
            warnings.warn(
                "timeout_check_interval_seconds exceeds approval_timeout_seconds; "
                "requests may stay pending well past their timeout",
                UserWarning,
                stacklevel=2,
            )
        return self

    @model_validator(mode="after")
    def validate_prod_backend(self) -> "Settings":
        """Require a durable backend outside lab."""
        if self.environment in ["staging", "prod"] and self.kv_backend == "memory":
            raise ValueError("kv_backend 'memory' is only allowed in the lab environment")
        return self

    # ========================================
    # Helper Methods
    # ========================================

    @property
    def approval_timeout_millis(self) -> int:
        """Approval timeout in epoch-millisecond units."""
        return self.approval_timeout_seconds * 1000

    def to_dict(self) -> dict:
        """Convert settings to dictionary, masking secrets."""
        data = self.model_dump()
        if "@" in data.get("redis_url", ""):
            scheme, _, rest = data["redis_url"].partition("://")
            data["redis_url"] = f"{scheme}://***REDACTED***@{rest.rsplit('@', 1)[-1]}"
        return data


# ========================================
# Global Settings Instance
# ========================================

_settings: Settings | None = None


def get_settings() -> Settings:
    """Get global settings instance (singleton).

    Returns:
        Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def set_settings(settings: Settings) -> None:
    """Set global settings instance.

    Args:
        settings: Settings instance to use globally
    """
    global _settings
    _settings = settings


def load_settings_from_file(config_file: Path | str) -> Settings:
    """Load settings from YAML or TOML configuration file.

    Args:
        config_file: Path to configuration file

    Returns:
        Settings instance loaded from file

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If config file format is invalid

    Example:
        settings = load_settings_from_file("config/prod.yaml")
        set_settings(settings)
    """
    config_path = Path(config_file)

    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    suffix = config_path.suffix.lower()

    if suffix in [".yaml", ".yml"]:
        import yaml

        with open(config_path) as f:
            config_data = yaml.safe_load(f) or {}
    elif suffix == ".toml":
        import tomllib

        with open(config_path, "rb") as f:
            config_data = tomllib.load(f)
    else:
        raise ValueError(f"Unsupported config file format: {suffix}. Use .yaml, .yml, or .toml")

    return Settings(**config_data)
