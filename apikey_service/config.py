"""
Configuration management with environment variable validation.
Loads and validates all configuration from environment variables once at
process start.

The HMAC salt must never change for the lifetime of issued keys: every
stored digest depends on it.
"""
from functools import lru_cache
from typing import Dict, Optional

from pydantic import Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from apikey_service.errors import ConfigurationError

KEY_ENVIRONMENTS = ("test", "live")
EXPIRATION_POLICIES = ("30d", "90d", "1y", "never")
DEFAULT_TIER_LIMITS = {
    "standard": 1000,
    "premium": 5000,
    "enterprise": 25000,
}


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Application
    app_name: str = Field(default="apikey-service")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")

    # Security
    api_key_salt: str = Field(...)  # Required
    api_key_prefix: str = Field(default="sk")
    api_key_environment: Optional[str] = Field(default=None)

    # Key policy
    default_max_keys_per_owner: int = Field(default=5, ge=1)
    default_key_expiration: str = Field(default="1y")
    enable_usage_logging: bool = Field(default=True)
    tier_limits: Dict[str, int] = Field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))

    # Database
    database_url: Optional[str] = Field(default=None)
    database_echo: bool = Field(default=False)

    # Logging
    log_format: str = Field(default="json")
    log_file_enabled: bool = Field(default=False)
    log_file_path: str = Field(default="logs/apikey-service.log")
    log_file_max_size: int = Field(default=10485760)  # 10MB
    log_file_backup_count: int = Field(default=5)

    @field_validator("api_key_salt")
    @classmethod
    def validate_salt(cls, v: str) -> str:
        """Ensure the HMAC salt is not a placeholder."""
        if not v or v.lower() in ["change_me", "changeme", "password", "secret", "salt"]:
            raise ValueError(
                "api_key_salt must be set to a secure value. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )
        if len(v) < 32:
            raise ValueError("api_key_salt must be at least 32 characters long")
        return v

    @field_validator("api_key_prefix")
    @classmethod
    def validate_prefix(cls, v: str) -> str:
        if not v or "_" in v or not v.isalnum():
            raise ValueError("api_key_prefix must be a non-empty alphanumeric string without underscores")
        return v

    @field_validator("api_key_environment")
    @classmethod
    def validate_key_environment(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in KEY_ENVIRONMENTS:
            raise ValueError(f"api_key_environment must be one of: {list(KEY_ENVIRONMENTS)}")
        return v

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        allowed = ["development", "test", "staging", "production"]
        if v not in allowed:
            raise ValueError(f"environment must be one of: {allowed}")
        return v

    @field_validator("default_key_expiration")
    @classmethod
    def validate_expiration(cls, v: str) -> str:
        if v not in EXPIRATION_POLICIES:
            raise ValueError(f"default_key_expiration must be one of: {list(EXPIRATION_POLICIES)}")
        return v

    @field_validator("tier_limits")
    @classmethod
    def validate_tier_limits(cls, v: Dict[str, int]) -> Dict[str, int]:
        missing = [tier for tier in DEFAULT_TIER_LIMITS if tier not in v]
        if missing:
            raise ValueError(f"tier_limits is missing tiers: {missing}")
        for tier, limit in v.items():
            if limit <= 0:
                raise ValueError(f"tier_limits[{tier}] must be positive")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in allowed:
            raise ValueError(f"log_level must be one of: {allowed}")
        return v.upper()

    @field_validator("log_format")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        allowed = ["json", "console"]
        if v not in allowed:
            raise ValueError(f"log_format must be one of: {allowed}")
        return v

    @property
    def key_environment(self) -> str:
        """Environment tag stamped into newly issued keys."""
        if self.api_key_environment:
            return self.api_key_environment
        return "live" if self.environment == "production" else "test"


def load_settings(**overrides) -> Settings:
    """
    Build settings from the environment.

    Raises:
        ConfigurationError: If required variables are missing or invalid
    """
    try:
        return Settings(**overrides)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid configuration: {e}", cause=e) from e


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, loaded once."""
    return load_settings()
