"""Configuration management using Pydantic Settings."""

from __future__ import annotations

from typing import Optional

from pydantic import Field
from pydantic import field_validator
from pydantic_settings import BaseSettings
from pydantic_settings import SettingsConfigDict


class Settings(BaseSettings):
    """Application settings with environment-based configuration."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # Environment
    environment: str = Field(default="development", description="Environment name")
    debug: bool = Field(default=False, description="Enable debug mode")
    log_level: str = Field(default="INFO", description="Logging level")

    # Database
    database_url: str = Field(
        default="sqlite+aiosqlite:///bot.db",
        description="Database connection URL",
    )
    test_database_url: Optional[str] = Field(
        default=None,
        description="Test database connection URL",
    )

    # Discord Bot
    discord_bot_token: str = Field(
        default="",
        description="Discord bot token",
    )
    discord_application_id: str = Field(
        default="",
        description="Discord application ID",
    )

    # Provider credential encryption
    encryption_key: str = Field(
        default="",
        description="AES-256-GCM key for provider API keys (64 hex characters)",
    )

    # Conversation defaults (per-guild values override these)
    default_context_window: int = Field(
        default=10,
        description="Number of conversation turns included in context",
    )
    default_loop_depth: int = Field(
        default=2,
        description="Maximum agent-to-agent reply depth per root message",
    )

    # Yap (auto-reply) debouncing
    yap_delay_seconds: float = Field(
        default=3.0,
        description="Quiet period before buffered channel activity triggers a reply",
    )
    yap_max_attachments: int = Field(
        default=10,
        description="Maximum attachments carried into a coalesced yap turn",
    )

    # Completion provider
    provider_error_max_chars: int = Field(
        default=500,
        description="Maximum characters of a provider error body shown in Discord",
    )
    completion_timeout: Optional[float] = Field(
        default=None,
        description="Timeout for completion requests in seconds (None disables it)",
    )
    verbose_llm_logging: bool = Field(
        default=False,
        description="Log completion request bodies and stream chunks at DEBUG level",
    )

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        valid_environments = {"development", "testing", "production"}
        if v not in valid_environments:
            raise ValueError(f"Environment must be one of: {valid_environments}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate log level."""
        valid_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v = v.upper()
        if v not in valid_levels:
            raise ValueError(f"Log level must be one of: {valid_levels}")
        return v

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: str) -> str:
        """Validate that a configured encryption key is 32 bytes of hex."""
        v = v.strip()
        if not v:
            # Missing key is reported at startup, not at import time
            return v
        try:
            key_bytes = bytes.fromhex(v)
        except ValueError as e:
            raise ValueError("Encryption key must be hex encoded") from e
        if len(key_bytes) != 32:
            raise ValueError("Encryption key must be a 32-byte key (64 hex characters)")
        return v

    @field_validator("default_context_window", "default_loop_depth", "yap_max_attachments")
    @classmethod
    def validate_non_negative(cls, v: int) -> int:
        """Validate counters are not negative."""
        if v < 0:
            raise ValueError("Value cannot be negative")
        return v

    @property
    def is_testing(self) -> bool:
        """Check if running in testing environment."""
        return self.environment == "testing"

    @property
    def effective_database_url(self) -> str:
        """Get the effective database URL based on environment."""
        if self.is_testing and self.test_database_url:
            return self.test_database_url
        return self.database_url


# Global settings instance
settings = Settings()


def get_settings() -> Settings:
    """Get the global settings instance."""
    return settings


def override_settings(**kwargs) -> Settings:
    """Create a settings instance with overrides (useful for testing)."""
    return Settings(**kwargs)
