"""Application settings using Pydantic Settings.

Centralized configuration for the access-control core.

SECURITY: Production requires the following environment variables:
- ACCESS_ENCRYPTION_KEY: content encryption key (min 64 hex chars)

Generate secrets with: python -c "import secrets; print(secrets.token_hex(32))"
"""

import logging
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator

from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class AccessControlSettings(BaseSettings):
    """Main access-control settings."""

    model_config = SettingsConfigDict(
        env_prefix="ACCESS_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Application info
    name: str = Field(default="Analytics Hub Access Control", description="Application name")
    environment: str = Field(default="development", description="Environment name")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=False, description="Emit JSON formatted logs")

    # Decision cache
    cache_enabled: bool = Field(default=True, description="Memoize resolver decisions")
    cache_ttl_seconds: int = Field(
        default=300,
        ge=1,
        description="Upper bound on the lifetime of a cached decision",
    )
    cache_max_entries: int = Field(
        default=10000,
        ge=1,
        description="LRU bound for the decision cache",
    )

    # Mutations
    conflict_retries: int = Field(
        default=3,
        ge=0,
        description="Retries for a grant mutation that lost a concurrent write",
    )

    # Audit
    audit_decisions: bool = Field(
        default=False,
        description="Emit every resolver decision to the audit emitter",
    )

    # Content encryption
    # CRITICAL: Must be set via ACCESS_ENCRYPTION_KEY in production
    encryption_key: Optional[str] = Field(
        default=None,
        description="Hex key for content body encryption - MUST be set in production",
    )

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        level = v.strip().upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            raise ValueError(f"Unknown log level: {v}")
        return level

    @field_validator("encryption_key")
    @classmethod
    def validate_encryption_key(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        try:
            key_bytes = bytes.fromhex(v)
        except ValueError:
            raise ValueError("encryption_key must be a valid hex string")
        if len(key_bytes) < 32:
            raise ValueError("encryption_key must be at least 32 bytes (64 hex chars)")
        return v

    @property
    def is_production(self) -> bool:
        """Check if running in production environment."""
        return self.environment in ("production", "prod", "staging")

    def validate_production_security(self) -> List[str]:
        """
        Validate security requirements for production.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []

        if not self.is_production:
            return errors

        if not self.encryption_key:
            errors.append(
                "ACCESS_ENCRYPTION_KEY is required in production. "
                "Generate with: python -c \"import secrets; print(secrets.token_hex(32))\""
            )

        if not self.cache_enabled:
            logger.warning("Decision cache disabled in production; every check hits the database")

        return errors


@lru_cache
def get_settings() -> AccessControlSettings:
    """
    Get cached settings instance.

    Returns:
        AccessControlSettings: Cached settings loaded from environment.
    """
    return AccessControlSettings()
