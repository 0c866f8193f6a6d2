"""
Shared configuration management for the wallet billing layer.
"""

from typing import FrozenSet

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BaseConfig(BaseSettings):
    """Base configuration class with common settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_prefix="BILLING_",
        case_sensitive=False,
        extra="allow"
    )

    # Environment
    env: str = Field(default="local")
    log_level: str = Field(default="info")

    # External services
    store_backend: str = Field(default="postgres")  # "postgres" or "memory"
    redis_url: str = Field(default="redis://localhost:6379/0")
    postgres_dsn: str = Field(default="postgres://localhost:5432/billing")

    # Internal services
    billing_service_url: str = Field(default="http://localhost:8021")

    # Entitlement policy
    trial_length_days: int = Field(default=5, ge=1)
    # Comma-separated chain ids whose wallets always take their own slot
    counts_separately_chains: str = Field(default="")
    enforce_paid_query_quota: bool = Field(default=True)

    # Degraded mode
    lookup_retry_attempts: int = Field(default=3, ge=1)
    lookup_retry_base_delay: float = Field(default=0.2, ge=0.0)
    stale_identity_ttl_seconds: int = Field(default=3600, ge=0)

    @field_validator("log_level")
    @classmethod
    def _normalise_log_level(cls, value: str) -> str:
        return value.lower()

    @property
    def separately_counted_chains(self) -> FrozenSet[str]:
        """Chain ids parsed from ``counts_separately_chains``."""
        return frozenset(
            part.strip().lower() for part in self.counts_separately_chains.split(",") if part.strip()
        )


class ServiceConfig(BaseConfig):
    """Service-specific configuration."""

    service_name: str
    port: int
    host: str = "0.0.0.0"

    def __init__(self, service_name: str, port: int, **kwargs):
        super().__init__(service_name=service_name, port=port, **kwargs)


def get_config(service_name: str, port: int, **overrides) -> ServiceConfig:
    """Get configuration for a specific service."""
    return ServiceConfig(service_name=service_name, port=port, **overrides)
