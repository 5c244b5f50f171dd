"""Configuration for the Unified Adapter Gateway."""

from __future__ import annotations

from functools import lru_cache
from typing import Dict, Optional, Tuple

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="", case_sensitive=False)

    service_name: str = Field(default="unified-adapter-gateway")

    gateway_transport: str = Field(default="streamable-http")
    gateway_host: str = Field(default="0.0.0.0")
    gateway_port: int = Field(default=8000)
    gateway_auth_token: Optional[str] = Field(default=None)

    gateway_adapters_path: str = Field(default="adapters")
    gateway_database_url: Optional[str] = Field(default=None)
    gateway_redis_url: Optional[str] = Field(default=None)
    gateway_credentials_file: Optional[str] = Field(default=None)

    gateway_max_concurrency: int = Field(default=50)

    gateway_upstream_timeout_seconds: float = Field(default=30)
    gateway_upstream_max_attempts: int = Field(default=3)
    gateway_retry_base_delay_seconds: float = Field(default=0.5)
    gateway_retry_max_delay_seconds: float = Field(default=8)

    gateway_rate_limit_default: int = Field(default=100)
    gateway_rate_limit_window_seconds: float = Field(default=60)
    gateway_rate_limit_overrides: Optional[str] = Field(default=None)

    gateway_circuit_failure_threshold: int = Field(default=5)
    gateway_circuit_window_seconds: float = Field(default=60)
    gateway_circuit_cooldown_seconds: float = Field(default=60)
    gateway_circuit_max_cooldown_seconds: float = Field(default=600)

    gateway_oauth_refresh_timeout_seconds: float = Field(default=15)
    gateway_oauth_refresh_attempts: int = Field(default=3)

    gateway_audit_timeout_seconds: float = Field(default=5)

    gateway_log_level: str = Field(default="INFO")

    jwks_url: Optional[str] = Field(default=None)
    jwt_issuer: Optional[str] = Field(default=None)
    jwt_audience: Optional[str] = Field(default=None)

    def rate_limit_overrides(self) -> Dict[str, Tuple[int, float]]:
        """Parse ``adapter=limit/window`` pairs, e.g. ``stripe-api=2/60``."""
        if not self.gateway_rate_limit_overrides:
            return {}
        overrides: Dict[str, Tuple[int, float]] = {}
        for item in self.gateway_rate_limit_overrides.split(","):
            item = item.strip()
            if not item or "=" not in item:
                continue
            name, _, policy = item.partition("=")
            limit, _, window = policy.partition("/")
            window_seconds = (
                float(window) if window.strip() else self.gateway_rate_limit_window_seconds
            )
            overrides[name.strip()] = (int(limit), window_seconds)
        return overrides


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
