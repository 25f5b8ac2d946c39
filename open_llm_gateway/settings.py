from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    gateway_shared_secret: str | None = None
    upstream_api_key: str | None = Field(
        default=None,
        validation_alias=AliasChoices("UPSTREAM_API_KEY", "HF_API_KEY"),
    )
    model_profiles_path: str = "gateway.models.yaml"
    upstream_timeout_seconds: float = 60.0
    upstream_connect_timeout_seconds: float = 5.0
    retry_max_attempts: int = 3
    retry_initial_delay_seconds: float = 0.5
    retry_backoff_multiplier: float = 2.0
    retry_max_delay_seconds: float = 4.0
    cors_allow_origin: str = "*"
    cors_allow_methods: str = "POST, OPTIONS, GET"
    cors_allow_headers: str = "Content-Type, Authorization, X-Auth-Token"
    audit_log_enabled: bool = False
    audit_log_path: str = "logs/gateway_attempts.jsonl"
    host: str = "0.0.0.0"
    port: int = 8000

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def cors_headers(self) -> dict[str, str]:
        return {
            "access-control-allow-origin": self.cors_allow_origin,
            "access-control-allow-methods": self.cors_allow_methods,
            "access-control-allow-headers": self.cors_allow_headers,
        }

    def missing_credentials(self) -> list[str]:
        missing: list[str] = []
        if not (self.gateway_shared_secret or "").strip():
            missing.append("GATEWAY_SHARED_SECRET")
        if not (self.upstream_api_key or "").strip():
            missing.append("UPSTREAM_API_KEY")
        return missing


@lru_cache
def get_settings() -> Settings:
    return Settings()
