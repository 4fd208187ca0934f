from __future__ import annotations

from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from free_tier_router.routing_defaults import (
    DEFAULT_APP_REFERER,
    DEFAULT_APP_TITLE,
    DEFAULT_PROVIDER_BASE_URL,
)


class Settings(BaseSettings):
    openrouter_api_key: str | None = None
    provider_base_url: str = DEFAULT_PROVIDER_BASE_URL
    provider_connect_timeout_seconds: float = 5.0
    provider_read_timeout_seconds: float = 60.0
    provider_write_timeout_seconds: float = 30.0
    provider_pool_timeout_seconds: float = 5.0
    app_referer: str = DEFAULT_APP_REFERER
    app_title: str = DEFAULT_APP_TITLE
    router_config_path: str | None = None
    redis_url: str | None = Field(
        default=None,
        validation_alias=AliasChoices("redis_url", "kv_url"),
    )
    free_tier_daily_limit: int | None = None
    burst_window_seconds: float | None = None
    burst_max_requests: int | None = None
    burst_max_clients: int | None = None
    free_tier_models: str | None = None
    free_tier_default_model: str | None = None
    no_structured_output_models: str | None = None
    retry_max_attempts: int | None = None
    retry_base_delay_seconds: float | None = None
    retry_max_delay_seconds: float | None = None
    retry_jitter: float | None = None

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @property
    def provider_is_configured(self) -> bool:
        return bool(self.openrouter_api_key and self.openrouter_api_key.strip())

    @property
    def free_tier_models_list(self) -> list[str]:
        return _split_csv(self.free_tier_models)

    @property
    def no_structured_output_models_list(self) -> list[str]:
        return _split_csv(self.no_structured_output_models)


def _split_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [item.strip() for item in value.split(",") if item.strip()]


@lru_cache
def get_settings() -> Settings:
    return Settings()
