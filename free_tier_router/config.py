from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

from free_tier_router.retry import RetryPolicy
from free_tier_router.routing_defaults import (
    DEFAULT_BURST_MAX_CLIENTS,
    DEFAULT_BURST_MAX_REQUESTS,
    DEFAULT_BURST_WINDOW_SECONDS,
    DEFAULT_DAILY_LIMIT,
    DEFAULT_FALLBACK_MODELS,
    DEFAULT_NO_STRUCTURED_OUTPUT_MODELS,
    DEFAULT_QUOTA_KEY_PREFIX,
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_JITTER,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
)
from free_tier_router.settings import Settings


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=DEFAULT_RETRY_MAX_ATTEMPTS, ge=1)
    base_delay_seconds: float = Field(default=DEFAULT_RETRY_BASE_DELAY_SECONDS, ge=0.0)
    max_delay_seconds: float = Field(default=DEFAULT_RETRY_MAX_DELAY_SECONDS, ge=0.0)
    jitter: float = Field(default=DEFAULT_RETRY_JITTER, ge=0.0, lt=1.0)

    @model_validator(mode="after")
    def _check_delay_bounds(self) -> RetryConfig:
        if self.max_delay_seconds < self.base_delay_seconds:
            raise ValueError(
                "retry.max_delay_seconds must be >= retry.base_delay_seconds."
            )
        return self

    def to_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_attempts=self.max_attempts,
            base_delay_seconds=self.base_delay_seconds,
            max_delay_seconds=self.max_delay_seconds,
            jitter=self.jitter,
        )


class RouterConfig(BaseModel):
    """Everything that varies between free-tier deployments.

    One orchestrator instance is built from one of these; different model
    lists or thresholds are different configs, never different code paths.
    """

    daily_limit: int = Field(default=DEFAULT_DAILY_LIMIT, ge=0)
    quota_key_prefix: str = DEFAULT_QUOTA_KEY_PREFIX
    burst_window_seconds: float = Field(default=DEFAULT_BURST_WINDOW_SECONDS, gt=0.0)
    burst_max_requests: int = Field(default=DEFAULT_BURST_MAX_REQUESTS, ge=1)
    burst_max_clients: int = Field(default=DEFAULT_BURST_MAX_CLIENTS, ge=1)
    fallback_models: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FALLBACK_MODELS)
    )
    default_model: str | None = None
    no_structured_output_models: list[str] = Field(
        default_factory=lambda: list(DEFAULT_NO_STRUCTURED_OUTPUT_MODELS)
    )
    retry: RetryConfig = Field(default_factory=RetryConfig)

    @field_validator("fallback_models", "no_structured_output_models", mode="before")
    @classmethod
    def _coerce_model_list(cls, value: Any) -> list[str]:
        if value is None:
            return []
        if isinstance(value, str):
            value = value.split(",")
        if not isinstance(value, list):
            raise ValueError("Expected a list of model ids.")
        cleaned: list[str] = []
        for item in value:
            if not isinstance(item, str):
                continue
            normalized = item.strip()
            if normalized and normalized not in cleaned:
                cleaned.append(normalized)
        return cleaned

    @model_validator(mode="after")
    def _resolve_default_model(self) -> RouterConfig:
        if not self.fallback_models:
            raise ValueError("fallback_models must contain at least one model.")
        if self.default_model is None or not self.default_model.strip():
            self.default_model = self.fallback_models[0]
            return self
        self.default_model = self.default_model.strip()
        if self.default_model not in self.fallback_models:
            raise ValueError(
                f"default_model '{self.default_model}' must be one of fallback_models."
            )
        return self

    @property
    def retry_policy(self) -> RetryPolicy:
        return self.retry.to_policy()


def load_router_config(settings: Settings) -> RouterConfig:
    raw: dict[str, Any] = {}
    if settings.router_config_path:
        raw = _load_yaml_config(settings.router_config_path)

    overrides: dict[str, Any] = {
        "daily_limit": settings.free_tier_daily_limit,
        "burst_window_seconds": settings.burst_window_seconds,
        "burst_max_requests": settings.burst_max_requests,
        "burst_max_clients": settings.burst_max_clients,
        "fallback_models": settings.free_tier_models_list or None,
        "default_model": settings.free_tier_default_model,
        "no_structured_output_models": (
            settings.no_structured_output_models_list or None
        ),
    }
    for key, value in overrides.items():
        if value is not None:
            raw[key] = value

    retry_overrides = {
        "max_attempts": settings.retry_max_attempts,
        "base_delay_seconds": settings.retry_base_delay_seconds,
        "max_delay_seconds": settings.retry_max_delay_seconds,
        "jitter": settings.retry_jitter,
    }
    retry_raw = dict(raw.get("retry") or {})
    for key, value in retry_overrides.items():
        if value is not None:
            retry_raw[key] = value
    if retry_raw:
        raw["retry"] = retry_raw

    return RouterConfig.model_validate(raw)


def _load_yaml_config(config_path: str) -> dict[str, Any]:
    path = Path(config_path)
    if not path.exists():
        raise FileNotFoundError(
            f"Router config not found at '{config_path}'. "
            "Create it or unset ROUTER_CONFIG_PATH."
        )
    with path.open("r", encoding="utf-8") as handle:
        raw = yaml.safe_load(handle) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Expected YAML object in '{config_path}'.")
    return raw
