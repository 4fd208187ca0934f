from __future__ import annotations

from typing import Any


class RouterError(Exception):
    """Terminal, client-visible rejection raised before or instead of routing."""

    status_code = 500
    code: str | None = None

    def __init__(
        self,
        message: str,
        *,
        headers: dict[str, str] | None = None,
        extra: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.headers = dict(headers or {})
        self.extra = dict(extra or {})

    def to_body(self) -> dict[str, Any]:
        body: dict[str, Any] = {"error": self.message}
        if self.code:
            body["code"] = self.code
        body.update(self.extra)
        return body


class InvalidRequestError(RouterError):
    status_code = 400
    code = "INVALID_REQUEST"


class PremiumModelError(RouterError):
    status_code = 403
    code = "PREMIUM_MODEL"

    def __init__(self, requested_model: str, allowed_models: list[str]):
        self.requested_model = requested_model
        self.allowed_models = list(allowed_models)
        super().__init__(
            f'Model "{requested_model}" requires your own API key. '
            "Add it in Settings for unlimited access."
        )


class FreeTierExhaustedError(RouterError):
    status_code = 403
    code = "FREE_TIER_EXHAUSTED"

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(
            f"You've used your {limit} free searches for today. "
            "Add your own API key for unlimited access!",
            headers={"X-Free-Remaining": "0", "X-Free-Limit": str(limit)},
            extra={"remaining": 0, "limit": limit},
        )


class BurstLimitExceededError(RouterError):
    status_code = 429
    code = "BURST_LIMIT"

    def __init__(self, retry_after_seconds: int):
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            "Too many requests. Please slow down.",
            headers={"Retry-After": str(retry_after_seconds)},
            extra={"retryAfter": retry_after_seconds},
        )


class ProviderNotConfiguredError(RouterError):
    status_code = 500
    code = "SERVER_NOT_CONFIGURED"

    def __init__(self) -> None:
        super().__init__(
            "Server not configured. Please add your own API key in Settings."
        )
