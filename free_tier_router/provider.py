from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any

import httpx

from free_tier_router.routing_defaults import (
    DEFAULT_APP_REFERER,
    DEFAULT_APP_TITLE,
    DEFAULT_PROVIDER_BASE_URL,
    TRANSPORT_ERROR_STATUS,
)

logger = logging.getLogger("uvicorn.error")

INVALID_PROVIDER_BODY_MESSAGE = "Invalid response from AI provider"
TRANSPORT_ERROR_MESSAGE = "Network error reaching AI provider"


@dataclass(slots=True)
class AttemptResult:
    ok: bool
    status: int
    body: Any
    model: str
    structured_output_sent: bool = False
    headers: dict[str, str] = field(default_factory=dict)
    transport_error: str | None = None

    @property
    def is_transport_error(self) -> bool:
        return self.transport_error is not None

    @property
    def error_message(self) -> str | None:
        error = self.body.get("error") if isinstance(self.body, dict) else None
        if isinstance(error, dict):
            message = error.get("message")
            if isinstance(message, str) and message.strip():
                return message.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        return None

    @property
    def error_code(self) -> str | int | None:
        error = self.body.get("error") if isinstance(self.body, dict) else None
        if isinstance(error, dict):
            code = error.get("code")
            if isinstance(code, (str, int)) and not isinstance(code, bool):
                return code
        return None


def build_provider_payload(
    *,
    model: str,
    messages: list[Any],
    response_format: Any | None = None,
    extra_options: dict[str, Any] | None = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {}
    for key, value in (extra_options or {}).items():
        if value is not None:
            payload[key] = value
    payload["model"] = model
    payload["messages"] = messages
    if response_format is not None:
        payload["response_format"] = response_format
    return payload


class ProviderClient:
    """One chat-completion call per ``attempt``, never raising on failure."""

    def __init__(
        self,
        *,
        api_key: str,
        base_url: str = DEFAULT_PROVIDER_BASE_URL,
        app_referer: str = DEFAULT_APP_REFERER,
        app_title: str = DEFAULT_APP_TITLE,
        connect_timeout_seconds: float = 5.0,
        read_timeout_seconds: float = 60.0,
        write_timeout_seconds: float = 30.0,
        pool_timeout_seconds: float = 5.0,
        no_structured_output_models: set[str] | frozenset[str] = frozenset(),
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self._app_referer = app_referer
        self._app_title = app_title
        self._no_structured_output_models = frozenset(no_structured_output_models)
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                timeout=None,
                connect=max(0.1, float(connect_timeout_seconds)),
                read=max(0.1, float(read_timeout_seconds)),
                write=max(0.1, float(write_timeout_seconds)),
                pool=max(0.1, float(pool_timeout_seconds)),
            ),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

    async def close(self) -> None:
        await self.client.aclose()

    def build_headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
            "HTTP-Referer": self._app_referer,
            "X-Title": self._app_title,
        }

    def will_send_structured_output(
        self,
        model: str,
        response_format: Any | None,
        send_structured_output: bool = True,
    ) -> bool:
        return (
            response_format is not None
            and send_structured_output
            and model not in self._no_structured_output_models
        )

    async def attempt(
        self,
        model: str,
        messages: list[Any],
        response_format: Any | None = None,
        extra_options: dict[str, Any] | None = None,
        *,
        send_structured_output: bool = True,
    ) -> AttemptResult:
        structured = self.will_send_structured_output(
            model, response_format, send_structured_output
        )
        payload = build_provider_payload(
            model=model,
            messages=messages,
            response_format=response_format if structured else None,
            extra_options=extra_options,
        )
        started = time.perf_counter()
        try:
            response = await self.client.post(
                f"{self.base_url}/chat/completions",
                json=payload,
                headers=self.build_headers(),
            )
        except httpx.RequestError as exc:
            error_type = exc.__class__.__name__ or "RequestError"
            logger.warning(
                "provider_request_error model=%s error_type=%s is_timeout=%s error=%s",
                model,
                error_type,
                isinstance(exc, httpx.TimeoutException),
                str(exc).strip() or repr(exc),
            )
            return AttemptResult(
                ok=False,
                status=TRANSPORT_ERROR_STATUS,
                body={"error": {"message": TRANSPORT_ERROR_MESSAGE}},
                model=model,
                structured_output_sent=structured,
                transport_error=error_type,
            )

        latency_ms = (time.perf_counter() - started) * 1000.0
        try:
            body = response.json()
        except ValueError:
            logger.warning(
                "provider_invalid_body model=%s status=%d latency_ms=%.2f",
                model,
                response.status_code,
                latency_ms,
            )
            return AttemptResult(
                ok=False,
                status=TRANSPORT_ERROR_STATUS,
                body={"error": {"message": INVALID_PROVIDER_BODY_MESSAGE}},
                model=model,
                structured_output_sent=structured,
                headers=dict(response.headers),
                transport_error="InvalidResponseBody",
            )
        logger.info(
            "provider_response model=%s status=%d latency_ms=%.2f structured_output=%s",
            model,
            response.status_code,
            latency_ms,
            structured,
        )
        return AttemptResult(
            ok=response.is_success,
            status=response.status_code,
            body=body,
            model=model,
            structured_output_sent=structured,
            headers=dict(response.headers),
        )
