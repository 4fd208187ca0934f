from __future__ import annotations

import asyncio
import logging
import random
from dataclasses import dataclass, field
from typing import Any, Protocol

from free_tier_router.burst_limiter import BurstLimiter, BurstLimiterConfig
from free_tier_router.config import RouterConfig
from free_tier_router.errors import (
    BurstLimitExceededError,
    FreeTierExhaustedError,
    InvalidRequestError,
)
from free_tier_router.fallback_policy import ModelFallbackPolicy
from free_tier_router.provider import AttemptResult
from free_tier_router.quota import QuotaTracker
from free_tier_router.retry import (
    AttemptOutcome,
    RetryPolicy,
    SleepFn,
    classify_attempt,
    parse_retry_after_seconds,
    with_retry,
)
from free_tier_router.runtime.counter_store import CounterStore

logger = logging.getLogger("uvicorn.error")

ALL_MODELS_FAILED_MESSAGE = (
    "All models are temporarily unavailable. Please try again in a moment. "
    "This attempt was not counted against your free searches."
)
PROVIDER_ERROR_FALLBACK_MESSAGE = "API request failed"

_RESERVED_PAYLOAD_KEYS = {
    "model",
    "messages",
    "response_format",
    "responseFormatHint",
    "plugins",
    "extraOptions",
    "extra_options",
    "billable",
    "skipUsageCount",
}


class ChatProvider(Protocol):
    async def attempt(
        self,
        model: str,
        messages: list[Any],
        response_format: Any | None = None,
        extra_options: dict[str, Any] | None = None,
        *,
        send_structured_output: bool = True,
    ) -> AttemptResult: ...


@dataclass(slots=True)
class ChatRequest:
    messages: list[Any]
    model: str | None = None
    response_format: Any | None = None
    extra_options: dict[str, Any] = field(default_factory=dict)
    billable: bool = True

    @classmethod
    def from_payload(cls, payload: Any) -> ChatRequest:
        if not isinstance(payload, dict):
            raise InvalidRequestError("Expected a JSON object request body.")

        messages = payload.get("messages")
        if not isinstance(messages, list) or not messages:
            raise InvalidRequestError("Missing required field: messages")

        model = payload.get("model")
        if model is not None and not isinstance(model, str):
            raise InvalidRequestError("Field 'model' must be a string.")

        response_format = payload.get("response_format")
        if response_format is None:
            response_format = payload.get("responseFormatHint")

        extra_options: dict[str, Any] = {}
        raw_extra = payload.get("extraOptions", payload.get("extra_options"))
        if raw_extra is not None:
            if not isinstance(raw_extra, dict):
                raise InvalidRequestError("Field 'extraOptions' must be an object.")
            extra_options.update(
                {
                    key: value
                    for key, value in raw_extra.items()
                    if key not in _RESERVED_PAYLOAD_KEYS
                }
            )
        if payload.get("plugins") is not None:
            extra_options["plugins"] = payload["plugins"]

        billable = payload.get("billable")
        skip_usage_count = payload.get("skipUsageCount")
        for name, value in (("billable", billable), ("skipUsageCount", skip_usage_count)):
            if value is not None and not isinstance(value, bool):
                raise InvalidRequestError(f"Field '{name}' must be a boolean.")
        if billable is None:
            billable = not skip_usage_count

        return cls(
            messages=messages,
            model=model,
            response_format=response_format,
            extra_options=extra_options,
            billable=billable,
        )


@dataclass(slots=True)
class RouteResult:
    status_code: int
    body: Any
    headers: dict[str, str] = field(default_factory=dict)
    model: str | None = None
    attempted_models: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300


@dataclass(slots=True)
class _RouteState:
    request_id: str
    client_key: str
    usage: int
    send_structured_output: bool = True
    attempted_models: list[str] = field(default_factory=list)
    last_status: int | None = None
    last_message: str | None = None


class RoutingOrchestrator:
    """Admission checks plus the model fallback loop for one free-tier request.

    Per candidate the outcome is one of success, capability retry (same
    model, structured-output hint stripped), next model, or terminal. The
    quota is written only after a successful billable attempt.
    """

    def __init__(
        self,
        *,
        quota: QuotaTracker,
        burst_limiter: BurstLimiter,
        fallback_policy: ModelFallbackPolicy,
        provider: ChatProvider,
        retry_policy: RetryPolicy | None = None,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> None:
        self.quota = quota
        self.burst_limiter = burst_limiter
        self.fallback_policy = fallback_policy
        self.provider = provider
        self.retry_policy = retry_policy or RetryPolicy()
        self._sleep = sleep
        self._rng = rng

    @classmethod
    def from_config(
        cls,
        config: RouterConfig,
        *,
        store: CounterStore,
        provider: ChatProvider,
        sleep: SleepFn = asyncio.sleep,
        rng: random.Random | None = None,
    ) -> RoutingOrchestrator:
        return cls(
            quota=QuotaTracker(
                store,
                config.daily_limit,
                key_prefix=config.quota_key_prefix,
            ),
            burst_limiter=BurstLimiter(
                BurstLimiterConfig(
                    window_seconds=config.burst_window_seconds,
                    max_per_window=config.burst_max_requests,
                    max_clients=config.burst_max_clients,
                )
            ),
            fallback_policy=ModelFallbackPolicy(
                config.fallback_models,
                default_model=config.default_model,
            ),
            provider=provider,
            retry_policy=config.retry_policy,
            sleep=sleep,
            rng=rng,
        )

    async def peek_remaining(self, client_key: str) -> tuple[int, int]:
        usage = await self.quota.daily_usage(client_key)
        return usage, self.quota.remaining(usage)

    def quota_headers(self, remaining: int) -> dict[str, str]:
        return {
            "X-Free-Remaining": str(max(0, int(remaining))),
            "X-Free-Limit": str(self.quota.daily_limit),
        }

    async def route(
        self,
        request: ChatRequest,
        client_key: str,
        *,
        request_id: str = "-",
    ) -> RouteResult:
        if not request.messages:
            raise InvalidRequestError("Missing required field: messages")

        if not self.burst_limiter.allow(client_key):
            retry_after = self.burst_limiter.retry_after_seconds(client_key)
            logger.info(
                "burst_limited request_id=%s client=%s retry_after_seconds=%d",
                request_id,
                client_key,
                retry_after,
            )
            raise BurstLimitExceededError(retry_after)

        chain = self.fallback_policy.resolve(request.model)

        usage = await self.quota.daily_usage(client_key)
        if usage >= self.quota.daily_limit:
            logger.info(
                "free_tier_exhausted request_id=%s client=%s usage=%d limit=%d",
                request_id,
                client_key,
                usage,
                self.quota.daily_limit,
            )
            raise FreeTierExhaustedError(self.quota.daily_limit)

        logger.info(
            "route_start request_id=%s client=%s requested_model=%s chain=%s billable=%s usage=%d",
            request_id,
            client_key,
            request.model,
            ",".join(chain),
            request.billable,
            usage,
        )
        state = _RouteState(request_id=request_id, client_key=client_key, usage=usage)
        for model in chain:
            result = await self._attempt_candidate(model, request, state)
            outcome = classify_attempt(result)

            if outcome is AttemptOutcome.CAPABILITY_RETRY:
                logger.warning(
                    "route_capability_retry request_id=%s model=%s status=%d",
                    request_id,
                    model,
                    result.status,
                )
                # Stays off for the remaining candidates too.
                state.send_structured_output = False
                result = await self._attempt_candidate(model, request, state)
                outcome = classify_attempt(result)
                if result.status == 400:
                    # The model rejects this request shape; the next one may not.
                    outcome = AttemptOutcome.NEXT_MODEL

            if outcome is AttemptOutcome.SUCCESS:
                return await self._success(result, request, state)
            if outcome is AttemptOutcome.TERMINAL:
                return self._terminal(result, state)

            state.last_status = result.status
            state.last_message = result.error_message or "Model unavailable"
            logger.warning(
                "route_next_model request_id=%s model=%s status=%d transport_error=%s",
                request_id,
                model,
                result.status,
                result.transport_error,
            )

        return self._exhausted(state)

    async def _attempt_candidate(
        self,
        model: str,
        request: ChatRequest,
        state: _RouteState,
    ) -> AttemptResult:
        async def _call(attempt: int) -> AttemptResult:
            state.attempted_models.append(model)
            logger.info(
                "route_attempt request_id=%s model=%s attempt=%d structured_output=%s",
                state.request_id,
                model,
                attempt + 1,
                state.send_structured_output,
            )
            return await self.provider.attempt(
                model,
                request.messages,
                request.response_format,
                request.extra_options,
                send_structured_output=state.send_structured_output,
            )

        def _on_retry(attempt: int, result: AttemptResult, delay: float) -> None:
            logger.info(
                "route_transport_retry request_id=%s model=%s attempt=%d error_type=%s delay_seconds=%.3f",
                state.request_id,
                model,
                attempt + 1,
                result.transport_error,
                delay,
            )

        # Only transport failures are retried here, so Retry-After is honoured
        # for those (e.g. an unparseable body from a proxy); a 429 moves on to
        # the next model without waiting.
        return await with_retry(
            _call,
            self.retry_policy,
            should_retry=lambda result: result.is_transport_error,
            retry_after=lambda result: parse_retry_after_seconds(result.headers),
            sleep=self._sleep,
            rng=self._rng,
            on_retry=_on_retry,
        )

    async def _success(
        self,
        result: AttemptResult,
        request: ChatRequest,
        state: _RouteState,
    ) -> RouteResult:
        if request.billable:
            count = await self.quota.record_billable_use(state.client_key)
        else:
            count = await self.quota.daily_usage(state.client_key)
        remaining = self.quota.remaining(count)
        logger.info(
            "route_success request_id=%s model=%s attempts=%d billable=%s remaining=%d",
            state.request_id,
            result.model,
            len(state.attempted_models),
            request.billable,
            remaining,
        )
        return RouteResult(
            status_code=200,
            body=result.body,
            headers=self.quota_headers(remaining),
            model=result.model,
            attempted_models=list(state.attempted_models),
        )

    def _terminal(self, result: AttemptResult, state: _RouteState) -> RouteResult:
        logger.error(
            "route_terminal request_id=%s model=%s status=%d",
            state.request_id,
            result.model,
            result.status,
        )
        body: dict[str, Any] = {
            "error": result.error_message or PROVIDER_ERROR_FALLBACK_MESSAGE,
        }
        if result.error_code is not None:
            body["code"] = result.error_code
        return RouteResult(
            status_code=result.status,
            body=body,
            headers=self.quota_headers(self.quota.remaining(state.usage)),
            model=result.model,
            attempted_models=list(state.attempted_models),
        )

    def _exhausted(self, state: _RouteState) -> RouteResult:
        logger.error(
            "route_exhausted request_id=%s attempted_models=%s last_status=%s last_error=%s",
            state.request_id,
            ",".join(state.attempted_models),
            state.last_status,
            state.last_message,
        )
        return RouteResult(
            status_code=502,
            body={
                "error": ALL_MODELS_FAILED_MESSAGE,
                "code": "ALL_MODELS_FAILED",
                "lastStatus": state.last_status,
            },
            headers=self.quota_headers(self.quota.remaining(state.usage)),
            attempted_models=list(state.attempted_models),
        )
