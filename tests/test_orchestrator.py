from __future__ import annotations

import asyncio
from typing import Any

import pytest

from free_tier_router.burst_limiter import BurstLimiter, BurstLimiterConfig
from free_tier_router.config import RouterConfig
from free_tier_router.errors import (
    BurstLimitExceededError,
    FreeTierExhaustedError,
    InvalidRequestError,
    PremiumModelError,
)
from free_tier_router.fallback_policy import ModelFallbackPolicy
from free_tier_router.orchestrator import (
    ALL_MODELS_FAILED_MESSAGE,
    ChatRequest,
    RoutingOrchestrator,
)
from free_tier_router.provider import AttemptResult
from free_tier_router.quota import QuotaTracker
from free_tier_router.retry import RetryPolicy
from free_tier_router.runtime.counter_store import InMemoryCounterStore

MESSAGES = [{"role": "user", "content": "explain tides like a bathtub"}]
HINT = {"type": "json_object"}


class FakeProvider:
    def __init__(
        self,
        script: dict[str, list[Any]],
        no_structured_output_models: set[str] | None = None,
    ) -> None:
        self.script = {model: list(steps) for model, steps in script.items()}
        self.no_structured_output_models = no_structured_output_models or set()
        self.calls: list[dict[str, Any]] = []

    async def attempt(
        self,
        model: str,
        messages: list[Any],
        response_format: Any | None = None,
        extra_options: dict[str, Any] | None = None,
        *,
        send_structured_output: bool = True,
    ) -> AttemptResult:
        structured = (
            response_format is not None
            and send_structured_output
            and model not in self.no_structured_output_models
        )
        self.calls.append(
            {
                "model": model,
                "structured": structured,
                "extra_options": dict(extra_options or {}),
            }
        )
        steps = self.script.get(model) or [503]
        step = steps.pop(0) if len(steps) > 1 else steps[0]
        if step == "transport":
            return AttemptResult(
                ok=False,
                status=503,
                body={"error": {"message": "Network error reaching AI provider"}},
                model=model,
                structured_output_sent=structured,
                transport_error="ConnectError",
            )
        if step == "invalid-body":
            return AttemptResult(
                ok=False,
                status=503,
                body={"error": {"message": "Invalid response from AI provider"}},
                model=model,
                structured_output_sent=structured,
                headers={"Retry-After": "2"},
                transport_error="InvalidResponseBody",
            )
        if step == "rate-limited":
            return AttemptResult(
                ok=False,
                status=429,
                body={"error": {"message": f"{model} rate limited"}},
                model=model,
                structured_output_sent=structured,
                headers={"Retry-After": "30"},
            )
        status = int(step)
        body: Any = {"id": f"cmpl-{model}", "model": model}
        if status >= 400:
            body = {"error": {"message": f"{model} failed", "code": status}}
        return AttemptResult(
            ok=200 <= status < 300,
            status=status,
            body=body,
            model=model,
            structured_output_sent=structured,
        )

    @property
    def models_called(self) -> list[str]:
        return [call["model"] for call in self.calls]


class CountingQuota(QuotaTracker):
    def __init__(self, daily_limit: int = 5) -> None:
        super().__init__(InMemoryCounterStore(), daily_limit)
        self.increments = 0

    async def record_billable_use(self, client_key: str) -> int:
        self.increments += 1
        return await super().record_billable_use(client_key)


def _orchestrator(
    provider: FakeProvider,
    *,
    models: list[str] | None = None,
    quota: CountingQuota | None = None,
    burst_max: int = 10,
    retry_policy: RetryPolicy | None = None,
    sleeps: list[float] | None = None,
) -> RoutingOrchestrator:
    async def _sleep(delay: float) -> None:
        if sleeps is not None:
            sleeps.append(delay)

    return RoutingOrchestrator(
        quota=quota or CountingQuota(),
        burst_limiter=BurstLimiter(
            BurstLimiterConfig(window_seconds=60.0, max_per_window=burst_max)
        ),
        fallback_policy=ModelFallbackPolicy(models or ["A", "B", "C"]),
        provider=provider,
        retry_policy=retry_policy or RetryPolicy(max_attempts=3, jitter=0.0),
        sleep=_sleep,
    )


def _route(orchestrator: RoutingOrchestrator, request: ChatRequest, client: str = "1.1.1.1") -> Any:
    return asyncio.run(orchestrator.route(request, client))


def test_falls_back_past_rate_limited_model_and_stops_on_success() -> None:
    provider = FakeProvider({"A": [429], "B": [200], "C": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert result.model == "B"
    assert provider.models_called == ["A", "B"]
    assert quota.increments == 1
    assert result.headers == {"X-Free-Remaining": "4", "X-Free-Limit": "5"}


def test_capability_rejection_retries_same_model_without_hint() -> None:
    provider = FakeProvider({"A": [400, 200]})
    orchestrator = _orchestrator(provider)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES, response_format=HINT))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A"]
    assert [call["structured"] for call in provider.calls] == [True, False]


def test_hint_stays_disabled_for_later_candidates() -> None:
    provider = FakeProvider({"A": [400, 503], "B": [200]})
    orchestrator = _orchestrator(provider, retry_policy=RetryPolicy(max_attempts=1))

    result = _route(orchestrator, ChatRequest(messages=MESSAGES, response_format=HINT))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A", "B"]
    assert [call["structured"] for call in provider.calls] == [True, False, False]


def test_bad_request_after_capability_retry_falls_back_to_next_model() -> None:
    provider = FakeProvider({"A": [400], "B": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES, response_format=HINT))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A", "B"]
    assert [call["structured"] for call in provider.calls] == [True, False, False]
    assert quota.increments == 1


def test_bad_request_without_hint_is_terminal() -> None:
    provider = FakeProvider({"A": [400], "B": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 400
    assert provider.models_called == ["A"]
    assert result.body == {"error": "A failed", "code": 400}
    assert quota.increments == 0


def test_non_retryable_error_is_surfaced_without_fallback() -> None:
    provider = FakeProvider({"A": [401], "B": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 401
    assert provider.models_called == ["A"]
    assert quota.increments == 0
    assert result.headers["X-Free-Remaining"] == "5"


def test_all_models_failing_returns_exhausted_without_charging() -> None:
    provider = FakeProvider({"A": [503], "B": [503], "C": [503]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code >= 500
    assert result.body["code"] == "ALL_MODELS_FAILED"
    assert result.body["error"] == ALL_MODELS_FAILED_MESSAGE
    assert result.body["lastStatus"] == 503
    assert provider.models_called == ["A", "B", "C"]
    assert quota.increments == 0
    assert asyncio.run(quota.daily_usage("1.1.1.1")) == 0


def test_transport_errors_retry_same_candidate_with_backoff() -> None:
    provider = FakeProvider({"A": ["transport", "transport", 200]})
    sleeps: list[float] = []
    orchestrator = _orchestrator(
        provider,
        retry_policy=RetryPolicy(max_attempts=5, base_delay_seconds=1.0, jitter=0.0),
        sleeps=sleeps,
    )

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A", "A"]
    assert sleeps == [1.0, 2.0]


def test_unauthorized_after_capability_retry_stays_terminal() -> None:
    provider = FakeProvider({"A": [400, 401], "B": [200]})
    orchestrator = _orchestrator(provider)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES, response_format=HINT))

    assert result.status_code == 401
    assert provider.models_called == ["A", "A"]


def test_retry_after_applies_to_retried_invalid_body() -> None:
    provider = FakeProvider({"A": ["invalid-body", 200]})
    sleeps: list[float] = []
    orchestrator = _orchestrator(provider, sleeps=sleeps)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A"]
    assert sleeps == [2.0]


def test_rate_limited_model_moves_on_without_waiting() -> None:
    provider = FakeProvider({"A": ["rate-limited"], "B": [200]})
    sleeps: list[float] = []
    orchestrator = _orchestrator(provider, sleeps=sleeps)

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert provider.models_called == ["A", "B"]
    assert sleeps == []


def test_transport_errors_move_on_after_attempts_run_out() -> None:
    provider = FakeProvider({"A": ["transport"], "B": [200]})
    orchestrator = _orchestrator(provider, retry_policy=RetryPolicy(max_attempts=2, jitter=0.0))

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert provider.models_called == ["A", "A", "B"]
    assert result.attempted_models == ["A", "A", "B"]


def test_premium_model_is_rejected_without_provider_call() -> None:
    provider = FakeProvider({"A": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    with pytest.raises(PremiumModelError):
        _route(orchestrator, ChatRequest(messages=MESSAGES, model="anthropic/claude-opus"))

    assert provider.calls == []
    assert quota.increments == 0


def test_exhausted_quota_is_rejected_without_provider_call() -> None:
    provider = FakeProvider({"A": [200]})
    quota = CountingQuota(daily_limit=2)
    orchestrator = _orchestrator(provider, quota=quota)

    _route(orchestrator, ChatRequest(messages=MESSAGES))
    second = _route(orchestrator, ChatRequest(messages=MESSAGES))
    assert second.headers["X-Free-Remaining"] == "0"

    with pytest.raises(FreeTierExhaustedError) as exc_info:
        _route(orchestrator, ChatRequest(messages=MESSAGES))

    error = exc_info.value
    assert error.status_code == 403
    assert error.headers == {"X-Free-Remaining": "0", "X-Free-Limit": "2"}
    assert error.to_body()["code"] == "FREE_TIER_EXHAUSTED"
    assert error.to_body()["remaining"] == 0
    assert len(provider.calls) == 2
    assert quota.increments == 2


def test_non_billable_success_leaves_usage_unchanged() -> None:
    provider = FakeProvider({"A": [200]})
    quota = CountingQuota()
    orchestrator = _orchestrator(provider, quota=quota)

    _route(orchestrator, ChatRequest(messages=MESSAGES))
    before = asyncio.run(quota.daily_usage("1.1.1.1"))
    result = _route(orchestrator, ChatRequest(messages=MESSAGES, billable=False))
    after = asyncio.run(quota.daily_usage("1.1.1.1"))

    assert result.status_code == 200
    assert before == after == 1
    assert quota.increments == 1
    assert result.headers["X-Free-Remaining"] == "4"


def test_burst_limit_rejects_before_provider_call() -> None:
    provider = FakeProvider({"A": [200]})
    orchestrator = _orchestrator(provider, burst_max=2, quota=CountingQuota(daily_limit=100))

    _route(orchestrator, ChatRequest(messages=MESSAGES))
    _route(orchestrator, ChatRequest(messages=MESSAGES))
    with pytest.raises(BurstLimitExceededError) as exc_info:
        _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert exc_info.value.status_code == 429
    assert 1 <= exc_info.value.retry_after_seconds <= 60
    assert exc_info.value.headers["Retry-After"] == str(exc_info.value.retry_after_seconds)
    assert len(provider.calls) == 2
    # Another client is unaffected.
    assert _route(orchestrator, ChatRequest(messages=MESSAGES), client="2.2.2.2").ok


def test_empty_messages_rejected() -> None:
    orchestrator = _orchestrator(FakeProvider({}))
    with pytest.raises(InvalidRequestError):
        _route(orchestrator, ChatRequest(messages=[]))


def test_from_config_builds_working_orchestrator() -> None:
    provider = FakeProvider({"x": [404], "y": [200]})
    config = RouterConfig(fallback_models=["x", "y"], daily_limit=3)
    orchestrator = RoutingOrchestrator.from_config(
        config,
        store=InMemoryCounterStore(),
        provider=provider,
    )

    result = _route(orchestrator, ChatRequest(messages=MESSAGES))

    assert result.status_code == 200
    assert result.model == "y"
    assert result.headers == {"X-Free-Remaining": "2", "X-Free-Limit": "3"}
    assert asyncio.run(orchestrator.peek_remaining("1.1.1.1")) == (1, 2)


def test_chat_request_from_payload_maps_client_fields() -> None:
    request = ChatRequest.from_payload(
        {
            "messages": MESSAGES,
            "model": "B",
            "responseFormatHint": HINT,
            "extraOptions": {"temperature": 0.3, "model": "ignored"},
            "plugins": [{"id": "web"}],
            "skipUsageCount": True,
        }
    )

    assert request.model == "B"
    assert request.response_format == HINT
    assert request.extra_options == {"temperature": 0.3, "plugins": [{"id": "web"}]}
    assert request.billable is False


@pytest.mark.parametrize(
    "payload",
    [
        [],
        {},
        {"messages": []},
        {"messages": "hi"},
        {"messages": MESSAGES, "model": 5},
        {"messages": MESSAGES, "extraOptions": "nope"},
        {"messages": MESSAGES, "billable": "false"},
        {"messages": MESSAGES, "skipUsageCount": "true"},
        {"messages": MESSAGES, "skipUsageCount": 1},
    ],
)
def test_chat_request_from_payload_rejects_malformed_input(payload: Any) -> None:
    with pytest.raises(InvalidRequestError):
        ChatRequest.from_payload(payload)


def test_chat_request_billable_flag_wins_over_skip_usage_count() -> None:
    assert ChatRequest.from_payload({"messages": MESSAGES}).billable is True
    assert ChatRequest.from_payload({"messages": MESSAGES, "billable": False}).billable is False
    request = ChatRequest.from_payload(
        {"messages": MESSAGES, "billable": True, "skipUsageCount": True}
    )
    assert request.billable is True
