from __future__ import annotations

import asyncio
import random
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Protocol, TypeVar

from free_tier_router.routing_defaults import (
    DEFAULT_RETRY_BASE_DELAY_SECONDS,
    DEFAULT_RETRY_JITTER,
    DEFAULT_RETRY_MAX_ATTEMPTS,
    DEFAULT_RETRY_MAX_DELAY_SECONDS,
    RETRYABLE_STATUSES,
)

T = TypeVar("T")

SleepFn = Callable[[float], Awaitable[None]]


class AttemptOutcome(str, Enum):
    SUCCESS = "success"
    CAPABILITY_RETRY = "capability_retry"
    NEXT_MODEL = "next_model"
    TERMINAL = "terminal"


class ClassifiableAttempt(Protocol):
    status: int
    structured_output_sent: bool


@dataclass(slots=True, frozen=True)
class RetryPolicy:
    max_attempts: int = DEFAULT_RETRY_MAX_ATTEMPTS
    base_delay_seconds: float = DEFAULT_RETRY_BASE_DELAY_SECONDS
    max_delay_seconds: float = DEFAULT_RETRY_MAX_DELAY_SECONDS
    jitter: float = DEFAULT_RETRY_JITTER

    @property
    def max_jittered_delay_seconds(self) -> float:
        return self.max_delay_seconds * (1.0 + self.jitter)


def classify_status(status: int, *, structured_output_sent: bool) -> AttemptOutcome:
    if 200 <= status < 300:
        return AttemptOutcome.SUCCESS
    if status == 400 and structured_output_sent:
        return AttemptOutcome.CAPABILITY_RETRY
    if status in RETRYABLE_STATUSES:
        return AttemptOutcome.NEXT_MODEL
    return AttemptOutcome.TERMINAL


def classify_attempt(result: ClassifiableAttempt) -> AttemptOutcome:
    return classify_status(
        result.status,
        structured_output_sent=result.structured_output_sent,
    )


def compute_backoff_delay(
    policy: RetryPolicy,
    attempt: int,
    rng: random.Random | None = None,
) -> float:
    """Exponential delay for a zero-based ``attempt``, capped and then jittered.

    The cap applies before jitter, so the returned value lies within
    ``[0, max_delay * (1 + jitter)]``.
    """
    exponent = max(0, int(attempt))
    try:
        raw = policy.base_delay_seconds * (2**exponent)
    except OverflowError:
        raw = policy.max_delay_seconds
    capped = min(raw, policy.max_delay_seconds)
    source = rng or random
    factor = source.uniform(1.0 - policy.jitter, 1.0 + policy.jitter)
    return max(0.0, capped * factor)


def parse_retry_after_seconds(
    headers: Mapping[str, str] | None,
    *,
    now: datetime | None = None,
) -> float | None:
    if not headers:
        return None
    raw: str | None = None
    for name, value in headers.items():
        if name.lower() == "retry-after":
            raw = value
            break
    if raw is None:
        return None

    value = raw.strip()
    if not value:
        return None

    try:
        seconds = float(value)
    except ValueError:
        seconds = None
    if seconds is not None:
        return seconds if seconds > 0 else None

    try:
        retry_dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if retry_dt is None:
        return None
    if retry_dt.tzinfo is None:
        retry_dt = retry_dt.replace(tzinfo=timezone.utc)
    reference = now or datetime.now(timezone.utc)
    delta = (retry_dt - reference).total_seconds()
    if delta > 0:
        return float(delta)
    return None


async def with_retry(
    fn: Callable[[int], Awaitable[T]],
    policy: RetryPolicy,
    *,
    should_retry: Callable[[T], bool],
    retry_after: Callable[[T], float | None] | None = None,
    sleep: SleepFn = asyncio.sleep,
    rng: random.Random | None = None,
    on_retry: Callable[[int, T, float], None] | None = None,
) -> T:
    """Run ``fn`` until ``should_retry`` rejects its result or attempts run out.

    ``fn`` receives the zero-based attempt number. A ``Retry-After`` value
    reported through ``retry_after`` replaces the computed backoff but is
    still held to the policy's jittered ceiling, which keeps the total wait
    bounded by ``max_attempts * max_delay * (1 + jitter)``.

    ``retry_after`` is consulted only for results ``should_retry`` accepts;
    a result that ends the loop is returned without reading its hint.
    """
    attempts = max(1, policy.max_attempts)
    attempt = 0
    while True:
        result = await fn(attempt)
        if attempt + 1 >= attempts or not should_retry(result):
            return result

        delay: float | None = retry_after(result) if retry_after is not None else None
        if delay is None:
            delay = compute_backoff_delay(policy, attempt, rng)
        else:
            delay = min(delay, policy.max_jittered_delay_seconds)
        if on_retry is not None:
            on_retry(attempt, result, delay)
        await sleep(delay)
        attempt += 1
