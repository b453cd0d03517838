"""Retry wrapper for calls to the upstream model service.

Failures are sorted by ``classify`` into rate limits, a short list of known
spurious upstream errors, and everything else. Only the first two are
retried; the rest propagate on the first attempt.
"""

import asyncio
import logging
import math
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar, Union

from ..settings import Settings, get_settings

logger = logging.getLogger(__name__)

T = TypeVar("T")

RETRY_AFTER_PATTERN = re.compile(r"Please retry in ([0-9]+(?:\.[0-9]+)?)s")
QUOTA_PATTERN = re.compile(r"Quota exceeded for metric: ([^,]+), limit: (\d+)")

RATE_LIMIT_MARKERS = (
    "429",
    "quota",
    "rate limit",
    "resource_exhausted",
    "exceeded your current quota",
)
TRANSIENT_MARKERS = (
    '"parts" is null',
    "503",
    "service unavailable",
    "temporarily unavailable",
)


class MalformedResponseError(Exception):
    """The model service answered with an empty or unparseable envelope."""


class ExhaustedRetries(Exception):
    """All attempts of a wrapped call failed with retryable errors."""

    def __init__(self, label: str, attempts: int) -> None:
        super().__init__(f"Max retries exceeded after {attempts} attempts for {label}")
        self.label = label
        self.attempts = attempts


@dataclass(frozen=True)
class RateLimited:
    retry_after: Optional[float] = None
    quota_metric: Optional[str] = None
    quota_limit: Optional[int] = None


@dataclass(frozen=True)
class Transient:
    reason: str = ""


@dataclass(frozen=True)
class Fatal:
    pass


FailureClass = Union[RateLimited, Transient, Fatal]


def parse_retry_after(message: str) -> Optional[float]:
    """Server-suggested wait from 'Please retry in 12.4s', rounded up to whole seconds."""
    match = RETRY_AFTER_PATTERN.search(message)
    if not match:
        return None
    try:
        return float(math.ceil(float(match.group(1))))
    except ValueError:
        logger.warning("Failed to parse retry delay: %s", match.group(1))
        return None


def classify(error: BaseException) -> FailureClass:
    """Decide how the resilience wrapper treats a failure."""
    if isinstance(error, MalformedResponseError):
        return Transient(reason=str(error) or "malformed response")

    message = str(error)
    lowered = message.lower()

    if any(marker in lowered for marker in RATE_LIMIT_MARKERS):
        metric = limit = None
        quota = QUOTA_PATTERN.search(message)
        if quota:
            metric, limit = quota.group(1).strip(), int(quota.group(2))
        return RateLimited(
            retry_after=parse_retry_after(message),
            quota_metric=metric,
            quota_limit=limit,
        )

    for marker in TRANSIENT_MARKERS:
        if marker in lowered:
            return Transient(reason=marker)

    return Fatal()


@dataclass
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff: float = 1.0
    multiplier: float = 2.0
    max_backoff: float = 60.0

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "RetryPolicy":
        settings = settings or get_settings()
        return cls(
            max_attempts=settings.retry_max_attempts,
            initial_backoff=settings.retry_initial_backoff_seconds,
            multiplier=settings.retry_backoff_multiplier,
            max_backoff=settings.retry_max_backoff_seconds,
        )


@dataclass
class RetryState:
    """Bookkeeping for one wrapped call. current_backoff only ever grows, up to max_backoff."""

    max_attempts: int
    current_backoff: float
    multiplier: float
    max_backoff: float
    attempt: int = 0

    def next_wait(self, failure: FailureClass) -> float:
        if isinstance(failure, RateLimited) and failure.retry_after is not None:
            self.current_backoff = min(max(self.current_backoff, failure.retry_after), self.max_backoff)
            return failure.retry_after
        return self.current_backoff

    def advance(self) -> None:
        self.current_backoff = min(self.current_backoff * self.multiplier, self.max_backoff)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    label: str,
    policy: Optional[RetryPolicy] = None,
    sleep: Callable[[float], Awaitable[object]] = asyncio.sleep,
) -> T:
    """Await operation(), retrying rate-limited and transient failures with backoff.

    Args:
        operation: Zero-argument coroutine factory; called once per attempt.
        label: Human-readable name used in logs and in ExhaustedRetries.
        policy: Attempt and backoff limits (defaults come from settings).
        sleep: Awaitable sleep; cancellation while waiting propagates.

    Returns:
        The operation's result.

    Raises:
        ExhaustedRetries: every attempt failed with a retryable error.
        Exception: the first non-retryable error, unchanged.
    """
    policy = policy or RetryPolicy.from_settings()
    state = RetryState(
        max_attempts=max(1, policy.max_attempts),
        current_backoff=policy.initial_backoff,
        multiplier=policy.multiplier,
        max_backoff=policy.max_backoff,
    )
    last_error: Optional[Exception] = None

    while state.attempt < state.max_attempts:
        state.attempt += 1
        logger.debug("Executing %s (attempt %d/%d)", label, state.attempt, state.max_attempts)
        try:
            return await operation()
        except Exception as e:
            failure = classify(e)
            if isinstance(failure, Fatal):
                raise
            last_error = e

            wait = state.next_wait(failure)
            retrying = state.attempt < state.max_attempts
            if isinstance(failure, RateLimited):
                if not retrying:
                    logger.warning(
                        "Rate limit exceeded for %s (attempt %d/%d)", label, state.attempt, state.max_attempts
                    )
                elif failure.retry_after is not None:
                    logger.warning(
                        "Rate limit exceeded for %s, API suggests waiting %.0f seconds",
                        label,
                        failure.retry_after,
                    )
                else:
                    logger.warning(
                        "Rate limit exceeded for %s (attempt %d/%d), using exponential backoff: %.1f seconds",
                        label,
                        state.attempt,
                        state.max_attempts,
                        wait,
                    )
                if failure.quota_metric is not None:
                    logger.warning(
                        "Quota violation details: metric=%s limit=%s",
                        failure.quota_metric,
                        failure.quota_limit,
                    )
            else:
                logger.warning(
                    "Transient model service error for %s (attempt %d/%d): %s: %s",
                    label,
                    state.attempt,
                    state.max_attempts,
                    type(e).__name__,
                    e,
                )

            if retrying:
                logger.info("Waiting %.1f seconds before retrying %s", wait, label)
                await sleep(wait)
                state.advance()

    logger.error("Max retries (%d) exceeded for %s", state.max_attempts, label)
    raise ExhaustedRetries(label, state.attempt) from last_error
