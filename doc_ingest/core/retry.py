"""
Retry Policy — one retry loop for every external call

Every outbound call in the pipeline (extraction, embedding, vector upsert,
status write) goes through RetryPolicy.run(). Call sites only choose:

  max_attempts : total attempts, including the first one
  backoff      : attempt number (1-based) → seconds to wait before the next try
  retry_on     : predicate deciding whether an exception is transient
  timeout      : per-attempt deadline; a timeout counts as a retryable failure
  deadline     : optional budget for all attempts and backoff together; when
                 it runs out the call is abandoned with TimeoutError

Usage::

    policy = RetryPolicy(max_attempts=3, backoff=linear_backoff(1.0), timeout=30)
    await policy.run(lambda: index.upsert(records), label="upsert batch=2")
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")

BackoffFn = Callable[[int], float]


def linear_backoff(base_delay: float) -> BackoffFn:
    """attempt * base_delay: 1s, 2s, 3s for base_delay=1."""
    def _delay(attempt: int) -> float:
        return attempt * base_delay
    return _delay


def _always(exc: BaseException) -> bool:
    return True


# ---------------------------------------------------------------------------
# Retryable exception detection (matched by class name)
# ---------------------------------------------------------------------------

_TRANSIENT_EXCEPTION_NAMES = (
    # openai
    "RateLimitError",
    "APITimeoutError",
    "APIConnectionError",
    "InternalServerError",
    # httpx
    "TimeoutException",
    "ConnectTimeout",
    "ReadTimeout",
    "WriteTimeout",
    "PoolTimeout",
    "ConnectError",
    "ReadError",
    "RemoteProtocolError",
    # asyncio.wait_for / builtins
    "TimeoutError",
    "ConnectionError",
)


def is_transient(exc: BaseException) -> bool:
    """True if the exception looks like a timeout, network blip or throttle."""
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    name = type(exc).__name__
    return any(name.endswith(n) for n in _TRANSIENT_EXCEPTION_NAMES)


# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int                                = 3
    backoff:      BackoffFn                          = linear_backoff(1.0)
    retry_on:     Callable[[BaseException], bool]    = _always
    timeout:      float | None                       = None
    deadline:     float | None                       = None
    sleep:        Callable[[float], Awaitable[None]] = asyncio.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")

    def with_timeout(self, timeout: float | None) -> RetryPolicy:
        return dataclasses.replace(self, timeout=timeout)

    def with_retry_on(self, predicate: Callable[[BaseException], bool]) -> RetryPolicy:
        return dataclasses.replace(self, retry_on=predicate)

    def with_deadline(self, deadline: float | None) -> RetryPolicy:
        return dataclasses.replace(self, deadline=deadline)

    async def run(self, fn: Callable[[], Awaitable[T]], *, label: str = "call") -> T:
        """
        Await fn() until it succeeds or the policy gives up.

        Raises the last exception when attempts are exhausted or when
        retry_on() rejects it. fn is a zero-arg factory so every attempt
        gets a fresh coroutine.
        """
        if self.deadline is None:
            return await self._attempts(fn, label)
        budget = asyncio.timeout(self.deadline)
        try:
            async with budget:
                return await self._attempts(fn, label)
        except TimeoutError:
            if budget.expired():
                logger.error("Retry budget exhausted | op=%s deadline=%.1fs", label, self.deadline)
            raise

    async def _attempts(self, fn: Callable[[], Awaitable[T]], label: str) -> T:
        attempt = 0
        while True:
            attempt += 1
            try:
                if self.timeout is not None:
                    return await asyncio.wait_for(fn(), timeout=self.timeout)
                return await fn()
            except Exception as exc:
                if not self.retry_on(exc):
                    logger.error(
                        "Non-retryable failure | op=%s attempt=%d error=%s: %s",
                        label, attempt, type(exc).__name__, exc,
                    )
                    raise
                if attempt >= self.max_attempts:
                    logger.error(
                        "Retries exhausted | op=%s attempts=%d error=%s: %s",
                        label, attempt, type(exc).__name__, exc,
                    )
                    raise

                delay = self.backoff(attempt)
                logger.warning(
                    "Retrying | op=%s attempt=%d/%d delay=%.1fs error=%s: %s",
                    label, attempt, self.max_attempts, delay, type(exc).__name__, exc,
                )
                await self.sleep(delay)


def policy_from_settings(settings, *, timeout: float | None = None) -> RetryPolicy:
    """Build the pipeline-wide linear policy from Settings."""
    return RetryPolicy(
        max_attempts=settings.retry_max_attempts,
        backoff=linear_backoff(settings.retry_base_delay_seconds),
        timeout=timeout,
    )
