"""
Retry logic for Model Channel calls.

Transient Anthropic API failures (rate limiting, overloaded or erroring
servers, dropped connections) are retried with exponential backoff and
jitter. Anything else is raised to the caller immediately: a bad request or
a rejected API key will not get better by asking again.
"""

from __future__ import annotations

import asyncio
import random
from typing import Any, Awaitable, Callable, Optional

import anthropic
import structlog

from conduit.config import ClaudeConfig

logger = structlog.get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({429, 500, 502, 503, 529})


class RetryConfig:
    """Backoff parameters for a retried call."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.5,
        max_delay: float = 8.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range

    @classmethod
    def from_claude_config(cls, config: ClaudeConfig) -> "RetryConfig":
        return cls(
            max_retries=config.retry_max_retries,
            base_delay=config.retry_base_delay,
            max_delay=config.retry_max_delay,
            exponential_base=config.retry_exponential_base,
            jitter_range=config.retry_jitter_range,
        )


def is_retryable_error(error: BaseException) -> bool:
    """Return True for errors that are transient and worth another attempt."""
    if isinstance(error, (anthropic.RateLimitError, anthropic.InternalServerError)):
        return True
    if isinstance(error, anthropic.APIStatusError):
        return error.status_code in RETRYABLE_STATUS_CODES
    if isinstance(error, (anthropic.APIConnectionError, anthropic.APITimeoutError)):
        return True
    return isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError))


def _retry_after_seconds(error: BaseException) -> Optional[float]:
    """Read a server-provided Retry-After header, if there is one."""
    if not isinstance(error, anthropic.APIStatusError):
        return None
    response = getattr(error, "response", None)
    if response is None:
        return None
    try:
        value = response.headers.get("retry-after")
        return float(value) if value else None
    except (AttributeError, TypeError, ValueError):
        return None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Delay before the next attempt.

        delay = min(max_delay, base_delay * exponential_base ** attempt) ± jitter

    A server Retry-After value wins when present, floored at one second.
    """
    if retry_after is not None:
        return max(1.0, retry_after)

    delay = min(config.max_delay, config.base_delay * (config.exponential_base ** attempt))
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.05, delay + jitter)


async def with_retries(
    func: Callable[[], Awaitable[Any]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, BaseException, float], None]] = None,
) -> Any:
    """
    Await ``func()`` and retry transient failures.

    Args:
        func: Zero-argument coroutine factory (use a closure for arguments).
        config: Backoff parameters (defaults when omitted).
        on_retry: Optional hook receiving (attempt, error, delay) before sleeping.

    Raises:
        The last error once it is non-retryable or retries are exhausted.
    """
    config = config or RetryConfig()

    attempt = 0
    while True:
        try:
            return await func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    attempt=attempt,
                )
                raise
            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))
            attempt += 1
            logger.warning(
                "retry.attempt",
                error_type=type(e).__name__,
                attempt=attempt,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            if on_retry is not None:
                on_retry(attempt, e, delay)
            await asyncio.sleep(delay)
