"""
Retry Logic — resilience against transient storage and alerting failures.

Disks stall, SQLite reports "database is locked", webhooks time out. This
module keeps those transients from surfacing as hard failures: each call is
bounded by a timeout, retried with exponential backoff and jitter, and only
re-raised once the retry budget is spent or the error is not transient.
"""

from __future__ import annotations

import asyncio
import inspect
import random
import sqlite3
import time
from email.utils import parsedate_to_datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
import structlog

from driftwatch.errors import StorageError

logger = structlog.get_logger(__name__)

T = TypeVar("T")


class RetryConfig:
    """Configuration for retry behavior."""

    def __init__(
        self,
        max_retries: int = 3,
        base_delay: float = 0.1,
        max_delay: float = 2.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range


def is_retryable_error(error: Exception) -> bool:
    """
    Determine if an error is transient and worth retrying.

    Retryable:
    - StorageError and sqlite3.OperationalError (locked / busy database)
    - Timeouts and connection errors
    - httpx transport errors, and HTTP 429 / 5xx responses

    NOT retryable:
    - Programming errors (ValueError, TypeError, ...)
    - sqlite3.IntegrityError and other data errors
    - HTTP 4xx other than 429
    """
    if isinstance(error, StorageError):
        return True
    if isinstance(error, sqlite3.OperationalError):
        return True
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in (429, 500, 502, 503, 504)
    if isinstance(error, httpx.TransportError):
        return True
    if isinstance(error, (ConnectionError, TimeoutError, asyncio.TimeoutError)):
        return True
    # OSError covers filesystem and socket-level issues
    if isinstance(error, OSError):
        return True
    return False


def _retry_after_seconds(error: Exception) -> Optional[float]:
    """Extract a positive Retry-After (seconds or HTTP date) from an HTTP error, if any."""
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    value = error.response.headers.get("retry-after")
    if value is None:
        return None
    try:
        seconds = float(value)
    except ValueError:
        try:
            seconds = parsedate_to_datetime(value).timestamp() - time.time()
        except (TypeError, ValueError):
            return None
    return seconds if seconds > 0 else None


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    """
    Compute the delay before the next retry attempt.

    Uses exponential backoff with jitter:
        delay = min(max_delay, base_delay * (exponential_base ^ attempt))
        delay += random jitter in [-jitter_range * delay, +jitter_range * delay]

    A server-provided Retry-After wins, capped at max_delay.
    """
    if retry_after is not None:
        return min(retry_after, config.max_delay)

    delay = config.base_delay * (config.exponential_base ** attempt)
    delay = min(delay, config.max_delay)

    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


async def with_retries(
    func: Callable[[], Awaitable[T]],
    config: Optional[RetryConfig] = None,
    on_retry: Optional[Callable[[int, Exception, float], Any]] = None,
    timeout: Optional[float] = None,
    operation: str = "",
) -> T:
    """
    Execute an async function with retry logic.

    Args:
        func: The async function to execute (no arguments — use a lambda/closure)
        config: Retry configuration (uses defaults if not specified)
        on_retry: Optional callback when a retry occurs (receives attempt, error, delay)
        timeout: Optional per-attempt timeout in seconds
        operation: Label included in log events

    Returns:
        The result of the function call

    Raises:
        The last error if all retries are exhausted or the error is not transient
    """
    if config is None:
        config = RetryConfig()

    last_error: Optional[Exception] = None

    for attempt in range(config.max_retries + 1):
        try:
            if timeout is not None:
                return await asyncio.wait_for(func(), timeout=timeout)
            return await func()
        except Exception as e:
            last_error = e

            if not is_retryable_error(e):
                logger.error(
                    "retry.non_retryable_error",
                    operation=operation,
                    error_type=type(e).__name__,
                    error=str(e),
                    attempt=attempt,
                )
                raise

            if attempt >= config.max_retries:
                logger.error(
                    "retry.exhausted",
                    operation=operation,
                    error_type=type(e).__name__,
                    error=str(e),
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after_seconds(e))

            logger.warning(
                "retry.attempt",
                operation=operation,
                error_type=type(e).__name__,
                error=str(e)[:200],
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )

            if on_retry:
                result = on_retry(attempt + 1, e, delay)
                if inspect.isawaitable(result):
                    await result

            await asyncio.sleep(delay)

    # Unreachable: the loop either returns or raises.
    raise last_error  # type: ignore[misc]
