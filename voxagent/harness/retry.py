"""
Retry Logic: backoff for idempotent availability checks.

Only GET-style checks (is the endpoint up, is the model listed) go through
here.  Chat POSTs are never retried: a replayed request could repeat a
side-effecting tool execution, so those failures surface as ``ProviderError``.

Backoff is exponential with jitter; a ``Retry-After`` header wins when present.
"""

from __future__ import annotations

import random
import time
from typing import Callable, Optional, TypeVar

import httpx
import structlog

logger = structlog.get_logger(__name__)

T = TypeVar("T")

RETRYABLE_STATUS = frozenset({429, 500, 502, 503, 504, 529})


class RetryConfig:
    def __init__(
        self,
        max_retries: int = 2,
        base_delay: float = 0.5,
        max_delay: float = 10.0,
        exponential_base: float = 2.0,
        jitter_range: float = 0.25,
    ):
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter_range = jitter_range


def is_retryable_error(error: Exception) -> bool:
    """Transport failures and 429/5xx are transient; other statuses are not."""
    if isinstance(error, httpx.HTTPStatusError):
        return error.response.status_code in RETRYABLE_STATUS
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    return False


def compute_delay(
    attempt: int,
    config: RetryConfig,
    retry_after: Optional[float] = None,
) -> float:
    if retry_after is not None:
        return max(0.0, min(retry_after, config.max_delay))

    delay = min(config.base_delay * (config.exponential_base ** attempt), config.max_delay)
    jitter = delay * config.jitter_range * (2 * random.random() - 1)
    return max(0.0, delay + jitter)


def _retry_after(error: Exception) -> Optional[float]:
    if not isinstance(error, httpx.HTTPStatusError):
        return None
    value = error.response.headers.get("retry-after")
    if value is None:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def with_retries(
    func: Callable[[], T],
    config: Optional[RetryConfig] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    Call ``func`` until it succeeds, a non-retryable error occurs, or
    ``config.max_retries`` retries have been spent.  The last error is re-raised.
    """
    if config is None:
        config = RetryConfig()

    attempt = 0
    while True:
        try:
            return func()
        except Exception as e:
            if not is_retryable_error(e):
                logger.debug("retry.non_retryable_error", error_type=type(e).__name__, error=str(e))
                raise
            if attempt >= config.max_retries:
                logger.warning(
                    "retry.exhausted",
                    error_type=type(e).__name__,
                    error=str(e)[:200],
                    total_attempts=attempt + 1,
                )
                raise

            delay = compute_delay(attempt, config, _retry_after(e))
            logger.info(
                "retry.attempt",
                error_type=type(e).__name__,
                attempt=attempt + 1,
                max_retries=config.max_retries,
                delay_seconds=round(delay, 2),
            )
            sleep(delay)
            attempt += 1
