"""Retry with exponential backoff for flaky proving calls.

Usage::

    policy = BackoffPolicy(max_attempts=10, initial_delay=5.0)
    receipt = await with_retry(lambda: client_call(), policy, is_retryable_error)
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, TypeVar

import httpx

from reserve_engine.config import RetrySettings
from reserve_engine.errors import ExternalProvingFailure, ReservePriceError

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")

# Substrings seen in transport-level failures from proving backends.
RETRYABLE_MARKERS = (
    "dns error",
    "client error",
    "error sending request",
    "connection refused",
    "timeout",
    "timed out",
)


@dataclass(frozen=True)
class BackoffPolicy:
    """Exponential backoff schedule.

    Parameters
    ----------
    max_attempts:
        Total attempts including the first. Default 10.
    initial_delay:
        Seconds slept after the first failure. Default 5.
    multiplier:
        Growth factor per failure. Default 2.
    max_delay:
        Optional ceiling on a single sleep.
    """

    max_attempts: int = 10
    initial_delay: float = 5.0
    multiplier: float = 2.0
    max_delay: Optional[float] = None

    @classmethod
    def from_settings(cls, settings: RetrySettings) -> "BackoffPolicy":
        return cls(
            max_attempts=settings.max_attempts,
            initial_delay=settings.initial_delay_seconds,
            multiplier=settings.multiplier,
            max_delay=settings.max_delay_seconds,
        )

    def delay(self, attempt: int) -> float:
        """Sleep after the ``attempt``-th failure (0-based)."""
        d = self.initial_delay * (self.multiplier ** attempt)
        if self.max_delay is not None:
            d = min(d, self.max_delay)
        return d


def is_retryable_error(exc: BaseException) -> bool:
    """Transport/network trouble is retryable; logic and data errors are not."""
    if isinstance(exc, ExternalProvingFailure):
        return exc.retryable
    if isinstance(exc, ReservePriceError):
        return False
    if isinstance(exc, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    message = str(exc).lower()
    return any(marker in message for marker in RETRYABLE_MARKERS)


async def with_retry(
    operation: Callable[[], Awaitable[T]],
    policy: BackoffPolicy | None = None,
    is_retryable: Callable[[BaseException], bool] = is_retryable_error,
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    label: str = "operation",
) -> T:
    """Await ``operation()`` until it succeeds, fails fatally, or runs out of attempts.

    The last exception is re-raised unchanged in both failure cases.
    """
    policy = policy or BackoffPolicy()
    attempts = max(1, policy.max_attempts)
    for attempt in range(attempts):
        try:
            return await operation()
        except Exception as exc:
            if not is_retryable(exc):
                LOGGER.error("%s failed with fatal error: %s", label, exc)
                raise
            if attempt + 1 >= attempts:
                LOGGER.error("%s failed after %d attempts: %s", label, attempts, exc)
                raise
            delay = policy.delay(attempt)
            LOGGER.warning(
                "%s attempt=%d/%d failed (%s); retrying in %.1fs",
                label, attempt + 1, attempts, exc, delay,
            )
            await sleep(delay)
    raise RuntimeError(f"{label}: retry loop exited without a result")
