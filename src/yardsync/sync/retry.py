"""
Fixed-delay retry policy for remote calls and record upserts.

The delay is a constant operator knob (retry_delay_seconds), not an
exponential backoff. Only retryable errors consume an attempt: a terminal
error is re-raised on the spot.

Attempt counting: `attempt` is the number of retries already spent, so with
max_retries=3 a call that keeps failing retryably runs 4 times in total.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
from sqlalchemy.exc import OperationalError

from yardsync.sync.errors import RemoteUnavailable

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (
    RemoteUnavailable,
    asyncio.TimeoutError,
    ConnectionError,
    httpx.TransportError,
    OperationalError,  # e.g. "database is locked"
)


@dataclass(frozen=True)
class RetryDecision:
    retry: bool
    delay: float


class RetryPolicy:
    """Decides whether and when a failed unit of work is retried."""

    def __init__(
        self,
        max_retries: int = 3,
        delay_seconds: float = 30.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        if max_retries < 0:
            raise ValueError("max_retries must be >= 0")
        if delay_seconds < 0:
            raise ValueError("delay_seconds must be >= 0")
        self.max_retries = max_retries
        self.delay_seconds = delay_seconds
        self._sleep = sleep

    def should_retry(self, attempt: int, max_attempts: Optional[int] = None) -> RetryDecision:
        limit = self.max_retries if max_attempts is None else max_attempts
        if attempt >= limit:
            return RetryDecision(retry=False, delay=0.0)
        return RetryDecision(retry=True, delay=self.delay_seconds)

    @staticmethod
    def is_retryable(exc: BaseException) -> bool:
        return isinstance(exc, RETRYABLE_ERRORS)

    async def call(self, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await fn(*args, **kwargs), retrying retryable failures.

        Raises:
            The last error once retries are exhausted, or the first terminal error.
        """
        attempt = 0
        while True:
            try:
                return await fn(*args, **kwargs)
            except Exception as exc:
                if not self.is_retryable(exc):
                    raise
                decision = self.should_retry(attempt)
                if not decision.retry:
                    logger.warning(
                        "Giving up after %d attempts: %s", attempt + 1, exc
                    )
                    raise
                attempt += 1
                logger.info(
                    "Retryable failure (%s); retry %d/%d in %.1fs",
                    exc, attempt, self.max_retries, decision.delay,
                )
                await self._sleep(decision.delay)
