"""
Rate limiting and retry for enhancement requests.

Requests start at least ``rate_limit_interval`` seconds apart. Transient
failures (network, 5xx, 429) are retried with exponential backoff; the
rate-limit stamp is taken once per logical request, so backoff sleeps and
rate-limit sleeps add up rather than overlap.
"""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional, TypeVar

from ..config import (
    DEFAULT_INITIAL_BACKOFF,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_RATE_LIMIT_INTERVAL,
)
from .errors import EnhancementError, EnhancementFailedError, NetworkError
from .providers import TRANSPORT_ERRORS

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _as_network_error(exc: BaseException) -> NetworkError:
    error = NetworkError()
    error.__cause__ = exc
    return error


class RequestScheduler:
    """
    Minimum-interval gate plus bounded exponential-backoff retry.

    Args:
        rate_limit_interval: Minimum seconds between request starts
        max_attempts: Total attempts per request, including the first
        initial_delay: Backoff before the second attempt; doubles after each retry
        clock: Monotonic time source
        sleep: Coroutine used for every wait
    """

    def __init__(
        self,
        rate_limit_interval: float = DEFAULT_RATE_LIMIT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_BACKOFF,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rate_limit_interval = rate_limit_interval
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self._clock = clock
        self._sleep = sleep
        self._gate = asyncio.Lock()
        self.last_request_time: Optional[float] = None

    async def wait_for_rate_limit(self) -> None:
        """Suspend until the interval since the previous start has passed, then stamp now."""
        async with self._gate:
            if self.last_request_time is not None:
                elapsed = self._clock() - self.last_request_time
                if elapsed < self.rate_limit_interval:
                    await self._sleep(self.rate_limit_interval - elapsed)
            self.last_request_time = self._clock()

    async def run(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Apply the rate limit once, then run ``operation`` with retries."""
        await self.wait_for_rate_limit()
        return await self.run_with_retry(operation)

    async def run_with_retry(self, operation: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``operation`` until it succeeds, fails permanently, or attempts run out.

        Raises:
            EnhancementError: The first non-retryable error, or the last
                retryable one once every attempt is spent
        """
        delay = self.initial_delay
        last_error: Optional[EnhancementError] = None

        for attempt in range(1, self.max_attempts + 1):
            try:
                return await operation()
            except EnhancementError as e:
                if not e.retryable:
                    raise
                last_error = e
            except TRANSPORT_ERRORS as e:
                last_error = _as_network_error(e)

            if attempt < self.max_attempts:
                logger.warning(
                    f"{last_error.kind}: retrying in {delay:g}s... "
                    f"(Attempt {attempt}/{self.max_attempts})"
                )
                await self._sleep(delay)
                delay *= 2

        if last_error is None:
            raise EnhancementFailedError()
        logger.error(f"Request failed after {self.max_attempts} attempts: {last_error}")
        raise last_error
