"""Retry logic with exponential backoff."""

import asyncio
import logging
import random
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from .exceptions import APIError

logger = logging.getLogger(__name__)


@dataclass
class RetryConfig:
    """Configuration for retry behavior with exponential backoff."""

    # Total attempts, the first one included
    max_attempts: int = 4
    initial_delay: float = 1.0
    max_delay: float = 60.0
    backoff_factor: float = 2.0

    # Jitter settings (to avoid thundering herd)
    jitter: bool = False
    jitter_factor: float = 0.1  # +/- 10% randomness

    # Callbacks for monitoring
    on_retry: Optional[Callable[[int, Exception, float], None]] = None
    on_give_up: Optional[Callable[[Exception], None]] = None

    @classmethod
    def from_retries(cls, retries: int, retry_delay: float, **kwargs) -> "RetryConfig":
        """Build a config from the number of retries beyond the first attempt."""
        return cls(max_attempts=max(0, retries) + 1, initial_delay=retry_delay, **kwargs)

    def should_retry(self, exception: Exception) -> bool:
        """Only classified errors flagged as transient are retried."""
        return isinstance(exception, APIError) and exception.retryable

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay applied after a failed ``attempt``."""
        # initial_delay * (backoff_factor ^ (attempt - 1))
        delay = self.initial_delay * (self.backoff_factor ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter and delay > 0:
            jitter_range = delay * self.jitter_factor
            delay = max(0, delay + random.uniform(-jitter_range, jitter_range))

        return delay


class RetryManager:
    """Runs an async operation under a :class:`RetryConfig`."""

    def __init__(
        self,
        config: Optional[RetryConfig] = None,
        sleep: Optional[Callable[[float], Awaitable[Any]]] = None,
    ):
        """Initialize retry manager with configuration.

        Args:
            config: Retry configuration. If None, uses DEFAULT_RETRY.
            sleep: Coroutine used to wait between attempts (``asyncio.sleep``).
        """
        self.config = config or DEFAULT_RETRY
        self._sleep = sleep or asyncio.sleep

    def _give_up(self, exception: Exception) -> None:
        if self.config.on_give_up:
            self.config.on_give_up(exception)

    async def async_execute_with_retry(
        self,
        func: Callable[[], Awaitable[Any]],
        skip_retry: bool = False,
    ) -> Any:
        """Execute an async function with retry logic.

        ``skip_retry`` limits the call to a single attempt.
        """
        max_attempts = 1 if skip_retry else max(1, self.config.max_attempts)

        for attempt in range(1, max_attempts + 1):
            try:
                return await func()
            except Exception as e:
                if not self.config.should_retry(e) or attempt >= max_attempts:
                    self._give_up(e)
                    raise

                delay = self.config.calculate_delay(attempt)
                logger.debug(
                    "Attempt %d/%d failed with %s, retrying in %.2fs",
                    attempt, max_attempts, type(e).__name__, delay,
                )
                if self.config.on_retry:
                    self.config.on_retry(attempt, e, delay)

                await self._sleep(delay)

        # max_attempts is always >= 1, the loop returns or raises
        raise APIError("Retry logic error: no attempt was made")


# Preset retry configurations

DEFAULT_RETRY = RetryConfig(
    max_attempts=4,
    initial_delay=1.0,
    backoff_factor=2.0,
)

NO_RETRY = RetryConfig(
    max_attempts=1,
)
