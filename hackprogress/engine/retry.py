"""
Retry policy for remote writes.

One policy object is built from settings and handed to every component that
talks to the remote service, so attempts and delays are configured once.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from hackprogress.config import EngineSettings

from .errors import RemoteSyncError

logger = logging.getLogger(__name__)

RETRYABLE_ERRORS = (RemoteSyncError, ConnectionError, TimeoutError, OSError)

SleepFn = Callable[[float], Awaitable[Any]]


@dataclass
class RetryPolicy:
    max_attempts: int = 2
    delay_seconds: float = 1.0
    backoff: float = 1.0
    sleep: SleepFn = field(default=asyncio.sleep, repr=False)

    @classmethod
    def from_settings(cls, settings: EngineSettings, sleep: SleepFn = asyncio.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=settings.retry_max_attempts,
            delay_seconds=settings.retry_delay_seconds,
            backoff=settings.retry_backoff,
            sleep=sleep,
        )

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return self.delay_seconds * (self.backoff ** (attempt - 1))

    async def run(self, operation: str, fn: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """
        Await fn(*args, **kwargs), retrying retryable failures.

        Raises:
            RemoteSyncError: After max_attempts failures
        """
        last_error: Exception | None = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return await fn(*args, **kwargs)
            except RETRYABLE_ERRORS as e:
                last_error = e
                logger.warning(f"{operation} failed (attempt {attempt}/{self.max_attempts}): {e}")
                if attempt < self.max_attempts:
                    await self.sleep(self.delay_for(attempt))

        raise RemoteSyncError(operation, str(last_error), attempts=self.max_attempts) from last_error
