"""
retry.py

Bounded retry combinator applied uniformly to remote list-store calls.

Transient errors are retried with exponential backoff; permanent errors
fail on the first attempt.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Tuple, Type, TypeVar

from .errors import TransientRemoteError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryPolicy:
    """
    Delay before retry n (0-based) = min(base_delay * factor ** n, max_delay)

    Attributes:
        max_attempts: Total attempts including the first call
        base_delay: Initial delay in seconds
        factor: Exponential multiplier
        max_delay: Delay cap in seconds
        retryable: Exception types worth another attempt
        sleep: Injected for tests
    """
    max_attempts: int = 4
    base_delay: float = 1.0
    factor: float = 2.0
    max_delay: float = 4.0
    retryable: Tuple[Type[BaseException], ...] = (TransientRemoteError,)
    sleep: Callable[[float], None] = field(default=time.sleep, repr=False)

    @classmethod
    def from_config(cls, engine_config, sleep: Callable[[float], None] = time.sleep) -> "RetryPolicy":
        return cls(
            max_attempts=engine_config.max_retries + 1,
            base_delay=engine_config.retry_base_delay,
            factor=engine_config.retry_factor,
            max_delay=engine_config.retry_max_delay,
            sleep=sleep,
        )

    def with_attempts(self, max_attempts: int) -> "RetryPolicy":
        return RetryPolicy(
            max_attempts=max_attempts,
            base_delay=self.base_delay,
            factor=self.factor,
            max_delay=self.max_delay,
            retryable=self.retryable,
            sleep=self.sleep,
        )

    def next_delay(self, retry_number: int) -> float:
        return min(self.base_delay * (self.factor ** retry_number), self.max_delay)

    def delays(self):
        return [self.next_delay(n) for n in range(self.max_attempts - 1)]

    def call(self, operation: Callable[[], T], description: str = "remote call") -> T:
        """Run operation, retrying retryable failures; the last error propagates"""
        attempt = 0
        while True:
            try:
                return operation()
            except self.retryable as e:
                attempt += 1
                if attempt >= self.max_attempts:
                    logger.error(f"❌ {description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.next_delay(attempt - 1)
                logger.warning(f"⚠️ Retry {attempt}/{self.max_attempts - 1} for {description} in {delay:.1f}s: {e}")
                self.sleep(delay)
