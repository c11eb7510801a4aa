# app/x402/retry.py
"""
Bounded retry with exponential backoff.

Applied only at the two idempotent call sites of the middleware: the price
lookup and the facilitator verify call. Protocol denials are answers, not
failures, and are never retried.
"""
import logging
import random
import time
from dataclasses import dataclass
from typing import Callable, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """
    Retry policy value object.

    Attributes:
        max_attempts: Total attempts including the first one (3 = 2 retries)
        backoff_base: Delay before the first retry, in seconds; doubles each retry
        jitter: Upper bound of random extra delay, in seconds
    """
    max_attempts: int = 3
    backoff_base: float = 0.5
    jitter: float = 0.2

    def __post_init__(self):
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff_base < 0:
            raise ValueError("backoff_base must not be negative")

    def delay_for(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based)."""
        return self.backoff_base * (2 ** (attempt - 1)) + random.uniform(0, self.jitter)

    def call(
        self,
        fn: Callable[[], T],
        retry_on: Tuple[Type[BaseException], ...],
        description: str = "call",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Run `fn`, retrying on the given exception types.

        The last exception is re-raised once attempts are exhausted.
        """
        attempt = 1
        while True:
            try:
                return fn()
            except retry_on as e:
                if attempt >= self.max_attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {e}")
                    raise
                delay = self.delay_for(attempt)
                logger.warning(
                    f"{description} failed (attempt {attempt}/{self.max_attempts}), "
                    f"retrying in {delay:.2f}s: {e}"
                )
                sleep(delay)
                attempt += 1


NO_RETRY = RetryPolicy(max_attempts=1, backoff_base=0.0, jitter=0.0)
