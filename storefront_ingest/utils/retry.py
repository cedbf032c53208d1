"""
Retry policy shared by the storefront HTTP client and the database pool.

One object carries max attempts, base/max delay, jitter and the predicate
that decides whether an exception is worth another attempt.
"""

import random
import time
from dataclasses import dataclass, field
from typing import Callable, Optional, TypeVar

from storefront_ingest.utils.logging_utils import log_event

T = TypeVar("T")


def _never(_: BaseException) -> bool:
    return False


@dataclass(frozen=True)
class RetryPolicy:
    """
    Bounded exponential backoff.

    Attributes:
        max_retries: Retries after the first attempt (total attempts = max_retries + 1)
        base_delay: Delay in seconds before the first retry
        max_delay: Cap for computed backoff delays
        jitter: Fraction of the delay added as random jitter (0 disables it)
        retryable: Predicate deciding whether an exception should be retried
        max_hint: Cap for server-provided retry hints (Retry-After)
    """

    max_retries: int = 4
    base_delay: float = 0.5
    max_delay: float = 4.0
    jitter: float = 0.0
    retryable: Callable[[BaseException], bool] = field(default=_never)
    max_hint: float = 10.0

    def delay_for(self, attempt: int, hint: Optional[float] = None) -> float:
        """
        Compute the delay before retry number ``attempt`` (1-based).

        Args:
            attempt: Retry number, 1 for the first retry
            hint: Optional server-provided delay in seconds

        Returns:
            float: Seconds to sleep
        """
        if hint is not None and hint > 0:
            return min(hint, self.max_hint)
        delay = min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)
        if self.jitter > 0:
            delay += random.uniform(0, delay * self.jitter)
        return delay

    def call(
        self,
        fn: Callable[[], T],
        section: str = "Retry",
        sleep: Callable[[float], None] = time.sleep,
    ) -> T:
        """
        Run ``fn`` until it succeeds, a non-retryable error occurs or retries run out.

        The last exception is re-raised unchanged once the policy gives up.

        Args:
            fn: Zero-argument callable to run
            section: Logging section name
            sleep: Sleep function (injectable for tests)

        Returns:
            Whatever ``fn`` returns
        """
        attempt = 0
        while True:
            try:
                return fn()
            except Exception as e:
                if attempt >= self.max_retries or not self.retryable(e):
                    raise
                attempt += 1
                delay = self.delay_for(attempt, getattr(e, "retry_after", None))
                log_event(
                    section,
                    "retry",
                    attempt=attempt,
                    max_retries=self.max_retries,
                    backoff_s=round(delay, 3),
                    error=str(e)[:200],
                )
                sleep(delay)
