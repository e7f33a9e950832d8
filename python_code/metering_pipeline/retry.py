"""
Retry/backoff controller shared by the scanner and the billing reporter.

Only throttling-class errors are retried. The loop is bounded and computes its
delay from the attempt counter: `base * 2**attempt` (base, 2*base, 4*base, ...).
"""

import random
import time
from typing import Callable, Optional, TypeVar

from aws_lambda_powertools import Logger
from botocore.exceptions import ClientError

from .exceptions import ThrottlingError

T = TypeVar("T")

THROTTLING_ERROR_CODES = frozenset(
    {
        "ThrottlingException",
        "Throttling",
        "RequestThrottled",
        "TooManyRequestsException",
        "ProvisionedThroughputExceededException",
        "RequestLimitExceeded",
    }
)


def is_throttling_error(exc: BaseException) -> bool:
    """Classifies an exception as retryable rate limiting."""
    if isinstance(exc, ThrottlingError):
        return True
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code") in THROTTLING_ERROR_CODES
    return False


class RetryPolicy:
    """
    Runs an operation, retrying retryable failures with exponential backoff.

    Args:
        max_retries: Retries allowed after the first attempt.
        base_delay_seconds: Delay before the first retry.
        logger: Powertools logger for retry diagnostics.
        sleep: Injected for tests; defaults to `time.sleep`.
        jitter_seconds: Upper bound of random jitter added to each delay.
    """

    def __init__(
        self,
        max_retries: int = 3,
        base_delay_seconds: float = 1.0,
        logger: Optional[Logger] = None,
        sleep: Callable[[float], None] = time.sleep,
        jitter_seconds: float = 0.0,
    ):
        self.max_retries = max_retries
        self.base_delay_seconds = base_delay_seconds
        self._logger = logger
        self._sleep = sleep
        self._jitter_seconds = jitter_seconds

    def delay_for(self, attempt: int) -> float:
        return self.base_delay_seconds * (2**attempt)

    def call(
        self,
        operation: Callable[[], T],
        is_retryable: Callable[[BaseException], bool] = is_throttling_error,
        description: str = "operation",
    ) -> T:
        """
        Calls `operation` until it succeeds, raises a non-retryable error, or the
        retry bound is reached. The final retryable error is re-raised.
        """
        attempt = 0
        while True:
            try:
                return operation()
            except Exception as e:
                if not is_retryable(e) or attempt >= self.max_retries:
                    raise
                delay = self.delay_for(attempt)
                if self._jitter_seconds:
                    delay += random.uniform(0.0, self._jitter_seconds)
                if self._logger:
                    self._logger.warning(
                        f"Throttled during {description}; retrying.",
                        extra={
                            "attempt": attempt + 1,
                            "max_retries": self.max_retries,
                            "delay_seconds": round(delay, 3),
                            "error": str(e),
                        },
                    )
                self._sleep(delay)
                attempt += 1
