"""
Retry Strategy for the Controller

Two layers:
- k8s_retry: tenacity decorator for cluster API calls (status patches, lists).
  Retries throttling, server errors and dropped connections in-place.
- RequeueBackoff: per-resource exponential backoff with jitter used by the
  work queue when a reconciliation asks to be retried. Bounded by a total
  retry horizon so an unreachable backend parks the resource instead of
  spinning forever.
"""

import logging
import random
import time
from typing import Callable, Dict, Optional, Tuple

import urllib3
from kubernetes.client.rest import ApiException
from tenacity import (
    before_sleep_log,
    retry,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)


# Cluster API statuses worth retrying (0 = no HTTP response at all)
RETRYABLE_API_STATUSES = frozenset({0, 429, 500, 502, 503, 504})

_RETRYABLE_EXCEPTION_TYPES = (
    ConnectionError,              # Network issues
    TimeoutError,                 # Request timeouts
    urllib3.exceptions.HTTPError,  # MaxRetryError, ProtocolError, ReadTimeoutError
)


def is_retryable_api_error(exception: BaseException) -> bool:
    """
    Determine if a cluster API exception should trigger a retry.

    Returns True for ApiException with a retryable status and for
    connection-level failures. 404/409/422 and friends are not retried.
    """
    if isinstance(exception, ApiException):
        return (exception.status or 0) in RETRYABLE_API_STATUSES
    return isinstance(exception, _RETRYABLE_EXCEPTION_TYPES)


def create_retry_decorator(
    max_attempts: int = 3,
    min_wait: float = 0.5,
    max_wait: float = 5.0,
    exponential_base: float = 2.0
) -> Callable:
    """
    Create a retry decorator for cluster API calls.

    Args:
        max_attempts: Maximum number of attempts (default: 3)
        min_wait: Minimum wait time in seconds (default: 0.5)
        max_wait: Maximum wait time in seconds (default: 5.0)
        exponential_base: Base for exponential backoff (default: 2.0)

    Returns:
        Retry decorator usable on sync and async functions
    """
    return retry(
        stop=stop_after_attempt(max_attempts),
        wait=wait_exponential(
            multiplier=min_wait,
            min=min_wait,
            max=max_wait,
            exp_base=exponential_base
        ),
        retry=retry_if_exception(is_retryable_api_error),
        before_sleep=before_sleep_log(logger, logging.WARNING),
        reraise=True
    )


# Default decorator for KubernetesClient calls
k8s_retry = create_retry_decorator()


class RequeueBackoff:
    """
    Per-key capped exponential backoff with jitter and a retry horizon.

    delay(n) = uniform(d/2, d) where d = min(max_delay, base_delay * 2**n)

    The horizon is measured from the first failure of the current streak;
    forget() ends the streak (on success or deletion).
    """

    def __init__(
        self,
        base_delay: float = 1.0,
        max_delay: float = 60.0,
        max_retry_seconds: float = 600.0,
        clock: Callable[[], float] = time.monotonic,
        rng: Optional[random.Random] = None,
    ):
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_retry_seconds = max_retry_seconds
        self._clock = clock
        self._rng = rng or random.Random()
        self._failures: Dict[str, Tuple[int, float]] = {}  # key -> (attempts, first_failure_at)

    def next_delay(self, key: str) -> Optional[float]:
        """
        Record a failure for key and return the delay before the next attempt.

        Returns:
            Seconds to wait, or None when the retry horizon is exhausted
        """
        now = self._clock()
        attempts, started = self._failures.get(key, (0, now))
        if now - started >= self.max_retry_seconds:
            return None

        capped = min(self.max_delay, self.base_delay * (2 ** attempts))
        delay = self._rng.uniform(capped / 2, capped)
        # Never schedule past the horizon
        delay = min(delay, max(0.0, started + self.max_retry_seconds - now))

        self._failures[key] = (attempts + 1, started)
        return delay

    def attempts(self, key: str) -> int:
        return self._failures.get(key, (0, 0.0))[0]

    def forget(self, key: str) -> None:
        self._failures.pop(key, None)
