# zbory/signing/retry.py

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

from zbory.errors import TransientExternalError, ZboryError, classify_error

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Backoff:
    strategy: str  # 'exponential' or 'linear'
    delay: float
    max_delay: Optional[float] = None


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int
    timeout: Optional[float] = None
    backoff: Optional[Backoff] = None


@dataclass(frozen=True)
class RetryAttempt:
    """Passed to each attempt; `timeout` must bound any network call it makes."""
    attempt: int
    max_attempts: int
    timeout: Optional[float]


RETRY_PRESETS = {
    'dubidoc': RetryPolicy(max_attempts=3, timeout=30, backoff=Backoff('exponential', 1.0)),
}


def get_backoff_delay(backoff: Optional[Backoff], retry_index: int) -> float:
    if backoff is None or retry_index <= 0:
        return 0
    if backoff.strategy == 'linear':
        delay = backoff.delay * retry_index
    else:
        delay = backoff.delay * 2 ** (retry_index - 1)
    if backoff.max_delay is None:
        return delay
    return min(delay, backoff.max_delay)


def is_retryable(error: ZboryError) -> bool:
    return isinstance(error, TransientExternalError)


def with_retry(fn: Callable[[RetryAttempt], object], policy: RetryPolicy,
               should_retry: Callable[[ZboryError], bool] = is_retryable,
               sleep: Callable[[float], None] = time.sleep):
    """Run `fn` up to `policy.max_attempts` times.

    Failures are classified into the error taxonomy first; only errors that
    `should_retry` accepts are attempted again. The last error is re-raised
    in its classified form.
    """
    if not isinstance(policy.max_attempts, int) or policy.max_attempts < 1:
        raise ValueError("with_retry max_attempts must be an integer >= 1")

    for attempt in range(1, policy.max_attempts + 1):
        try:
            return fn(RetryAttempt(attempt, policy.max_attempts, policy.timeout))
        except Exception as e:
            error = classify_error(e)
            if attempt >= policy.max_attempts or not should_retry(error):
                if error is e:
                    raise
                raise error from e
            delay = get_backoff_delay(policy.backoff, attempt)
            logger.warning("Attempt %d/%d failed (%s); retrying in %.1fs",
                           attempt, policy.max_attempts, error.code, delay)
            if delay > 0:
                sleep(delay)
    raise RuntimeError("with_retry exhausted unexpectedly")
