"""Poll-with-backoff primitive.

Every wait loop in the restore workflow (clone availability, connection
tests, replication task completion, ECS task completion, resource deletion)
goes through ``poll_until``.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


class PollTimeoutError(Exception):
    """Raised when a polled condition does not reach a terminal state in time."""

    def __init__(self, description: str, timeout: float) -> None:
        self.description = description
        self.timeout = timeout
        super().__init__(f"Timed out after {timeout:.0f}s waiting for {description}")


def poll_until(
    check: Callable[[], Optional[T]],
    *,
    description: str,
    interval: float = 30.0,
    timeout: float = 3600.0,
    backoff: float = 1.0,
    max_interval: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
    timeout_error: Callable[[str, float], Exception] = PollTimeoutError,
) -> T:
    """Call ``check`` until it returns a non-None value.

    ``check`` returns None while the resource is still transitioning and a
    value once it is terminal. Exceptions raised by ``check`` propagate, which
    is how callers signal terminal failure states.

    Args:
        check: Status function, None means keep waiting
        description: Human readable name of what is being waited for
        interval: Initial seconds between checks
        timeout: Overall bound in seconds
        backoff: Multiplier applied to the interval after every check
        max_interval: Upper bound for the interval when backing off
        sleep: Sleep function (injectable for tests)
        clock: Monotonic clock (injectable for tests)
        timeout_error: Factory for the exception raised on timeout

    Returns:
        The first non-None value returned by ``check``

    Raises:
        Exception built by ``timeout_error`` when the bound is exceeded
    """
    deadline = clock() + timeout
    delay = interval
    attempt = 0

    while True:
        attempt += 1
        result = check()
        if result is not None:
            logger.debug(f"{description}: terminal after {attempt} check(s)")
            return result

        remaining = deadline - clock()
        if remaining <= 0:
            raise timeout_error(description, timeout)

        wait = min(delay, remaining)
        logger.debug(f"{description}: not ready, next check in {wait:.0f}s")
        sleep(wait)

        delay = delay * backoff
        if max_interval is not None:
            delay = min(delay, max_interval)


def retry_with_backoff(
    operation: Callable[[], T],
    *,
    description: str,
    is_retryable: Callable[[Exception], bool],
    max_attempts: int = 3,
    base_delay: float = 1.0,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``operation`` and retry retryable exceptions with exponential backoff.

    Args:
        operation: Callable to run
        description: Human readable name for log messages
        is_retryable: Predicate deciding whether an exception is transient
        max_attempts: Total attempts including the first one
        base_delay: Delay before the second attempt, doubled afterwards
        sleep: Sleep function (injectable for tests)

    Returns:
        Result of the first successful call

    Raises:
        The last exception when attempts are exhausted or it is not retryable
    """
    for attempt in range(max_attempts):
        try:
            return operation()
        except Exception as e:
            if not is_retryable(e) or attempt >= max_attempts - 1:
                raise
            wait_time = base_delay * (2**attempt)
            logger.warning(
                f"{description} failed ({e}), retrying in {wait_time:.0f}s "
                f"(attempt {attempt + 1}/{max_attempts})"
            )
            sleep(wait_time)

    raise RuntimeError(f"{description}: no attempts made")  # max_attempts < 1
