"""Bounded retry with exponential backoff.

Three schedules are in use and all of them are expressed as RetryPolicy values
so they stay in one place:

    TUNNEL_READY    100ms, 200ms, 400ms before attempts 1-3
    ENGINE_CONNECT  3 attempts, 100ms then 200ms between them
    REGISTRY_PULL   3 attempts, 1s then 2s between them
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable, TypeVar

from .constants import (
    ENGINE_CONNECT_ATTEMPTS,
    ENGINE_CONNECT_BASE_DELAY,
    PULL_ATTEMPTS,
    PULL_BASE_DELAY,
    TUNNEL_READY_ATTEMPTS,
    TUNNEL_READY_BASE_DELAY,
)
from .logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """How often and how patiently to retry an operation.

    Attributes:
        max_attempts: Total number of calls, including the first.
        base_delay: Delay in seconds for the first wait.
        multiplier: Growth factor applied per attempt.
        delay_first: Wait before every attempt (including the first)
            instead of only between attempts.
    """

    max_attempts: int
    base_delay: float
    multiplier: float = 2.0
    delay_first: bool = False

    def delay_for(self, index: int) -> float:
        """Delay for the index-th wait (0-based)."""
        return self.base_delay * self.multiplier**index

    def delays(self) -> list[float]:
        """Every wait this policy performs when all attempts fail."""
        count = self.max_attempts if self.delay_first else self.max_attempts - 1
        return [self.delay_for(i) for i in range(max(count, 0))]


TUNNEL_READY = RetryPolicy(TUNNEL_READY_ATTEMPTS, TUNNEL_READY_BASE_DELAY, delay_first=True)
ENGINE_CONNECT = RetryPolicy(ENGINE_CONNECT_ATTEMPTS, ENGINE_CONNECT_BASE_DELAY)
REGISTRY_PULL = RetryPolicy(PULL_ATTEMPTS, PULL_BASE_DELAY)


class RetryExhausted(Exception):
    """Every attempt failed.

    Not part of the public error hierarchy: callers translate it into the
    domain error that fits (tunnel timeout, pull failure, ...).

    Attributes:
        attempts: Number of attempts made.
        errors: The exception raised by each attempt, in order.
    """

    def __init__(self, attempts: int, errors: list[BaseException]) -> None:
        last = errors[-1] if errors else None
        super().__init__(f"Gave up after {attempts} attempt(s): {last}")
        self.attempts = attempts
        self.errors = errors

    @property
    def last_error(self) -> BaseException | None:
        return self.errors[-1] if self.errors else None


def retry_with_backoff(
    operation: Callable[[int], T],
    policy: RetryPolicy,
    *,
    retry_on: tuple[type[BaseException], ...] = (Exception,),
    sleep: Callable[[float], None] = time.sleep,
    describe: str = "operation",
) -> T:
    """Call ``operation(attempt)`` until it succeeds or the policy is spent.

    Exceptions outside ``retry_on`` propagate immediately.

    Args:
        operation: Callable receiving the 0-based attempt number.
        policy: Attempt count and delay schedule.
        retry_on: Exception types that count as a failed attempt.
        sleep: Sleep function (injectable for tests).
        describe: Label used in debug logs.

    Returns:
        The first successful result.

    Raises:
        RetryExhausted: If every attempt failed.
    """
    errors: list[BaseException] = []
    wait_index = 0

    for attempt in range(policy.max_attempts):
        if attempt > 0 or policy.delay_first:
            delay = policy.delay_for(wait_index)
            wait_index += 1
            logger.debug("%s: waiting %.2fs before attempt %d", describe, delay, attempt + 1)
            sleep(delay)
        try:
            return operation(attempt)
        except retry_on as e:
            logger.debug(
                "%s: attempt %d/%d failed: %s", describe, attempt + 1, policy.max_attempts, e
            )
            errors.append(e)

    raise RetryExhausted(policy.max_attempts, errors)
