"""
Bounded retries with exponential backoff.

Wraps an external action so that transient failures are retried with a
growing delay. Terminal failures are raised on the first attempt.
"""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Iterator, TypeVar

from ..errors import TerminalError

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for one action invocation.

    Attributes:
        max_attempts: Total attempts including the first (>= 1)
        initial_delay: Seconds to wait before the first retry
        multiplier: Factor applied to the delay after every retry (>= 1)
    """
    max_attempts: int = 3
    initial_delay: float = 2.0
    multiplier: float = 2.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be positive: {self.max_attempts}")
        if self.initial_delay < 0:
            raise ValueError(f"initial_delay must not be negative: {self.initial_delay}")
        if self.multiplier < 1:
            raise ValueError(f"multiplier must be >= 1: {self.multiplier}")

    def delays(self) -> Iterator[float]:
        """Yield the wait before each retry: initial_delay * multiplier**(k-1)."""
        delay = self.initial_delay
        for _ in range(self.max_attempts - 1):
            yield delay
            delay *= self.multiplier


NO_RETRY = RetryPolicy(max_attempts=1, initial_delay=0.0, multiplier=1.0)


class RetryExecutor:
    """Runs actions under a RetryPolicy.

    Args:
        policy: Default policy when execute() isn't given one
        sleep: Blocking delay function (injectable for tests)
    """

    def __init__(
        self,
        policy: RetryPolicy | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.policy = policy or RetryPolicy()
        self.sleep = sleep

    def execute(
        self,
        action: Callable[[], T],
        policy: RetryPolicy | None = None,
        label: str = "action",
    ) -> T:
        """Invoke action until it succeeds or attempts run out.

        Args:
            action: Zero-argument callable; raising means failure
            policy: Overrides the executor's default policy
            label: Name used in log lines

        Returns:
            Whatever the action returned on its successful attempt.

        Raises:
            TerminalError: Immediately, without consuming further attempts
            Exception: The last error raised once max_attempts is exhausted
        """
        policy = policy or self.policy
        delays = policy.delays()
        attempt = 1

        while True:
            try:
                result = action()
            except TerminalError as e:
                logger.warning(
                    "[%s] attempt %d/%d failed with terminal error: %s",
                    label, attempt, policy.max_attempts, e,
                )
                raise
            except Exception as e:
                logger.warning(
                    "[%s] attempt %d/%d failed: %s",
                    label, attempt, policy.max_attempts, e,
                )
                delay = next(delays, None)
                if delay is None:
                    logger.error("[%s] giving up after %d attempts", label, attempt)
                    raise
                logger.info("[%s] retrying in %.1fs", label, delay)
                self.sleep(delay)
                attempt += 1
                continue

            logger.info("[%s] attempt %d/%d succeeded", label, attempt, policy.max_attempts)
            return result
