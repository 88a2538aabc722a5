"""Restart backoff for the daemon's driver loop"""

import logging
import random
import time
from typing import Callable

logger = logging.getLogger(__name__)


def calculate_backoff_delay(
    attempt: int,
    initial_delay: float = 1.0,
    max_delay: float = 60.0,
    exponential_base: float = 2.0,
    jitter: bool = True,
) -> float:
    """Delay before retry number ``attempt`` (0-based), with exponential backoff

    Args:
        attempt: Number of consecutive failures so far, minus one
        initial_delay: Delay in seconds after the first failure (default: 1.0)
        max_delay: Maximum delay in seconds (default: 60.0)
        exponential_base: Base for exponential backoff (default: 2.0)
        jitter: Add random jitter of up to 10% (default: True)

    Returns:
        Delay in seconds
    """
    delay = min(initial_delay * (exponential_base**attempt), max_delay)

    # Add jitter to prevent thundering herd
    if jitter and delay > 0:
        jitter_amount = delay * 0.1  # 10% jitter
        delay = delay + random.uniform(-jitter_amount, jitter_amount)
        delay = max(0.1, delay)  # Ensure delay is positive

    return delay


class RestartBackoff:
    """Tracks consecutive failures of the driver loop and sleeps accordingly."""

    def __init__(
        self,
        initial_delay: float = 1.0,
        max_delay: float = 60.0,
        exponential_base: float = 2.0,
        jitter: bool = True,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.exponential_base = exponential_base
        self.jitter = jitter
        self.failures = 0
        self._sleep = sleep

    def reset(self) -> None:
        if self.failures:
            logger.debug(f"Recovered after {self.failures} consecutive failure(s)")
        self.failures = 0

    def wait(self) -> float:
        """Sleep before the next restart and return the delay used."""
        delay = calculate_backoff_delay(
            self.failures,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            exponential_base=self.exponential_base,
            jitter=self.jitter,
        )
        self.failures += 1
        logger.info(f"Restarting in {delay:.2f}s...")
        self._sleep(delay)
        return delay
