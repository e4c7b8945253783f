"""Bounded polling with exponential backoff.

Replaces fixed sleeps before reading eventually-consistent state (identity
principals, provider registration) with a poll that stops as soon as the
value is available and fails with DependencyTimeout at the deadline.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import TypeVar

from .errors import DependencyTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_MAX_INTERVAL_SECONDS = 30.0
BACKOFF_FACTOR = 2.0


@dataclass(frozen=True)
class PollPolicy:
    """Timing for a bounded poll."""

    timeout_seconds: float = DEFAULT_TIMEOUT_SECONDS
    interval_seconds: float = DEFAULT_INTERVAL_SECONDS
    max_interval_seconds: float = DEFAULT_MAX_INTERVAL_SECONDS

    def __post_init__(self) -> None:
        if self.timeout_seconds < 0:
            raise ValueError("timeout_seconds must be >= 0")
        if self.interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        if self.max_interval_seconds < self.interval_seconds:
            raise ValueError("max_interval_seconds must be >= interval_seconds")


def wait_until(
    fetch: Callable[[], T | None],
    *,
    what: str,
    policy: PollPolicy | None = None,
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> T:
    """Call ``fetch`` until it returns a value other than None.

    ``fetch`` is always called at least once, even with a zero timeout.
    Exceptions raised by ``fetch`` propagate unchanged.

    Args:
        fetch: Returns the awaited value, or None while not ready.
        what: Human readable description used in logs and errors.
        policy: Timeout and backoff settings.
        sleep: Blocking sleep function (injectable for tests).
        clock: Monotonic clock (injectable for tests).

    Returns:
        The first non-None value returned by ``fetch``.

    Raises:
        DependencyTimeout: If the deadline passes before a value is available.
    """
    policy = policy or PollPolicy()
    start = clock()
    deadline = start + policy.timeout_seconds
    interval = policy.interval_seconds
    attempt = 0

    while True:
        attempt += 1
        value = fetch()
        if value is not None:
            if attempt > 1:
                logger.info(
                    "Dependency ready",
                    extra={"what": what, "attempts": attempt, "waited_seconds": clock() - start},
                )
            return value

        now = clock()
        if now >= deadline:
            waited = now - start
            logger.error(
                "Timed out waiting for dependency",
                extra={"what": what, "attempts": attempt, "waited_seconds": waited},
            )
            raise DependencyTimeout(
                f"Timed out after {waited:.0f}s waiting for {what}",
                waited_seconds=waited,
            )

        delay = min(interval, deadline - now)
        logger.debug(
            "Dependency not ready, waiting",
            extra={"what": what, "attempt": attempt, "delay_seconds": delay},
        )
        sleep(delay)
        interval = min(interval * BACKOFF_FACTOR, policy.max_interval_seconds)
