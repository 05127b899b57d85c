"""Bounded polling with capped exponential backoff.

Container start and stop are confirmed by repeatedly probing the driver. The
wait is always bounded: probes are spaced ``initial_delay * multiplier**n``
seconds apart (capped at ``max_delay``) until either the predicate holds or
``timeout`` seconds have elapsed.
"""
from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Generic, TypeVar

LOGGER = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(frozen=True, slots=True)
class PollPolicy:
    """Backoff schedule for one wait."""

    timeout: float
    initial_delay: float = 0.5
    max_delay: float = 5.0
    multiplier: float = 2.0

    def delays(self) -> Iterator[float]:
        """Yield successive sleep intervals (unbounded; callers enforce the deadline)."""
        delay = self.initial_delay
        while True:
            yield min(delay, self.max_delay)
            delay = min(delay * self.multiplier, self.max_delay)


@dataclass(slots=True)
class PollResult(Generic[T]):
    """Outcome of :func:`poll_until`."""

    satisfied: bool
    value: T | None
    attempts: int
    last_error: Exception | None = None


def poll_until(
    probe: Callable[[], T],
    predicate: Callable[[T], bool],
    policy: PollPolicy,
    *,
    retry_on: tuple[type[Exception], ...] = (),
    sleep: Callable[[float], None] = time.sleep,
    clock: Callable[[], float] = time.monotonic,
) -> PollResult[T]:
    """Call *probe* until *predicate* accepts its value or *policy* times out.

    Exceptions listed in *retry_on* count as a failed attempt and are retried
    until the deadline; the most recent one is returned in
    :attr:`PollResult.last_error`. Any other exception propagates immediately.
    """
    deadline = clock() + policy.timeout
    attempts = 0
    value: T | None = None
    last_error: Exception | None = None
    delays = policy.delays()
    while True:
        attempts += 1
        try:
            value = probe()
        except retry_on as exc:
            last_error = exc
            LOGGER.debug("Poll attempt %d failed: %s", attempts, exc)
        else:
            last_error = None
            if predicate(value):
                return PollResult(True, value, attempts)
        remaining = deadline - clock()
        if remaining <= 0:
            return PollResult(False, value, attempts, last_error)
        sleep(min(next(delays), remaining))


__all__ = ["PollPolicy", "PollResult", "poll_until"]
