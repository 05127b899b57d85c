"""Bounded polling tests."""
from __future__ import annotations

import itertools

import pytest

from mcsctl.polling import PollPolicy, poll_until

from conftest import FakeClock


def test_delays_grow_and_cap() -> None:
    """Delays follow the multiplier and never exceed the cap."""
    policy = PollPolicy(timeout=60, initial_delay=0.5, max_delay=3.0, multiplier=2.0)

    assert list(itertools.islice(policy.delays(), 5)) == [0.5, 1.0, 2.0, 3.0, 3.0]


def test_poll_returns_once_predicate_holds(clock: FakeClock) -> None:
    """Polling stops at the first accepted value."""
    values = iter(["created", "created", "running"])

    result = poll_until(
        lambda: next(values),
        lambda value: value == "running",
        PollPolicy(timeout=10, initial_delay=1.0),
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.satisfied is True
    assert result.value == "running"
    assert result.attempts == 3
    assert clock.sleeps == [1.0, 2.0]


def test_poll_is_bounded_by_timeout(clock: FakeClock) -> None:
    """A predicate that never holds gives up once the deadline passes."""
    result = poll_until(
        lambda: "created",
        lambda value: value == "running",
        PollPolicy(timeout=5, initial_delay=1.0, max_delay=2.0),
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.satisfied is False
    assert result.value == "created"
    assert clock.now == pytest.approx(5.0)
    assert sum(clock.sleeps) == pytest.approx(5.0)


def test_poll_retries_listed_errors(clock: FakeClock) -> None:
    """Exceptions in ``retry_on`` count as failed attempts."""
    outcomes = iter([ConnectionError("blip"), ConnectionError("blip"), "running"])

    def probe() -> str:
        value = next(outcomes)
        if isinstance(value, Exception):
            raise value
        return value

    result = poll_until(
        probe,
        lambda value: value == "running",
        PollPolicy(timeout=10, initial_delay=0.5),
        retry_on=(ConnectionError,),
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.satisfied is True
    assert result.attempts == 3
    assert result.last_error is None


def test_poll_reports_last_error_on_timeout(clock: FakeClock) -> None:
    """The most recent retried error is returned when the wait expires."""

    def probe() -> str:
        raise ConnectionError("daemon restarting")

    result = poll_until(
        probe,
        lambda value: True,
        PollPolicy(timeout=2, initial_delay=0.5),
        retry_on=(ConnectionError,),
        sleep=clock.sleep,
        clock=clock,
    )

    assert result.satisfied is False
    assert result.value is None
    assert isinstance(result.last_error, ConnectionError)


def test_poll_propagates_unlisted_errors(clock: FakeClock) -> None:
    """Errors outside ``retry_on`` are not swallowed."""

    def probe() -> str:
        raise KeyError("boom")

    with pytest.raises(KeyError):
        poll_until(
            probe,
            lambda value: True,
            PollPolicy(timeout=2),
            retry_on=(ConnectionError,),
            sleep=clock.sleep,
            clock=clock,
        )
