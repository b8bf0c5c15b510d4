"""Bounded waiting primitives.

Every blocking loop in the rotation (key confirmation, component re-mint,
operator health) is expressed with these so that none of them can spin
forever and all of them honor the overall run deadline.

Usage::

    deadline = Deadline(3600)
    backoff = Backoff(attempts=5, base_delay=1.0, deadline=deadline)
    keys = backoff.call(iam.list_access_keys, "cco-root-abc")

    result = poll_until(probe, interval=10, deadline=deadline.child(600))
    if result.timed_out:
        ...
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

from cco_rotate.errors import TransientError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class Deadline:
    """A point in monotonic time after which waiting must stop."""

    def __init__(
        self,
        timeout: float | None,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._clock = _clock or time.monotonic
        self._expires_at = None if timeout is None else self._clock() + timeout

    @property
    def clock(self) -> Callable[[], float]:
        return self._clock

    def remaining(self) -> float | None:
        """Seconds left, ``None`` for an unbounded deadline."""
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - self._clock())

    @property
    def expired(self) -> bool:
        remaining = self.remaining()
        return remaining is not None and remaining <= 0

    def child(self, timeout: float | None) -> Deadline:
        """A deadline that ends at *timeout* from now or at this one, whichever is first."""
        remaining = self.remaining()
        if timeout is None:
            bound = remaining
        elif remaining is None:
            bound = timeout
        else:
            bound = min(timeout, remaining)
        return Deadline(bound, _clock=self._clock)


@dataclass
class PollResult(Generic[T]):
    value: T | None
    timed_out: bool
    attempts: int
    elapsed: float


def poll_until(
    probe: Callable[[], T | None],
    *,
    interval: float,
    deadline: Deadline,
    sleep: Callable[[float], None] = time.sleep,
) -> PollResult[T]:
    """Call *probe* until it returns something other than ``None``.

    The probe is always called at least once.  Returns the value, or a
    timed-out result once *deadline* passes.
    """
    clock = deadline.clock
    start = clock()
    attempts = 0
    while True:
        attempts += 1
        value = probe()
        if value is not None:
            return PollResult(value, False, attempts, clock() - start)
        remaining = deadline.remaining()
        if remaining is not None and remaining <= 0:
            return PollResult(None, True, attempts, clock() - start)
        sleep(interval if remaining is None else min(interval, remaining))


class Backoff:
    """Bounded exponential backoff for calls that may fail transiently."""

    def __init__(
        self,
        attempts: int = 5,
        base_delay: float = 1.0,
        max_delay: float = 30.0,
        deadline: Deadline | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if attempts < 1:
            raise ValueError("attempts must be >= 1")
        self.attempts = attempts
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.deadline = deadline
        self._sleep = sleep

    def delays(self) -> Iterator[float]:
        """Delays between consecutive attempts (``attempts - 1`` values)."""
        for n in range(self.attempts - 1):
            yield min(self.base_delay * (2 ** n), self.max_delay)

    def with_attempts(self, attempts: int, deadline: Deadline | None = None) -> Backoff:
        return Backoff(
            attempts=attempts,
            base_delay=self.base_delay,
            max_delay=self.max_delay,
            deadline=deadline or self.deadline,
            sleep=self._sleep,
        )

    def call(
        self,
        fn: Callable[..., T],
        *args: Any,
        retry_on: tuple[type[BaseException], ...] = (TransientError,),
        **kwargs: Any,
    ) -> T:
        """Call *fn*, retrying on *retry_on* until attempts or the deadline run out.

        The last exception is re-raised once the budget is spent.
        """
        delays = self.delays()
        attempt = 0
        while True:
            attempt += 1
            try:
                return fn(*args, **kwargs)
            except retry_on as exc:
                delay = next(delays, None)
                if delay is None:
                    raise
                remaining = self.deadline.remaining() if self.deadline else None
                if remaining is not None and remaining <= delay:
                    raise
                logger.debug(
                    "Attempt %d of %s failed (%s); retrying in %.1fs",
                    attempt, getattr(fn, "__name__", "call"), exc, delay,
                )
                self._sleep(delay)
