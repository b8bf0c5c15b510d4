"""Tests for bounded waiting: Deadline, poll_until and Backoff."""

from __future__ import annotations

import pytest

from cco_rotate.errors import PermissionDeniedError, TransientError
from cco_rotate.polling import Backoff, Deadline, poll_until


class TestDeadline:
    def test_unbounded(self, clock) -> None:
        deadline = Deadline(None, _clock=clock.monotonic)
        clock.sleep(10_000)
        assert deadline.remaining() is None
        assert not deadline.expired

    def test_expires(self, clock) -> None:
        deadline = Deadline(30, _clock=clock.monotonic)
        clock.sleep(10)
        assert deadline.remaining() == 20
        clock.sleep(25)
        assert deadline.remaining() == 0
        assert deadline.expired

    def test_child_is_capped_by_parent(self, clock) -> None:
        parent = Deadline(60, _clock=clock.monotonic)
        clock.sleep(50)
        child = parent.child(300)
        assert child.remaining() == 10

    def test_child_of_unbounded_parent(self, clock) -> None:
        child = Deadline(None, _clock=clock.monotonic).child(5)
        assert child.remaining() == 5


class TestPollUntil:
    def test_returns_first_value(self, clock) -> None:
        answers = iter([None, None, "ready"])
        result = poll_until(
            lambda: next(answers),
            interval=10,
            deadline=Deadline(100, _clock=clock.monotonic),
            sleep=clock.sleep,
        )
        assert result.value == "ready"
        assert not result.timed_out
        assert result.attempts == 3
        assert clock.sleeps == [10, 10]

    def test_times_out(self, clock) -> None:
        result = poll_until(
            lambda: None,
            interval=10,
            deadline=Deadline(25, _clock=clock.monotonic),
            sleep=clock.sleep,
        )
        assert result.timed_out
        assert result.value is None
        # Last sleep is shortened to the remaining budget
        assert clock.sleeps == [10, 10, 5]
        assert result.elapsed == 25

    def test_probes_once_with_zero_budget(self, clock) -> None:
        calls = []
        result = poll_until(
            lambda: calls.append(1),
            interval=10,
            deadline=Deadline(0, _clock=clock.monotonic),
            sleep=clock.sleep,
        )
        assert result.timed_out
        assert calls == [1]
        assert clock.sleeps == []


class TestBackoff:
    def test_delays_are_exponential_and_capped(self) -> None:
        backoff = Backoff(attempts=6, base_delay=1, max_delay=5)
        assert list(backoff.delays()) == [1, 2, 4, 5, 5]

    def test_invalid_attempts(self) -> None:
        with pytest.raises(ValueError, match="attempts"):
            Backoff(attempts=0)

    def test_retries_transient_then_succeeds(self, clock) -> None:
        outcomes = [TransientError("Throttling"), TransientError("Throttling"), "ok"]

        def flaky() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        backoff = Backoff(attempts=5, base_delay=1, sleep=clock.sleep)
        assert backoff.call(flaky) == "ok"
        assert clock.sleeps == [1, 2]

    def test_gives_up_after_attempts(self, clock) -> None:
        calls = []

        def always_throttled() -> None:
            calls.append(1)
            raise TransientError("Throttling")

        backoff = Backoff(attempts=3, base_delay=1, sleep=clock.sleep)
        with pytest.raises(TransientError):
            backoff.call(always_throttled)
        assert len(calls) == 3

    def test_does_not_retry_other_errors(self, clock) -> None:
        calls = []

        def denied() -> None:
            calls.append(1)
            raise PermissionDeniedError("AccessDenied")

        backoff = Backoff(attempts=5, sleep=clock.sleep)
        with pytest.raises(PermissionDeniedError):
            backoff.call(denied)
        assert calls == [1]
        assert clock.sleeps == []

    def test_custom_retry_on(self, clock) -> None:
        outcomes = [PermissionDeniedError("InvalidClientTokenId"), "ok"]

        def eventually_consistent() -> str:
            outcome = outcomes.pop(0)
            if isinstance(outcome, Exception):
                raise outcome
            return outcome

        backoff = Backoff(attempts=3, sleep=clock.sleep)
        result = backoff.call(
            eventually_consistent, retry_on=(TransientError, PermissionDeniedError),
        )
        assert result == "ok"

    def test_stops_when_deadline_too_close(self, clock) -> None:
        deadline = Deadline(3, _clock=clock.monotonic)
        backoff = Backoff(attempts=10, base_delay=2, deadline=deadline, sleep=clock.sleep)

        def throttled() -> None:
            raise TransientError("Throttling")

        with pytest.raises(TransientError):
            backoff.call(throttled)
        # 2s fits in the 3s budget, the following 4s does not
        assert clock.sleeps == [2]

    def test_with_attempts_keeps_delays(self, clock) -> None:
        backoff = Backoff(attempts=5, base_delay=3, max_delay=7, sleep=clock.sleep)
        narrowed = backoff.with_attempts(2)
        assert narrowed.attempts == 2
        assert list(narrowed.delays()) == [3]

    def test_passes_arguments(self) -> None:
        backoff = Backoff(attempts=1)
        assert backoff.call(lambda a, b=0: a + b, 1, b=2) == 3
