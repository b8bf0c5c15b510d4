"""Health verification: wait for cluster operators to settle after rotation."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable

from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.errors import RotationError
from cco_rotate.models import HealthResult, OperatorStatus
from cco_rotate.polling import Deadline, poll_until

logger = logging.getLogger(__name__)

MINTING_OPERATOR = "cloud-credential"


class HealthVerifier:
    """Polls ClusterOperators until none is unhealthy because of the rotation.

    Operators that were already unhealthy before the rotation started
    (the *baseline*) are not attributed to it, except the minting service
    itself, which must always come back healthy.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        interval: float = 10.0,
        sleep: Callable[[float], None] = time.sleep,
        _clock: Callable[[], float] | None = None,
    ) -> None:
        self._cluster = cluster
        self._interval = interval
        self._sleep = sleep
        self._clock = _clock or time.monotonic

    def unhealthy_operators(self) -> set[str]:
        """Names of operators currently unavailable, degraded or progressing."""
        return {s.name for s in self._cluster.get_operator_statuses() if not s.healthy}

    def await_healthy(
        self,
        timeout: float,
        baseline: Iterable[str] = (),
        deadline: Deadline | None = None,
    ) -> HealthResult:
        ignored = set(baseline) - {MINTING_OPERATOR}
        last_unhealthy: list[str] = []

        def probe() -> bool | None:
            nonlocal last_unhealthy
            try:
                statuses = self._cluster.get_operator_statuses()
            except RotationError as exc:
                logger.debug("Operator status poll failed: %s", exc)
                last_unhealthy = ["<operator status unavailable>"]
                return None
            last_unhealthy = self._attributable(statuses, ignored)
            if last_unhealthy:
                logger.info("Waiting on operators: %s", ", ".join(last_unhealthy))
                return None
            return True

        parent = deadline or Deadline(None, _clock=self._clock)
        result = poll_until(
            probe,
            interval=self._interval,
            deadline=parent.child(timeout),
            sleep=self._sleep,
        )
        healthy = not result.timed_out
        if healthy:
            logger.info("Cluster operators healthy after %d poll(s)", result.attempts)
        else:
            logger.warning("Operators still unhealthy: %s", ", ".join(last_unhealthy))
        return HealthResult(
            healthy=healthy,
            unhealthy=[] if healthy else last_unhealthy,
            ignored=sorted(ignored),
            attempts=result.attempts,
            elapsed=result.elapsed,
        )

    @staticmethod
    def _attributable(statuses: list[OperatorStatus], ignored: set[str]) -> list[str]:
        names = {s.name for s in statuses}
        unhealthy = [s.name for s in statuses if not s.healthy and s.name not in ignored]
        if MINTING_OPERATOR not in names:
            unhealthy.append(MINTING_OPERATOR)
        return sorted(unhealthy)
