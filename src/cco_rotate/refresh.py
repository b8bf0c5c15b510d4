"""Dependent credential refresh: make the minting service re-issue component secrets.

Deleting a CredentialsRequest's target Secret makes the cloud credential
operator mint it again from the (new) root credential.  Deletes run one at
a time so a failure is attributable to a single component, then the
refresher waits for every secret to come back newer than the rotation.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from datetime import datetime

from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.errors import NotFoundError, RotationError
from cco_rotate.models import (
    ComponentRefresh,
    CredentialsRequestRef,
    RefreshResult,
    StepOutcome,
)
from cco_rotate.polling import Backoff, Deadline, poll_until

logger = logging.getLogger(__name__)

AWS_PROVIDER_KIND = "AWSProviderSpec"


def _label(ref: CredentialsRequestRef) -> str:
    return f"{ref.secret_namespace}/{ref.secret_name}"


class DependentCredentialRefresher:
    """Deletes component secrets and waits for the minting service to recreate them."""

    def __init__(
        self,
        cluster: ClusterClient,
        interval: float = 10.0,
        timeout: float = 600.0,
        dry_run: bool = False,
        backoff: Backoff | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self._cluster = cluster
        self._interval = interval
        self._timeout = timeout
        self._dry_run = dry_run
        self._backoff = backoff or Backoff()
        self._sleep = sleep

    def refresh_all(
        self,
        since: datetime,
        deadline: Deadline | None = None,
    ) -> RefreshResult:
        """Re-mint every AWS component secret.

        *since* is the rotation time; a secret counts as re-minted once its
        creation timestamp is at or after it (compared at the API's
        one-second resolution).  Components that do not come back within
        the timeout are reported as degraded; the rest are unaffected.
        """
        threshold = since.replace(microsecond=0)
        refs = self._backoff.call(self._cluster.list_credentials_requests)
        outcomes: dict[str, ComponentRefresh] = {}
        pending: list[CredentialsRequestRef] = []

        for ref in refs:
            if ref.provider_kind != AWS_PROVIDER_KIND:
                outcomes[ref.name] = ComponentRefresh(
                    request=ref.name, secret=_label(ref), outcome=StepOutcome.SKIPPED,
                    detail=f"provider {ref.provider_kind or 'unknown'}",
                )
                continue
            if self._dry_run:
                logger.info("[dry-run] Would delete secret %s (%s)", _label(ref), ref.name)
                outcomes[ref.name] = ComponentRefresh(
                    request=ref.name, secret=_label(ref), outcome=StepOutcome.SKIPPED,
                    detail="dry-run",
                )
                continue
            try:
                self._delete(ref)
            except RotationError as exc:
                logger.warning("Could not delete %s: %s", _label(ref), exc)
                outcomes[ref.name] = ComponentRefresh(
                    request=ref.name, secret=_label(ref), outcome=StepOutcome.DEGRADED,
                    detail=f"delete failed: {exc}",
                )
                continue
            pending.append(ref)

        if pending:
            self._wait(pending, threshold, outcomes, deadline or Deadline(None))

        result = RefreshResult(components=[outcomes[r.name] for r in refs])
        logger.info(
            "Component refresh: %d refreshed, %d degraded, %d skipped",
            len(result.refreshed), len(result.degraded), len(result.skipped),
        )
        return result

    def _delete(self, ref: CredentialsRequestRef) -> None:
        try:
            self._backoff.call(
                self._cluster.delete_secret, ref.secret_namespace, ref.secret_name,
            )
            logger.info("Deleted secret %s for %s", _label(ref), ref.name)
        except NotFoundError:
            logger.info("Secret %s for %s did not exist", _label(ref), ref.name)

    def _wait(
        self,
        pending: list[CredentialsRequestRef],
        threshold: datetime,
        outcomes: dict[str, ComponentRefresh],
        deadline: Deadline,
    ) -> None:
        waiting = {ref.name: ref for ref in pending}

        def probe() -> bool | None:
            for name, ref in list(waiting.items()):
                if self._is_reminted(ref, threshold):
                    outcomes[name] = ComponentRefresh(
                        request=name, secret=_label(ref), outcome=StepOutcome.SUCCESS,
                    )
                    del waiting[name]
            return True if not waiting else None

        result = poll_until(
            probe,
            interval=self._interval,
            deadline=deadline.child(self._timeout),
            sleep=self._sleep,
        )
        for name, ref in waiting.items():
            logger.warning("Secret %s was not re-minted in time", _label(ref))
            outcomes[name] = ComponentRefresh(
                request=name, secret=_label(ref), outcome=StepOutcome.DEGRADED,
                detail=f"not re-minted within {result.elapsed:.0f}s",
            )

    def _is_reminted(self, ref: CredentialsRequestRef, threshold: datetime) -> bool:
        try:
            secret = self._cluster.get_secret(ref.secret_namespace, ref.secret_name)
        except NotFoundError:
            return False
        except RotationError as exc:
            logger.debug("Polling %s failed: %s", _label(ref), exc)
            return False
        return secret.created_at is not None and secret.created_at >= threshold
