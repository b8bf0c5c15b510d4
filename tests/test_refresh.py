"""Tests for dependent credential refresh."""

from __future__ import annotations

from datetime import timedelta

from cco_rotate.errors import PermissionDeniedError
from cco_rotate.models import StepOutcome
from cco_rotate.polling import Backoff, Deadline
from cco_rotate.refresh import DependentCredentialRefresher
from conftest import T0


def _refresher(cluster, clock, **kwargs) -> DependentCredentialRefresher:
    kwargs.setdefault("timeout", 60)
    return DependentCredentialRefresher(
        cluster,
        interval=10,
        backoff=Backoff(attempts=2, sleep=clock.sleep),
        sleep=clock.sleep,
        **kwargs,
    )


def _outcomes(result) -> dict[str, StepOutcome]:
    return {c.request: c.outcome for c in result.components}


class TestRefresh:
    def test_all_components_reminted(self, seeded, clock) -> None:
        _, cluster = seeded
        result = _refresher(cluster, clock).refresh_all(
            T0, Deadline(None, _clock=clock.monotonic),
        )
        assert len(result.refreshed) == 4
        assert result.degraded == []
        assert len(cluster.called("delete_secret")) == 4

    def test_deletes_sequentially_in_listing_order(self, seeded, clock) -> None:
        _, cluster = seeded
        _refresher(cluster, clock).refresh_all(T0, Deadline(None, _clock=clock.monotonic))
        deleted = [args[1] for args in cluster.called("delete_secret")]
        assert deleted == [f"{r.name}-credentials" for r in cluster.credentials_requests]

    def test_one_component_degraded(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.add_component("storage")
        cluster.never_remint.add("storage-credentials")

        result = _refresher(cluster, clock).refresh_all(
            T0, Deadline(None, _clock=clock.monotonic),
        )

        assert len(result.refreshed) == 4
        assert [c.request for c in result.degraded] == ["storage"]
        assert "not re-minted" in result.degraded[0].detail
        # Waited the full refresh timeout, no longer
        assert sum(clock.sleeps) == 60

    def test_stale_secret_not_counted(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.now = lambda: T0
        result = _refresher(cluster, clock).refresh_all(
            T0 + timedelta(hours=1), Deadline(None, _clock=clock.monotonic),
        )
        assert len(result.degraded) == 4

    def test_same_second_counts_as_reminted(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.now = lambda: T0
        result = _refresher(cluster, clock).refresh_all(
            T0 + timedelta(microseconds=400_000), Deadline(None, _clock=clock.monotonic),
        )
        assert len(result.refreshed) == 4

    def test_delete_failure_isolated(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.errors["delete_secret"] = [PermissionDeniedError("forbidden")]

        result = _refresher(cluster, clock).refresh_all(
            T0, Deadline(None, _clock=clock.monotonic),
        )

        outcomes = _outcomes(result)
        assert outcomes["ingress"] == StepOutcome.DEGRADED
        assert len(result.refreshed) == 3

    def test_already_missing_secret_is_fine(self, seeded, clock) -> None:
        _, cluster = seeded
        del cluster.secrets[("openshift-ingress", "ingress-credentials")]

        result = _refresher(cluster, clock).refresh_all(
            T0, Deadline(None, _clock=clock.monotonic),
        )

        # Not a delete failure: the refresher waited for it like the others
        ingress = next(c for c in result.components if c.request == "ingress")
        assert ingress.detail.startswith("not re-minted")
        assert len(result.refreshed) == 3

    def test_non_aws_requests_skipped(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.add_component("vsphere-thing", provider_kind="VSphereProviderSpec")

        result = _refresher(cluster, clock).refresh_all(
            T0, Deadline(None, _clock=clock.monotonic),
        )

        assert _outcomes(result)["vsphere-thing"] == StepOutcome.SKIPPED
        deleted = [args[1] for args in cluster.called("delete_secret")]
        assert "vsphere-thing-credentials" not in deleted

    def test_dry_run_deletes_nothing(self, seeded, clock) -> None:
        _, cluster = seeded
        result = _refresher(cluster, clock, dry_run=True).refresh_all(T0)
        assert cluster.mutating_calls == []
        assert len(result.skipped) == 4

    def test_overall_deadline_caps_wait(self, seeded, clock) -> None:
        _, cluster = seeded
        cluster.never_remint.add("ingress-credentials")
        deadline = Deadline(15, _clock=clock.monotonic)

        _refresher(cluster, clock, timeout=600).refresh_all(T0, deadline)

        assert sum(clock.sleeps) == 15
