"""Rotator: orchestrates a full credential rotation.

Stages run strictly in order and each can be selected on its own:

  1. preflight            read-only checks on both systems
  2. cluster-id           resolve the cluster identity
  3. iam-user             ensure the IAM user and its policy
  4. rotate-keys          key state machine (backup, retire, mint, install,
                          confirm, commit)
  5. refresh-credentials  re-mint every component credential
  6. verify-health        wait for cluster operators to settle

The first fatal error halts the run.  The report is always finished,
written and dispatched, whatever happened.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

from cco_rotate.backup.store import BackupStore, FileBackupStore
from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient
from cco_rotate.config import RotationConfig
from cco_rotate.errors import ConfigurationError, InvariantViolation, RotationError
from cco_rotate.health import HealthVerifier
from cco_rotate.identity import IdentityResolver
from cco_rotate.keys import KeyLifecycleManager, RotationContext, root_secret_from_cluster
from cco_rotate.models import (
    ClusterIdentity,
    FinalStatus,
    IAMPrincipal,
    KeyRotationResult,
    KeyState,
    RotationReport,
    StepOutcome,
)
from cco_rotate.notify import ReportNotifier, dispatch_notifications
from cco_rotate.polling import Backoff, Deadline
from cco_rotate.preflight import PreflightValidator
from cco_rotate.principal import PrincipalManager
from cco_rotate.refresh import DependentCredentialRefresher
from cco_rotate.report import ReportRecorder, final_status_for, write_report

logger = logging.getLogger(__name__)

STAGES: tuple[str, ...] = (
    "preflight",
    "cluster-id",
    "iam-user",
    "rotate-keys",
    "refresh-credentials",
    "verify-health",
)

StageResult = tuple[StepOutcome, str, dict[str, Any]]

# Key states after which the cloud or the cluster has been changed
_MUTATING_KEY_STATES = frozenset({
    KeyState.RETIRING_OLD,
    KeyState.MINTING,
    KeyState.INSTALLING,
    KeyState.CONFIRMING_NEW_KEY,
    KeyState.COMMITTED,
})


def select_stages(
    tags: Iterable[str] | None = None,
    skip_tags: Iterable[str] | None = None,
) -> list[str]:
    """Resolve ``--tags``/``--skip-tags`` into an ordered stage list."""
    tags = [t for t in (tags or []) if t]
    skip = [t for t in (skip_tags or []) if t]
    unknown = sorted((set(tags) | set(skip)) - set(STAGES))
    if unknown:
        raise ConfigurationError(
            f"Unknown stage(s): {', '.join(unknown)}. Available: {', '.join(STAGES)}"
        )
    wanted = set(tags) if tags else set(STAGES)
    return [s for s in STAGES if s in wanted and s not in skip]


@dataclass
class _RunState:
    identity: ClusterIdentity | None = None
    principal: IAMPrincipal | None = None
    caller_arn: str = ""
    baseline: set[str] = field(default_factory=set)
    key_ctx: RotationContext | None = None
    rotated_at: datetime | None = None
    mutated: bool = False


class Rotator:
    """Runs the rotation stages against one cluster and its AWS account."""

    def __init__(
        self,
        iam: IamClient,
        cluster: ClusterClient,
        config: RotationConfig | None = None,
        backups: BackupStore | None = None,
        notifiers: list[ReportNotifier] | None = None,
        sleep: Callable[[float], None] = time.sleep,
        _clock: Callable[[], float] | None = None,
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self._iam = iam
        self._cluster = cluster
        self._config = config or RotationConfig()
        self._backups = backups
        self._notifiers = notifiers or []
        self._sleep = sleep
        self._clock = _clock or time.monotonic
        self._now = _now or (lambda: datetime.now(tz=UTC))

    @property
    def config(self) -> RotationConfig:
        return self._config

    def run(self, stages: Iterable[str] | None = None) -> RotationReport:
        """Run the selected stages (all by default) and return the report."""
        cfg = self._config
        selected = list(stages) if stages is not None else list(STAGES)
        recorder = ReportRecorder(dry_run=cfg.dry_run, _now=self._now)
        deadline = Deadline(cfg.timeout, _clock=self._clock)
        backoff = Backoff(
            attempts=cfg.retry_attempts,
            base_delay=cfg.retry_base_delay,
            max_delay=cfg.retry_max_delay,
            deadline=deadline,
            sleep=self._sleep,
        )
        state = _RunState()
        handlers: dict[str, Callable[[], StageResult]] = {
            "preflight": lambda: self._preflight(state),
            "cluster-id": lambda: self._resolve_identity(state),
            "iam-user": lambda: self._ensure_principal(state, backoff),
            "rotate-keys": lambda: self._rotate_keys(state, backoff, deadline),
            "refresh-credentials": lambda: self._refresh(state, backoff, deadline, recorder),
            "verify-health": lambda: self._verify_health(state, deadline),
        }

        mode = "dry-run" if cfg.dry_run else "live"
        logger.info("Starting %s rotation %s: %s", mode, recorder.report.run_id,
                    ", ".join(selected))
        current = ""
        status: FinalStatus | None = None
        error: str | None = None
        try:
            for stage in STAGES:
                if stage not in selected:
                    continue
                current = stage
                if deadline.expired:
                    raise RotationError(f"overall timeout of {cfg.timeout:.0f}s exceeded")
                self._execute(recorder, stage, handlers[stage])
            current = ""
            status = final_status_for(recorder.report.steps)
        except InvariantViolation as exc:
            logger.critical("Invariant violated in %s: %s", current, exc)
            status, error = FinalStatus.ABORTED, str(exc)
        except RotationError as exc:
            mutated = state.mutated or self._keys_mutated(state)
            status = FinalStatus.FAILED if mutated else FinalStatus.ABORTED
            error = str(exc)
        except KeyboardInterrupt:
            logger.error("Interrupted during %s", current or "startup")
            status, error = FinalStatus.ABORTED, "interrupted"
            raise
        finally:
            report = self._finish(
                recorder, state, status or FinalStatus.FAILED, current or None, error,
            )
        return report

    # --- Stages ---

    def _preflight(self, state: _RunState) -> StageResult:
        cfg = self._config
        validator = PreflightValidator(
            self._iam, self._cluster, cfg.root_secret_namespace, cfg.root_secret_name,
        )
        result = validator.validate()
        data = {"checks": [c.model_dump() for c in result.checks]}
        if not result.ok:
            raise ConfigurationError("preflight failed: " + "; ".join(result.reasons))
        state.caller_arn = result.caller_arn
        try:
            state.baseline = self._health().unhealthy_operators()
        except RotationError as exc:
            logger.warning("Could not capture operator baseline: %s", exc)
        if state.baseline:
            logger.info("Operators unhealthy before rotation: %s",
                        ", ".join(sorted(state.baseline)))
        data["baseline_unhealthy"] = sorted(state.baseline)
        return StepOutcome.SUCCESS, f"{len(result.checks)} checks passed", data

    def _resolve_identity(self, state: _RunState) -> StageResult:
        resolver = IdentityResolver(self._cluster, self._iam, self._config.cluster_name)
        state.identity = resolver.resolve()
        return (
            StepOutcome.SUCCESS,
            f"cluster {state.identity.cluster_name} ({state.identity.cluster_id})",
            state.identity.model_dump(),
        )

    def _ensure_principal(self, state: _RunState, backoff: Backoff) -> StageResult:
        identity = self._identity(state)
        principal = self._principal_manager(backoff).ensure(identity)
        state.principal = principal
        state.mutated = state.mutated or principal.created or principal.policy_reapplied
        if not principal.exists:
            return StepOutcome.SKIPPED, f"would create IAM user {principal.name}", {}
        if principal.created:
            detail = f"created IAM user {principal.name}"
        elif principal.policy_reapplied:
            detail = f"re-applied drifted policy on {principal.name}"
        else:
            detail = f"verified IAM user {principal.name}"
        return StepOutcome.SUCCESS, detail, {"name": principal.name, "arn": principal.arn}

    def _rotate_keys(
        self, state: _RunState, backoff: Backoff, deadline: Deadline,
    ) -> StageResult:
        cfg = self._config
        identity = self._identity(state)
        if cfg.dry_run and state.principal is not None and not state.principal.exists:
            return self._plan_first_key(state.principal)
        if state.principal is None or not state.principal.exists:
            state.principal = self._principal_manager(backoff).lookup(identity)
        if not state.caller_arn:
            state.caller_arn = self._iam.get_caller_identity().arn

        confirm_deadline = deadline.child(cfg.confirm_timeout)
        manager = KeyLifecycleManager(
            self._iam,
            self._cluster,
            self._backup_store(identity),
            root_secret_namespace=cfg.root_secret_namespace,
            root_secret_name=cfg.root_secret_name,
            dry_run=cfg.dry_run,
            orphan_key_max_age=timedelta(days=cfg.orphan_key_max_age),
            backoff=backoff,
            confirm_backoff=backoff.with_attempts(cfg.confirm_attempts, confirm_deadline),
            _now=self._now,
        )
        state.key_ctx = RotationContext(principal=state.principal, caller_arn=state.caller_arn)
        result = manager.run(state.key_ctx)
        if state.key_ctx.installed is not None:
            state.rotated_at = state.key_ctx.installed.last_rotated_at

        data = result.model_dump(mode="json")
        if cfg.dry_run:
            return StepOutcome.SKIPPED, f"{len(result.planned)} planned change(s)", data
        return (
            StepOutcome.SUCCESS,
            f"rotated {result.previous_key_id or '-'} -> {result.new_key_id}",
            data,
        )

    def _plan_first_key(self, principal: IAMPrincipal) -> StageResult:
        """Dry-run plan for a principal that the iam-user stage would create."""
        cfg = self._config
        planned = [
            f"back up the root secret {cfg.root_secret_namespace}/{cfg.root_secret_name}",
            f"create the first access key for {principal.name}",
            f"install the new key into {cfg.root_secret_namespace}/{cfg.root_secret_name}",
            "confirm the new key authenticates against AWS",
        ]
        for step in planned:
            logger.info("[dry-run] Would %s", step)
        result = KeyRotationResult(state=KeyState.DISCOVERING, planned=planned)
        return (
            StepOutcome.SKIPPED,
            f"{len(planned)} planned change(s)",
            result.model_dump(mode="json"),
        )

    def _refresh(
        self,
        state: _RunState,
        backoff: Backoff,
        deadline: Deadline,
        recorder: ReportRecorder,
    ) -> StageResult:
        cfg = self._config
        since = state.rotated_at or self._installed_at() or recorder.report.started_at
        refresher = DependentCredentialRefresher(
            self._cluster,
            interval=cfg.poll_interval,
            timeout=cfg.refresh_timeout,
            dry_run=cfg.dry_run,
            backoff=backoff,
            sleep=self._sleep,
        )
        state.mutated = state.mutated or not cfg.dry_run
        result = refresher.refresh_all(since, deadline)
        recorder.report.degraded_components.extend(c.request for c in result.degraded)
        data = {"components": [c.model_dump() for c in result.components]}
        detail = (
            f"{len(result.refreshed)} refreshed, {len(result.degraded)} degraded, "
            f"{len(result.skipped)} skipped"
        )
        if result.degraded:
            return StepOutcome.DEGRADED, detail, data
        if cfg.dry_run:
            return StepOutcome.SKIPPED, detail, data
        return StepOutcome.SUCCESS, detail, data

    def _verify_health(self, state: _RunState, deadline: Deadline) -> StageResult:
        cfg = self._config
        timeout = 0.0 if cfg.dry_run else cfg.health_timeout
        result = self._health().await_healthy(timeout, state.baseline, deadline)
        data = result.model_dump()
        if result.healthy:
            return StepOutcome.SUCCESS, f"healthy after {result.attempts} poll(s)", data
        if cfg.dry_run:
            return (
                StepOutcome.DEGRADED,
                "currently unhealthy: " + ", ".join(result.unhealthy),
                data,
            )
        raise RotationError(
            f"operators still unhealthy after {result.elapsed:.0f}s: "
            + ", ".join(result.unhealthy)
        )

    # --- Helpers ---

    def _execute(
        self, recorder: ReportRecorder, name: str, fn: Callable[[], StageResult],
    ) -> None:
        started = self._now()
        logger.info("Stage %s starting", name)
        try:
            outcome, detail, data = fn()
        except RotationError as exc:
            logger.error("Stage %s failed: %s", name, exc)
            recorder.record(name, StepOutcome.FAILED, started, detail=str(exc))
            raise
        recorder.record(name, outcome, started, detail=detail, data=data)
        logger.info("Stage %s %s: %s", name, outcome, detail)

    def _identity(self, state: _RunState) -> ClusterIdentity:
        if state.identity is None:
            state.identity = IdentityResolver(
                self._cluster, self._iam, self._config.cluster_name,
            ).resolve()
        return state.identity

    def _principal_manager(self, backoff: Backoff) -> PrincipalManager:
        return PrincipalManager(
            self._iam,
            prefix=self._config.principal_prefix,
            policy_name=self._config.policy_name,
            dry_run=self._config.dry_run,
            backoff=backoff,
        )

    def _health(self) -> HealthVerifier:
        return HealthVerifier(
            self._cluster,
            interval=self._config.poll_interval,
            sleep=self._sleep,
            _clock=self._clock,
        )

    def _backup_store(self, identity: ClusterIdentity) -> BackupStore:
        if self._backups is None:
            self._backups = FileBackupStore(
                Path(self._config.backup_dir), cluster_id=identity.cluster_id,
            )
        return self._backups

    def _installed_at(self) -> datetime | None:
        """Rotation time recorded on the root secret by an earlier run."""
        try:
            secret = self._cluster.get_secret(
                self._config.root_secret_namespace, self._config.root_secret_name,
            )
            return root_secret_from_cluster(secret).last_rotated_at
        except (RotationError, ValueError) as exc:
            logger.debug("Could not read last rotation time: %s", exc)
            return None

    @staticmethod
    def _keys_mutated(state: _RunState) -> bool:
        ctx = state.key_ctx
        if ctx is None:
            return False
        if ctx.new_key is not None or ctx.retired_key_ids or ctx.deactivated_key_ids:
            return True
        return ctx.last_successful_state in _MUTATING_KEY_STATES

    def _finish(
        self,
        recorder: ReportRecorder,
        state: _RunState,
        status: FinalStatus,
        failed_stage: str | None,
        error: str | None,
    ) -> RotationReport:
        report = recorder.report
        if state.identity is not None:
            report.cluster_id = state.identity.cluster_id
        ctx = state.key_ctx
        if ctx is not None:
            report.backup_ids = list(ctx.backup_ids)
            report.key_state = ctx.state
            report.last_successful_state = ctx.last_successful_state
        recorder.finish(status, failed_stage=failed_stage if error else None, error=error)

        try:
            path = write_report(report, self._config.report_dir)
            logger.info("Rotation report written to %s", path)
        except OSError as exc:
            logger.error("Could not write rotation report: %s", exc)
        dispatch_notifications(self._notifiers, report)
        logger.info("Rotation %s finished: %s", report.run_id, report.final_status)
        return report
