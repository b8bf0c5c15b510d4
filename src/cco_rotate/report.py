"""Rotation report: the structured record of a run.

``ReportRecorder`` collects step outcomes as the orchestrator goes; the
finished ``RotationReport`` is written as JSON whatever the outcome and
can be rendered as a human-readable summary.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Callable
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from cco_rotate.models import (
    FinalStatus,
    RotationReport,
    StepOutcome,
    StepRecord,
)

REPORT_PREFIX = "rotation-report-"


class ReportRecorder:
    """Accumulates step records into a RotationReport."""

    def __init__(
        self,
        dry_run: bool = False,
        run_id: str | None = None,
        _now: Callable[[], datetime] | None = None,
    ) -> None:
        self._now = _now or (lambda: datetime.now(tz=UTC))
        self._report = RotationReport(
            run_id=run_id or f"rot-{uuid.uuid4().hex[:12]}",
            dry_run=dry_run,
            started_at=self._now(),
        )

    @property
    def report(self) -> RotationReport:
        return self._report

    def record(
        self,
        name: str,
        outcome: StepOutcome,
        started_at: datetime,
        detail: str = "",
        data: dict[str, Any] | None = None,
    ) -> StepRecord:
        finished_at = self._now()
        step = StepRecord(
            name=name,
            outcome=outcome,
            detail=detail,
            started_at=started_at,
            finished_at=finished_at,
            duration_ms=(finished_at - started_at).total_seconds() * 1000,
            data=data or {},
        )
        self._report.steps.append(step)
        return step

    def finish(
        self,
        status: FinalStatus,
        failed_stage: str | None = None,
        error: str | None = None,
    ) -> RotationReport:
        self._report.final_status = status
        self._report.failed_stage = failed_stage
        self._report.error = error
        self._report.finished_at = self._now()
        return self._report


def final_status_for(steps: list[StepRecord]) -> FinalStatus:
    """Final status of a run in which no stage was fatal."""
    if any(s.outcome in (StepOutcome.DEGRADED, StepOutcome.FAILED) for s in steps):
        return FinalStatus.COMPLETED_WITH_WARNINGS
    return FinalStatus.SUCCESS


def write_report(report: RotationReport, directory: str | Path) -> Path:
    """Write *report* as ``rotation-report-<timestamp>-<run_id>.json``."""
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    stamp = report.started_at.strftime("%Y%m%dT%H%M%SZ")
    path = directory / f"{REPORT_PREFIX}{stamp}-{report.run_id}.json"
    path.write_text(
        json.dumps(report.to_dict(), indent=2, sort_keys=True) + "\n",
        encoding="utf-8",
    )
    return path


def load_report(path: str | Path) -> RotationReport:
    data = json.loads(Path(path).read_text(encoding="utf-8"))
    return RotationReport(**data)


_OUTCOME_MARK = {
    StepOutcome.SUCCESS: "ok",
    StepOutcome.SKIPPED: "skip",
    StepOutcome.DEGRADED: "WARN",
    StepOutcome.FAILED: "FAIL",
}


def render_summary(report: RotationReport) -> str:
    """Human-readable summary, with recovery pointers when the run did not succeed."""
    mode = " (dry-run)" if report.dry_run else ""
    lines = [
        f"Rotation {report.run_id}{mode}: {report.final_status.upper()}",
        f"  Cluster: {report.cluster_id or 'unknown'}",
    ]
    for step in report.steps:
        detail = f" - {step.detail}" if step.detail else ""
        lines.append(
            f"  [{_OUTCOME_MARK[step.outcome]:>4}] {step.name} "
            f"({step.duration_ms:.0f}ms){detail}"
        )
    if report.degraded_components:
        lines.append("  Degraded components: " + ", ".join(report.degraded_components))
    if report.failed_stage:
        lines.append(f"  Failed stage: {report.failed_stage}")
    if report.last_successful_state:
        lines.append(f"  Last successful key state: {report.last_successful_state}")
    if report.error:
        lines.append(f"  Error: {report.error}")
    if report.backup_ids and report.final_status in (FinalStatus.FAILED, FinalStatus.ABORTED):
        lines.append("  Backups for manual recovery:")
        lines.extend(f"    {backup_id}" for backup_id in report.backup_ids)
    return "\n".join(lines)
