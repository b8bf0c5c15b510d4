"""Tests for the rotation report recorder and renderer."""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from cco_rotate.models import FinalStatus, KeyState, StepOutcome
from cco_rotate.report import (
    ReportRecorder,
    final_status_for,
    load_report,
    render_summary,
    write_report,
)


def _recorder(*outcomes: StepOutcome) -> ReportRecorder:
    recorder = ReportRecorder(run_id="rot-fixed")
    for n, outcome in enumerate(outcomes):
        recorder.record(f"stage-{n}", outcome, datetime.now(tz=UTC), detail=f"step {n}")
    return recorder


class TestRecorder:
    def test_records_steps_in_order(self) -> None:
        recorder = _recorder(StepOutcome.SUCCESS, StepOutcome.SKIPPED)
        steps = recorder.report.steps
        assert [s.name for s in steps] == ["stage-0", "stage-1"]
        assert steps[0].finished_at >= steps[0].started_at
        assert steps[0].duration_ms >= 0

    def test_injected_clock(self) -> None:
        times = iter([
            datetime(2026, 3, 1, tzinfo=UTC),
            datetime(2026, 3, 1, 0, 0, 2, tzinfo=UTC),
            datetime(2026, 3, 1, 0, 0, 5, tzinfo=UTC),
        ])
        recorder = ReportRecorder(run_id="rot-clock", _now=lambda: next(times))
        started = recorder.report.started_at

        step = recorder.record("preflight", StepOutcome.SUCCESS, started)
        report = recorder.finish(FinalStatus.SUCCESS)

        assert started == datetime(2026, 3, 1, tzinfo=UTC)
        assert step.duration_ms == 2000
        assert report.finished_at == datetime(2026, 3, 1, 0, 0, 5, tzinfo=UTC)

    def test_generated_run_id(self) -> None:
        assert ReportRecorder().report.run_id.startswith("rot-")

    def test_finish(self) -> None:
        report = _recorder(StepOutcome.FAILED).finish(
            FinalStatus.FAILED, failed_stage="stage-0", error="boom",
        )
        assert report.final_status == FinalStatus.FAILED
        assert report.failed_stage == "stage-0"
        assert report.finished_at is not None


class TestFinalStatus:
    def test_success(self) -> None:
        steps = _recorder(StepOutcome.SUCCESS, StepOutcome.SKIPPED).report.steps
        assert final_status_for(steps) == FinalStatus.SUCCESS

    def test_degraded_step_means_warnings(self) -> None:
        steps = _recorder(StepOutcome.SUCCESS, StepOutcome.DEGRADED).report.steps
        assert final_status_for(steps) == FinalStatus.COMPLETED_WITH_WARNINGS

    def test_no_steps(self) -> None:
        assert final_status_for([]) == FinalStatus.SUCCESS


class TestPersistence:
    def test_write_and_load(self, tmp_path: Path) -> None:
        recorder = _recorder(StepOutcome.SUCCESS)
        recorder.report.key_state = KeyState.COMMITTED
        report = recorder.finish(FinalStatus.SUCCESS)

        path = write_report(report, tmp_path / "logs")

        assert path.parent == tmp_path / "logs"
        assert path.name.startswith("rotation-report-")
        assert path.name.endswith("-rot-fixed.json")
        loaded = load_report(path)
        assert loaded == report

    def test_report_is_json(self, tmp_path: Path) -> None:
        path = write_report(_recorder().finish(FinalStatus.ABORTED), tmp_path)
        data = json.loads(path.read_text(encoding="utf-8"))
        assert data["final_status"] == "aborted"


class TestRenderSummary:
    def test_success(self) -> None:
        report = _recorder(StepOutcome.SUCCESS).finish(FinalStatus.SUCCESS)
        text = render_summary(report)
        assert "SUCCESS" in text
        assert "stage-0" in text
        assert "Backups" not in text

    def test_failure_points_at_backups(self) -> None:
        recorder = _recorder(StepOutcome.SUCCESS, StepOutcome.FAILED)
        recorder.report.backup_ids = ["bk-1", "bk-2"]
        recorder.report.last_successful_state = KeyState.INSTALLING
        report = recorder.finish(FinalStatus.FAILED, failed_stage="stage-1", error="boom")

        text = render_summary(report)

        assert "Failed stage: stage-1" in text
        assert "Error: boom" in text
        assert "bk-1" in text and "bk-2" in text
        assert "installing" in text

    def test_degraded_components_listed(self) -> None:
        recorder = _recorder(StepOutcome.DEGRADED)
        recorder.report.degraded_components = ["ingress"]
        text = render_summary(recorder.finish(FinalStatus.COMPLETED_WITH_WARNINGS))
        assert "Degraded components: ingress" in text
        assert "WARN" in text

    def test_dry_run_marked(self) -> None:
        report = ReportRecorder(dry_run=True).finish(FinalStatus.SUCCESS)
        assert "(dry-run)" in render_summary(report)
