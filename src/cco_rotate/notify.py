"""Rotation report notification dispatch.

Sends the finished report to configured endpoints.
A failing endpoint emits a NotifierWarning; the run outcome stands.

Built-in backends:
- WebhookReportNotifier: POST the report as JSON to a URL (stdlib only)
- SlackReportNotifier: POST a summary to a Slack incoming webhook

Custom notifiers just need a ``notify(report: RotationReport) -> None`` method.
"""

from __future__ import annotations

import json
import urllib.request
import warnings
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from cco_rotate.models import FinalStatus, RotationReport


class NotifierWarning(UserWarning):
    """Emitted when a report notifier fails (non-fatal)."""


@runtime_checkable
class ReportNotifier(Protocol):
    """Protocol for rotation report notifiers."""

    def notify(self, report: RotationReport) -> None:
        """Send notification for a finished rotation."""
        ...


class WebhookReportNotifier:
    """POST each finished rotation report, wrapped in an envelope, to *url*."""

    def __init__(
        self,
        url: str,
        headers: dict[str, str] | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._url = url
        self._headers = headers or {}
        self._timeout = timeout

    def notify(self, report: RotationReport) -> None:
        envelope = {
            "type": "rotation_report",
            "report": report.to_dict(),
            "notified_at": datetime.now(tz=UTC).isoformat(),
        }
        body = json.dumps(envelope, sort_keys=True).encode("utf-8")

        req = urllib.request.Request(
            self._url,
            data=body,
            headers={
                "Content-Type": "application/json",
                **self._headers,
            },
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
            pass


class SlackReportNotifier:
    """Send a rotation summary to Slack via incoming webhook."""

    _ICONS = {
        FinalStatus.SUCCESS: ":white_check_mark:",
        FinalStatus.COMPLETED_WITH_WARNINGS: ":warning:",
        FinalStatus.FAILED: ":x:",
        FinalStatus.ABORTED: ":no_entry:",
    }

    def __init__(
        self,
        webhook_url: str,
        channel: str | None = None,
        timeout: float = 10.0,
    ) -> None:
        self._webhook_url = webhook_url
        self._channel = channel
        self._timeout = timeout

    def notify(self, report: RotationReport) -> None:
        mode = " (dry-run)" if report.dry_run else ""
        text = (
            f"{self._ICONS[report.final_status]} *CCO credential rotation{mode}*\n"
            f"*Status:* `{report.final_status}`\n"
            f"*Cluster:* `{report.cluster_id or 'unknown'}`\n"
            f"*Run ID:* `{report.run_id}`"
        )
        if report.failed_stage:
            text += f"\n*Failed stage:* `{report.failed_stage}`\n*Error:* {report.error}"
        if report.degraded_components:
            text += "\n*Degraded:* " + ", ".join(
                f"`{c}`" for c in report.degraded_components
            )

        payload: dict[str, Any] = {"text": text}
        if self._channel:
            payload["channel"] = self._channel

        body = json.dumps(payload).encode("utf-8")

        req = urllib.request.Request(
            self._webhook_url,
            data=body,
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        with urllib.request.urlopen(req, timeout=self._timeout):  # noqa: S310
            pass


def dispatch_notifications(
    notifiers: list[ReportNotifier],
    report: RotationReport,
) -> None:
    """Fire-and-forget notification dispatch."""
    for notifier in notifiers:
        try:
            notifier.notify(report)
        except Exception as exc:
            warnings.warn(
                f"Report notifier {type(notifier).__name__} failed: {exc}",
                NotifierWarning,
                stacklevel=2,
            )


def build_notifiers(config: dict[str, Any] | None) -> list[ReportNotifier]:
    """Build notifier instances from the ``notifications`` config block.

    Keys: ``webhook_url`` (with optional ``webhook_headers`` and
    ``webhook_timeout``, default 10s), ``slack_webhook_url`` and
    ``slack_channel``.
    """
    config = config or {}
    notifiers: list[ReportNotifier] = []

    if config.get("webhook_url") is not None:
        notifiers.append(
            WebhookReportNotifier(
                url=config["webhook_url"],
                headers=config.get("webhook_headers"),
                timeout=config.get("webhook_timeout", 10.0),
            ),
        )

    if config.get("slack_webhook_url") is not None:
        notifiers.append(
            SlackReportNotifier(
                webhook_url=config["slack_webhook_url"],
                channel=config.get("slack_channel"),
            ),
        )

    return notifiers
