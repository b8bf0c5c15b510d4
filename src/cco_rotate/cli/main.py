"""cco-rotate CLI: rotate the cluster's root AWS credential.

Commands:
    run             Run the rotation (all stages, or a tagged subset)
    preflight       Run read-only preflight checks only
    backups list    List backup entries
    backups verify  Verify the backup hash chain
    rollback        Restore the root secret from a backup
    report show     Render a saved rotation report
"""

from __future__ import annotations

import json
import logging
import sys
from pathlib import Path

import click

from cco_rotate import __version__
from cco_rotate.backup.store import FileBackupStore, verify_backups
from cco_rotate.clients.cluster import ClusterClient, KubernetesClusterClient
from cco_rotate.clients.iam import Boto3IamClient, IamClient
from cco_rotate.config import RotationConfig, load_config
from cco_rotate.errors import RotationError
from cco_rotate.identity import IdentityResolver, derive_principal_name
from cco_rotate.models import BackupKind, FinalStatus, RotationReport
from cco_rotate.notify import build_notifiers
from cco_rotate.orchestrator import STAGES, Rotator, select_stages
from cco_rotate.preflight import PreflightValidator
from cco_rotate.report import load_report, render_summary
from cco_rotate.rollback import rollback_root_secret

_STATUS_COLORS = {
    FinalStatus.SUCCESS: "green",
    FinalStatus.COMPLETED_WITH_WARNINGS: "yellow",
    FinalStatus.FAILED: "red",
    FinalStatus.ABORTED: "red",
}


def _resolve_cfg(path: str | None = None) -> RotationConfig:
    """Load config from cco-rotate.yaml (auto-discover; explicit path must exist).

    Defaults apply only when no file is found.  A file that exists but does
    not parse is fatal, whether it was named or discovered.
    """
    try:
        return load_config(path)
    except (FileNotFoundError, ValueError) as e:
        click.echo(f"Error loading config: {e}", err=True)
        sys.exit(1)


def _or(explicit: str | None, cfg_val: str | None, fallback: str) -> str:
    """Return first non-None value: explicit CLI flag > config > fallback."""
    return explicit or cfg_val or fallback


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-8s %(name)s: %(message)s",
        stream=sys.stderr,
    )
    # SDK wire logging can echo request bodies
    for noisy in ("botocore", "boto3", "urllib3", "kubernetes"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def _build_clients(cfg: RotationConfig) -> tuple[IamClient, ClusterClient]:
    """Create the live AWS and Kubernetes clients for *cfg*."""
    iam = Boto3IamClient(profile=cfg.aws_profile, region=cfg.aws_region)
    cluster = KubernetesClusterClient(kubeconfig=cfg.kubeconfig, context=cfg.kube_context)
    return iam, cluster


def _split(values: tuple[str, ...]) -> list[str]:
    """Accept both repeated flags and comma-separated lists."""
    return [v.strip() for value in values for v in value.split(",") if v.strip()]


def _print_config(cfg: RotationConfig, stages: list[str]) -> None:
    click.echo(click.style("Rotation settings:", bold=True))
    click.echo(f"  Mode:        {'dry-run' if cfg.dry_run else 'live'}")
    click.echo(f"  Stages:      {', '.join(stages)}")
    click.echo(f"  AWS profile: {cfg.aws_profile or '(default chain)'}")
    click.echo(f"  Kubeconfig:  {cfg.kubeconfig or '(default)'}"
               + (f" [{cfg.kube_context}]" if cfg.kube_context else ""))
    click.echo(f"  Root secret: {cfg.root_secret_namespace}/{cfg.root_secret_name}")
    click.echo(f"  Backups:     {cfg.backup_dir}")
    click.echo(f"  Reports:     {cfg.report_dir}")
    click.echo()


def _print_outcome(report: RotationReport) -> None:
    color = _STATUS_COLORS[report.final_status]
    click.echo(render_summary(report))
    click.echo()
    click.echo(click.style(report.final_status.upper(), fg=color, bold=True))

    if report.final_status in (FinalStatus.SUCCESS, FinalStatus.COMPLETED_WITH_WARNINGS):
        click.echo("\n" + click.style("Next steps:", bold=True))
        if report.dry_run:
            click.echo("  Re-run without --dry-run to apply the planned changes.")
        else:
            click.echo("  The superseded key is Inactive; it is deleted on the next run.")
            click.echo("  Check `oc get clusteroperators` once the cluster settles.")
        if report.degraded_components:
            click.echo("  Re-run `cco-rotate run --tags refresh-credentials` for the "
                       "degraded components.")
        return

    click.echo("\n" + click.style("Troubleshooting:", bold=True))
    if report.failed_stage:
        click.echo(f"  Resume with: cco-rotate run --tags {report.failed_stage}")
    if report.backup_ids:
        click.echo("  Restore the root secret with: cco-rotate rollback <backup-id>")
    click.echo("  Re-run with --verbose for full logs.")


# --- Root group ---


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """cco-rotate: rotate the OpenShift cloud-credential root AWS key."""


# --- run command ---


@cli.command()
@click.option("--dry-run", is_flag=True, help="Plan only; change nothing")
@click.option(
    "--tags", multiple=True,
    help=f"Only run these stages ({', '.join(STAGES)})",
)
@click.option("--skip-tags", multiple=True, help="Skip these stages")
@click.option("--aws-profile", default=None, help="AWS profile name")
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--context", "kube_context", default=None, help="Kubernetes context")
@click.option("--cluster-name", default=None, help="Override the cluster name")
@click.option("--config", "config_path", default=None, help="Path to cco-rotate.yaml")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.option("--json-output", is_flag=True, help="Output the report as JSON")
@click.option("--verbose", "-v", is_flag=True, help="Debug logging")
def run(
    dry_run: bool,
    tags: tuple[str, ...],
    skip_tags: tuple[str, ...],
    aws_profile: str | None,
    kubeconfig: str | None,
    kube_context: str | None,
    cluster_name: str | None,
    config_path: str | None,
    yes: bool,
    json_output: bool,
    verbose: bool,
) -> None:
    """Rotate the root AWS credential of the current cluster."""
    _setup_logging(verbose)
    cfg = _resolve_cfg(config_path).with_overrides(
        dry_run=dry_run or None,
        aws_profile=aws_profile,
        kubeconfig=kubeconfig,
        kube_context=kube_context,
        cluster_name=cluster_name,
    )

    try:
        stages = select_stages(_split(tags), _split(skip_tags))
    except RotationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(2)
    if not stages:
        click.echo("Error: no stages selected", err=True)
        sys.exit(2)

    if not json_output:
        _print_config(cfg, stages)
    if not cfg.dry_run and not yes:
        click.confirm(
            f"Rotate the root AWS credential ({', '.join(stages)})?",
            abort=True,
        )

    try:
        iam, cluster = _build_clients(cfg)
    except (ImportError, RotationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    rotator = Rotator(iam, cluster, cfg, notifiers=build_notifiers(cfg.notifications))
    try:
        result = rotator.run(stages)
    except KeyboardInterrupt:
        click.echo("\nInterrupted; the report records how far the run got.", err=True)
        sys.exit(130)

    if json_output:
        click.echo(json.dumps(result.to_dict(), indent=2))
    else:
        _print_outcome(result)

    if result.final_status in (FinalStatus.FAILED, FinalStatus.ABORTED):
        sys.exit(1)


# --- preflight command ---


@cli.command()
@click.option("--aws-profile", default=None, help="AWS profile name")
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--context", "kube_context", default=None, help="Kubernetes context")
@click.option("--config", "config_path", default=None, help="Path to cco-rotate.yaml")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def preflight(
    aws_profile: str | None,
    kubeconfig: str | None,
    kube_context: str | None,
    config_path: str | None,
    json_output: bool,
) -> None:
    """Run read-only preflight checks."""
    cfg = _resolve_cfg(config_path).with_overrides(
        aws_profile=aws_profile, kubeconfig=kubeconfig, kube_context=kube_context,
    )
    try:
        iam, cluster = _build_clients(cfg)
    except (ImportError, RotationError) as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    result = PreflightValidator(
        iam, cluster, cfg.root_secret_namespace, cfg.root_secret_name,
    ).validate()

    if json_output:
        click.echo(json.dumps(result.model_dump(mode="json"), indent=2))
    else:
        for check in result.checks:
            if check.passed:
                mark = click.style("OK  ", fg="green")
            else:
                mark = click.style("FAIL", fg="red")
            click.echo(f"  {mark}  {check.name}: {check.message}")
    if not result.ok:
        sys.exit(1)


# --- backups group ---


@cli.group()
def backups() -> None:
    """Backup store commands."""


@backups.command("list")
@click.option("--backup-dir", default=None, help="Backup directory")
@click.option(
    "--kind", default=None,
    type=click.Choice([k.value for k in BackupKind]),
    help="Filter by backup kind",
)
@click.option("--json-output", is_flag=True, help="Output as JSON")
def backups_list(backup_dir: str | None, kind: str | None, json_output: bool) -> None:
    """List backup entries (secret values are never printed)."""
    cfg = _resolve_cfg()
    try:
        store = FileBackupStore(_or(backup_dir, cfg.backup_dir, "./backups"))
        entries = [b for b in store.read_backups() if kind is None or b.kind == kind]
    except RotationError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)

    if json_output:
        data = [
            {
                "backup_id": b.backup_id,
                "timestamp": b.timestamp.isoformat(),
                "kind": b.kind.value,
                "cluster_id": b.cluster_id,
            }
            for b in entries
        ]
        click.echo(json.dumps(data, indent=2))
        return

    if not entries:
        click.echo("No backups found.")
        return
    for b in entries:
        key_id = b.payload.get("key_id") or b.payload.get("root_key_id", "")
        click.echo(
            f"  {b.timestamp.isoformat()[:19]}  "
            + click.style(f"{b.kind.value:<14}", fg="cyan")
            + f" {b.backup_id}  cluster={b.cluster_id or '?'}  key={key_id}"
        )
    click.echo(f"\n{len(entries)} backup(s).")


@backups.command("verify")
@click.option("--backup-dir", default=None, help="Backup directory")
def backups_verify(backup_dir: str | None) -> None:
    """Verify the backup hash chain."""
    cfg = _resolve_cfg()
    path = Path(_or(backup_dir, cfg.backup_dir, "./backups"))
    if not path.exists():
        click.echo(f"Backup store not found: {path}")
        sys.exit(1)

    is_valid, errors = verify_backups(path)

    if is_valid:
        click.echo(click.style("VALID", fg="green", bold=True)
                   + f": backup chain is intact ({path})")
    else:
        click.echo(click.style("INVALID", fg="red", bold=True)
                   + f": {len(errors)} error(s) found:")
        for error in errors:
            click.echo(f"  - {error}")
        sys.exit(1)


# --- rollback command ---


@cli.command()
@click.argument("backup_id")
@click.option("--backup-dir", default=None, help="Backup directory")
@click.option("--aws-profile", default=None, help="AWS profile name")
@click.option("--kubeconfig", default=None, help="Path to kubeconfig")
@click.option("--context", "kube_context", default=None, help="Kubernetes context")
@click.option("--config", "config_path", default=None, help="Path to cco-rotate.yaml")
@click.option("--dry-run", is_flag=True, help="Show what would be restored")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
def rollback(
    backup_id: str,
    backup_dir: str | None,
    aws_profile: str | None,
    kubeconfig: str | None,
    kube_context: str | None,
    config_path: str | None,
    dry_run: bool,
    yes: bool,
) -> None:
    """Restore the root secret from BACKUP_ID."""
    _setup_logging(False)
    cfg = _resolve_cfg(config_path).with_overrides(
        aws_profile=aws_profile, kubeconfig=kubeconfig, kube_context=kube_context,
    )
    if not dry_run and not yes:
        click.confirm(f"Restore the root secret from {backup_id}?", abort=True)

    try:
        store = FileBackupStore(_or(backup_dir, cfg.backup_dir, "./backups"))
        iam, cluster = _build_clients(cfg)
        identity = IdentityResolver(cluster, iam, cfg.cluster_name).resolve()
        root = rollback_root_secret(
            backup_id,
            store,
            cluster,
            iam=iam,
            principal_name=derive_principal_name(identity, cfg.principal_prefix),
            cluster_id=identity.cluster_id,
            dry_run=dry_run,
        )
    except (ImportError, RotationError) as e:
        click.echo(click.style("ERROR", fg="red") + f"  {e}", err=True)
        sys.exit(1)

    verb = "Would restore" if dry_run else "Restored"
    click.echo(
        click.style("OK", fg="green", bold=True)
        + f"  {verb} {root.namespace}/{root.name} to key {root.key_id}"
    )


# --- report group ---


@cli.group()
def report() -> None:
    """Rotation report commands."""


@report.command("show")
@click.argument("path")
@click.option("--json-output", is_flag=True, help="Output as JSON")
def report_show(path: str, json_output: bool) -> None:
    """Render a saved rotation report."""
    report_path = Path(path)
    if not report_path.is_file():
        click.echo(f"Report not found: {report_path}", err=True)
        sys.exit(1)
    try:
        loaded = load_report(report_path)
    except ValueError as e:
        click.echo(f"Error: invalid report {report_path}: {e}", err=True)
        sys.exit(1)

    if json_output:
        click.echo(json.dumps(loaded.to_dict(), indent=2))
    else:
        click.echo(render_summary(loaded))
