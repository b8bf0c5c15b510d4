"""Core data models for cco-rotate.

Defines the schemas for:
- Cluster identity (which cluster and account are being rotated)
- IAM principal and access keys (what lives in AWS)
- Root secret and credentials requests (what lives in the cluster)
- Backups (pre-mutation snapshots)
- Stage results and the rotation report (what happened)
"""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field, SecretStr

# --- Enums ---


class AccessKeyStatus(enum.StrEnum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"


class BackupKind(enum.StrEnum):
    ACCESS_KEY_META = "AccessKeyMeta"
    ROOT_SECRET = "RootSecret"


class KeyState(enum.StrEnum):
    """States of the key rotation state machine, in execution order."""

    DISCOVERING = "discovering"
    BACKING_UP = "backing_up"
    RETIRING_OLD = "retiring_old"
    MINTING = "minting"
    INSTALLING = "installing"
    CONFIRMING_NEW_KEY = "confirming_new_key"
    COMMITTED = "committed"
    FAILED = "failed"


class StepOutcome(enum.StrEnum):
    SUCCESS = "success"
    SKIPPED = "skipped"
    DEGRADED = "degraded"
    FAILED = "failed"


class FinalStatus(enum.StrEnum):
    SUCCESS = "success"
    COMPLETED_WITH_WARNINGS = "completed_with_warnings"
    FAILED = "failed"
    ABORTED = "aborted"


# --- Cluster side ---


class InfrastructureMetadata(BaseModel):
    """What the control plane reports about the cluster it runs."""

    cluster_id: str
    infrastructure_name: str
    platform: str
    region: str = ""


class ClusterIdentity(BaseModel, frozen=True):
    """Resolved once per run; the anchor for every derived name."""

    cluster_id: str
    cluster_name: str
    account_id: str
    region: str
    platform: str = "AWS"


class ClusterSecret(BaseModel):
    """A kubernetes Secret with its data already base64-decoded."""

    namespace: str
    name: str
    data: dict[str, str] = Field(default_factory=dict)
    annotations: dict[str, str] = Field(default_factory=dict)
    created_at: datetime | None = None


class CredentialsRequestRef(BaseModel):
    """A CredentialsRequest and the Secret the minting service writes for it."""

    name: str
    namespace: str
    secret_name: str
    secret_namespace: str
    provider_kind: str = ""


class OperatorStatus(BaseModel):
    """Condition summary of a single ClusterOperator."""

    name: str
    available: bool = True
    degraded: bool = False
    progressing: bool = False
    message: str = ""

    @property
    def healthy(self) -> bool:
        return self.available and not self.degraded and not self.progressing


class RootSecret(BaseModel):
    """The minting service's root credential plus rotation metadata."""

    namespace: str
    name: str
    key_id: str
    secret: SecretStr
    last_rotated_at: datetime | None = None
    rotated_by: str = ""
    previous_key_id: str = ""


# --- AWS side ---


class CallerIdentity(BaseModel):
    """Result of sts:GetCallerIdentity."""

    account: str
    arn: str
    user_id: str = ""


class AccessKey(BaseModel):
    """An IAM access key.

    ``secret`` is only populated for keys minted during this run; AWS
    never returns the secret of an existing key.
    """

    key_id: str
    status: AccessKeyStatus
    created_at: datetime
    secret: SecretStr | None = None

    @property
    def active(self) -> bool:
        return self.status == AccessKeyStatus.ACTIVE

    def metadata(self) -> dict[str, Any]:
        """Serializable description without the secret."""
        return {
            "key_id": self.key_id,
            "status": str(self.status),
            "created_at": self.created_at.isoformat(),
        }


class IAMPrincipal(BaseModel):
    """The IAM user whose keys back the root secret."""

    name: str
    policy_name: str
    policy_document: dict[str, Any] = Field(default_factory=dict)
    tags: dict[str, str] = Field(default_factory=dict)
    exists: bool = False
    arn: str = ""
    created: bool = False
    policy_reapplied: bool = False


# --- Backups ---


class Backup(BaseModel):
    """A single append-only entry in the backup store."""

    backup_id: str
    timestamp: datetime
    kind: BackupKind
    cluster_id: str = ""
    payload: dict[str, Any] = Field(default_factory=dict)
    prev_hash: str
    entry_hash: str = ""


# --- Stage results ---


class PreflightCheck(BaseModel):
    name: str
    passed: bool
    message: str = ""


class PreflightResult(BaseModel):
    """Outcome of all preflight checks.  ``ok`` only when every check passed."""

    checks: list[PreflightCheck] = Field(default_factory=list)
    caller_arn: str = ""

    @property
    def ok(self) -> bool:
        return all(c.passed for c in self.checks)

    @property
    def reasons(self) -> list[str]:
        return [f"{c.name}: {c.message}" for c in self.checks if not c.passed]


class KeyRotationResult(BaseModel):
    """What the key state machine did, including where it stopped."""

    state: KeyState
    last_successful_state: KeyState | None = None
    new_key_id: str = ""
    previous_key_id: str = ""
    retired_key_ids: list[str] = Field(default_factory=list)
    deactivated_key_ids: list[str] = Field(default_factory=list)
    backup_ids: list[str] = Field(default_factory=list)
    rolled_back: bool = False
    planned: list[str] = Field(default_factory=list)
    error: str | None = None


class ComponentRefresh(BaseModel):
    """Re-mint outcome of one CredentialsRequest."""

    request: str
    secret: str
    outcome: StepOutcome
    detail: str = ""


class RefreshResult(BaseModel):
    components: list[ComponentRefresh] = Field(default_factory=list)

    def _with(self, outcome: StepOutcome) -> list[ComponentRefresh]:
        return [c for c in self.components if c.outcome == outcome]

    @property
    def refreshed(self) -> list[ComponentRefresh]:
        return self._with(StepOutcome.SUCCESS)

    @property
    def degraded(self) -> list[ComponentRefresh]:
        return self._with(StepOutcome.DEGRADED)

    @property
    def skipped(self) -> list[ComponentRefresh]:
        return self._with(StepOutcome.SKIPPED)


class HealthResult(BaseModel):
    healthy: bool
    unhealthy: list[str] = Field(default_factory=list)
    ignored: list[str] = Field(default_factory=list)
    attempts: int = 0
    elapsed: float = 0.0


# --- Rotation Report ---


class StepRecord(BaseModel):
    """Outcome and timing of one orchestrator step."""

    name: str
    outcome: StepOutcome
    detail: str = ""
    started_at: datetime
    finished_at: datetime
    duration_ms: float = 0.0
    data: dict[str, Any] = Field(default_factory=dict)


class RotationReport(BaseModel):
    """The sole structured output of a run.  Never contains secret values."""

    run_id: str
    cluster_id: str = ""
    dry_run: bool = False
    started_at: datetime
    finished_at: datetime | None = None
    steps: list[StepRecord] = Field(default_factory=list)
    final_status: FinalStatus = FinalStatus.FAILED
    failed_stage: str | None = None
    error: str | None = None
    backup_ids: list[str] = Field(default_factory=list)
    degraded_components: list[str] = Field(default_factory=list)
    key_state: KeyState | None = None
    last_successful_state: KeyState | None = None

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")
