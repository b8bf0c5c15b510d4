"""cco-rotate: root credential rotation for OpenShift's cloud-credential operator on AWS."""

__version__ = "0.1.0"

from cco_rotate.backup.store import FileBackupStore, verify_backups
from cco_rotate.config import RotationConfig, find_config, load_config
from cco_rotate.errors import (
    BackupError,
    ConfigurationError,
    InvariantViolation,
    KeyConfirmationError,
    NotFoundError,
    PermissionDeniedError,
    RotationError,
    TransientError,
)
from cco_rotate.models import (
    AccessKey,
    AccessKeyStatus,
    Backup,
    BackupKind,
    ClusterIdentity,
    FinalStatus,
    IAMPrincipal,
    KeyState,
    RootSecret,
    RotationReport,
    StepOutcome,
)
from cco_rotate.orchestrator import STAGES, Rotator, select_stages

__all__ = [
    "AccessKey",
    "AccessKeyStatus",
    "Backup",
    "BackupError",
    "BackupKind",
    "ClusterIdentity",
    "ConfigurationError",
    "FileBackupStore",
    "FinalStatus",
    "IAMPrincipal",
    "InvariantViolation",
    "KeyConfirmationError",
    "KeyState",
    "NotFoundError",
    "PermissionDeniedError",
    "RootSecret",
    "RotationConfig",
    "RotationError",
    "RotationReport",
    "Rotator",
    "STAGES",
    "StepOutcome",
    "TransientError",
    "find_config",
    "load_config",
    "select_stages",
    "verify_backups",
]
