"""Error taxonomy for credential rotation.

Every client call and stage raises one of these.  The orchestrator uses
the class to decide between retrying, recording and halting:

- ConfigurationError: wrong platform or missing precondition (fatal)
- TransientError: throttling, eventual consistency lag (retried)
- PermissionDeniedError: insufficient IAM or RBAC privilege (fatal)
- NotFoundError: the object does not exist (control flow, not a failure)
- InvariantViolation: the run was about to lock the cluster out (abort)
"""

from __future__ import annotations


class RotationError(Exception):
    """Base class for rotation failures.  Fatal unless a subclass says otherwise."""


class ConfigurationError(RotationError):
    """Raised when the environment does not match what rotation requires."""


class TransientError(RotationError):
    """Raised for failures expected to clear up on retry."""


class PermissionDeniedError(RotationError):
    """Raised when the caller lacks IAM or cluster privileges."""


class NotFoundError(RotationError):
    """Raised by clients when the requested object does not exist."""


class InvariantViolation(RotationError):
    """Raised when an operation would leave the cluster without a valid root key."""


class KeyConfirmationError(RotationError):
    """Raised when a newly minted key never became usable within its budget."""


class BackupError(RotationError):
    """Raised when the backup store cannot write or read an entry."""
