"""Operator-triggered rollback of the root secret from a backup.

The forward rotation path never reads backups.  This is the manual escape
hatch named in failure reports: restore the root secret snapshot taken
before a rotation and make sure the key it names is Active again.
"""

from __future__ import annotations

import logging
from datetime import datetime

from cco_rotate.backup.store import BackupStore
from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient
from cco_rotate.errors import ConfigurationError, NotFoundError
from cco_rotate.keys import root_secret_annotations, root_secret_data
from cco_rotate.models import AccessKeyStatus, Backup, BackupKind, RootSecret

logger = logging.getLogger(__name__)


class RollbackError(ConfigurationError):
    """Raised when a backup cannot be used for rollback."""


def root_secret_from_backup(backup: Backup) -> RootSecret:
    if backup.kind != BackupKind.ROOT_SECRET:
        raise RollbackError(
            f"Backup {backup.backup_id} is a {backup.kind} snapshot, not a root secret"
        )
    payload = backup.payload
    last_rotated = payload.get("last_rotated_at")
    try:
        return RootSecret(
            namespace=payload["namespace"],
            name=payload["name"],
            key_id=payload["key_id"],
            secret=payload["secret"],
            last_rotated_at=datetime.fromisoformat(last_rotated) if last_rotated else None,
            rotated_by=payload.get("rotated_by", ""),
            previous_key_id=payload.get("previous_key_id", ""),
        )
    except KeyError as exc:
        raise RollbackError(f"Backup {backup.backup_id} is missing {exc}") from exc


def rollback_root_secret(
    backup_id: str,
    backups: BackupStore,
    cluster: ClusterClient,
    iam: IamClient | None = None,
    principal_name: str | None = None,
    cluster_id: str | None = None,
    dry_run: bool = False,
) -> RootSecret:
    """Restore the root secret captured in *backup_id*.

    When *iam* and *principal_name* are given and the restored key lives on
    that principal in Inactive state, it is reactivated first so the
    cluster never points at a disabled key.
    """
    backup = backups.read(backup_id)
    if cluster_id and backup.cluster_id and backup.cluster_id != cluster_id:
        raise RollbackError(
            f"Backup {backup_id} belongs to cluster {backup.cluster_id}, not {cluster_id}"
        )
    root = root_secret_from_backup(backup)

    if iam is not None and principal_name:
        keys = {k.key_id: k for k in iam.list_access_keys(principal_name)}
        key = keys.get(root.key_id)
        if key is not None and not key.active:
            if dry_run:
                logger.info("[dry-run] Would reactivate key %s", root.key_id)
            else:
                logger.info("Reactivating key %s on %s", root.key_id, principal_name)
                iam.update_access_key_status(
                    principal_name, root.key_id, AccessKeyStatus.ACTIVE,
                )
        elif key is None:
            logger.warning(
                "Key %s is not on %s; restoring the secret anyway",
                root.key_id, principal_name,
            )

    if dry_run:
        logger.info(
            "[dry-run] Would restore %s/%s to key %s from %s",
            root.namespace, root.name, root.key_id, backup_id,
        )
        return root

    try:
        cluster.update_secret(
            root.namespace, root.name, root_secret_data(root), root_secret_annotations(root),
        )
    except NotFoundError as exc:
        raise RollbackError(f"Root secret {root.namespace}/{root.name} not found") from exc
    logger.info("Restored %s/%s to key %s from %s", root.namespace, root.name,
                root.key_id, backup_id)
    return root
