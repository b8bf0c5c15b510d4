"""Cluster identity resolution and IAM principal naming.

The principal name is a pure function of the cluster ID, so every run
against the same cluster targets the same IAM user.
"""

from __future__ import annotations

import hashlib
import logging
import re

from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient
from cco_rotate.errors import ConfigurationError
from cco_rotate.models import ClusterIdentity

logger = logging.getLogger(__name__)

DEFAULT_PRINCIPAL_PREFIX = "cco-root-"
EXPECTED_PLATFORM = "AWS"

# IAM user names: 1-64 chars of [A-Za-z0-9+=,.@_-]
MAX_PRINCIPAL_NAME = 64
_INVALID_NAME_CHARS = re.compile(r"[^A-Za-z0-9+=,.@_-]")
_DIGEST_LEN = 8


def derive_principal_name(
    identity: ClusterIdentity,
    prefix: str = DEFAULT_PRINCIPAL_PREFIX,
) -> str:
    """Derive the IAM user name for *identity*.

    Only ``cluster_id`` feeds the name; renaming the cluster or overriding
    its display name never moves the rotation to a different user.
    Names that would exceed the IAM limit are truncated and suffixed with
    a digest of the full cluster ID.
    """
    if not identity.cluster_id:
        raise ConfigurationError("cluster ID is empty; cannot derive principal name")
    name = _INVALID_NAME_CHARS.sub("-", f"{prefix}{identity.cluster_id}")
    if len(name) <= MAX_PRINCIPAL_NAME:
        return name
    digest = hashlib.sha256(identity.cluster_id.encode("utf-8")).hexdigest()
    return f"{name[:MAX_PRINCIPAL_NAME - _DIGEST_LEN - 1]}-{digest[:_DIGEST_LEN]}"


class IdentityResolver:
    """Resolves the cluster identity from the control plane, once.

    A platform mismatch is a configuration error and is never retried.
    """

    def __init__(
        self,
        cluster: ClusterClient,
        iam: IamClient,
        cluster_name: str | None = None,
    ) -> None:
        self._cluster = cluster
        self._iam = iam
        self._cluster_name = cluster_name

    def resolve(self) -> ClusterIdentity:
        infra = self._cluster.get_infrastructure()
        if infra.platform != EXPECTED_PLATFORM:
            raise ConfigurationError(
                f"cluster platform is {infra.platform or 'unknown'!r}, "
                f"expected {EXPECTED_PLATFORM!r}"
            )
        if not infra.cluster_id:
            raise ConfigurationError("cluster version reports no cluster ID")

        caller = self._iam.get_caller_identity()
        identity = ClusterIdentity(
            cluster_id=infra.cluster_id,
            cluster_name=self._cluster_name or infra.infrastructure_name,
            account_id=caller.account,
            region=infra.region,
            platform=infra.platform,
        )
        logger.info(
            "Resolved cluster %s (%s) in account %s, region %s",
            identity.cluster_name, identity.cluster_id,
            identity.account_id, identity.region or "-",
        )
        return identity
