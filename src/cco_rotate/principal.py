"""IAM principal management: create-or-verify the minting operator's IAM user."""

from __future__ import annotations

import json
import logging
from typing import Any

from cco_rotate.clients.iam import IamClient
from cco_rotate.errors import ConfigurationError, NotFoundError
from cco_rotate.identity import DEFAULT_PRINCIPAL_PREFIX, derive_principal_name
from cco_rotate.models import ClusterIdentity, IAMPrincipal
from cco_rotate.polling import Backoff

logger = logging.getLogger(__name__)

DEFAULT_POLICY_NAME = "cco-root-policy"

# Permissions the cloud credential operator needs to mint component users
MINT_MODE_ACTIONS = (
    "iam:CreateAccessKey",
    "iam:CreateUser",
    "iam:DeleteAccessKey",
    "iam:DeleteUser",
    "iam:DeleteUserPolicy",
    "iam:GetUser",
    "iam:GetUserPolicy",
    "iam:ListAccessKeys",
    "iam:PutUserPolicy",
    "iam:TagUser",
    "iam:SimulatePrincipalPolicy",
)


def required_policy_document() -> dict[str, Any]:
    return {
        "Version": "2012-10-17",
        "Statement": [
            {
                "Sid": "CloudCredentialOperatorMint",
                "Effect": "Allow",
                "Action": list(MINT_MODE_ACTIONS),
                "Resource": "*",
            },
        ],
    }


def principal_tags(identity: ClusterIdentity) -> dict[str, str]:
    return {
        "cco-rotate/cluster-id": identity.cluster_id,
        "cco-rotate/cluster-name": identity.cluster_name,
        f"kubernetes.io/cluster/{identity.cluster_name}": "owned",
    }


def normalize_policy(document: dict[str, Any]) -> str:
    """Canonical form of a policy document for drift comparison.

    Statement order and single-string vs list forms of Action/Resource
    do not count as drift.
    """

    def _norm(value: Any) -> Any:
        if isinstance(value, dict):
            return {k: _norm(v) for k, v in value.items()}
        if isinstance(value, list):
            return sorted((_norm(v) for v in value), key=lambda v: json.dumps(v, sort_keys=True))
        return value

    statements = document.get("Statement", [])
    if isinstance(statements, dict):
        statements = [statements]
    canonical = []
    for statement in statements:
        statement = dict(statement)
        for key in ("Action", "NotAction", "Resource", "NotResource"):
            if isinstance(statement.get(key), str):
                statement[key] = [statement[key]]
        canonical.append(_norm(statement))
    return json.dumps(
        {"Version": document.get("Version", ""), "Statement": _norm(canonical)},
        sort_keys=True,
    )


class PrincipalManager:
    """Ensures the IAM user exists with the required policy and tags.

    Calling ``ensure()`` twice for the same identity is a no-op the second
    time.  The user is never deleted here.
    """

    def __init__(
        self,
        iam: IamClient,
        prefix: str = DEFAULT_PRINCIPAL_PREFIX,
        policy_name: str = DEFAULT_POLICY_NAME,
        dry_run: bool = False,
        backoff: Backoff | None = None,
    ) -> None:
        self._iam = iam
        self._prefix = prefix
        self._policy_name = policy_name
        self._dry_run = dry_run
        self._backoff = backoff or Backoff()

    def _principal(self, identity: ClusterIdentity) -> IAMPrincipal:
        return IAMPrincipal(
            name=derive_principal_name(identity, self._prefix),
            policy_name=self._policy_name,
            policy_document=required_policy_document(),
            tags=principal_tags(identity),
        )

    def lookup(self, identity: ClusterIdentity) -> IAMPrincipal:
        """Read-only: return the existing principal or raise ConfigurationError."""
        principal = self._principal(identity)
        try:
            user = self._backoff.call(self._iam.get_user, principal.name)
        except NotFoundError as exc:
            raise ConfigurationError(
                f"IAM user {principal.name} does not exist; run the iam-user stage first"
            ) from exc
        return principal.model_copy(update={"exists": True, "arn": user.get("Arn", "")})

    def ensure(self, identity: ClusterIdentity) -> IAMPrincipal:
        principal = self._principal(identity)
        call = self._backoff.call

        try:
            user = call(self._iam.get_user, principal.name)
        except NotFoundError:
            user = None

        if user is None:
            if self._dry_run:
                logger.info("[dry-run] Would create IAM user %s", principal.name)
                return principal
            logger.info("Creating IAM user %s", principal.name)
            user = call(self._iam.create_user, principal.name, principal.tags)
            call(self._iam.put_user_policy, principal.name,
                 self._policy_name, principal.policy_document)
            return principal.model_copy(update={
                "exists": True, "created": True, "arn": user.get("Arn", ""),
            })

        principal = principal.model_copy(update={"exists": True, "arn": user.get("Arn", "")})
        reapplied = self._reconcile_policy(principal)
        self._reconcile_tags(principal, user)
        return principal.model_copy(update={"policy_reapplied": reapplied})

    def _reconcile_policy(self, principal: IAMPrincipal) -> bool:
        try:
            current = self._backoff.call(
                self._iam.get_user_policy, principal.name, self._policy_name,
            )
        except NotFoundError:
            current = None

        if current is not None and (
            normalize_policy(current) == normalize_policy(principal.policy_document)
        ):
            logger.debug("Policy %s on %s is up to date", self._policy_name, principal.name)
            return False

        reason = "missing" if current is None else "drifted"
        if self._dry_run:
            logger.info(
                "[dry-run] Would re-apply %s policy %s on %s",
                reason, self._policy_name, principal.name,
            )
            return False
        logger.warning(
            "Policy %s on %s is %s; re-applying", self._policy_name, principal.name, reason,
        )
        self._backoff.call(
            self._iam.put_user_policy, principal.name,
            self._policy_name, principal.policy_document,
        )
        return True

    def _reconcile_tags(self, principal: IAMPrincipal, user: dict[str, Any]) -> None:
        current = {t["Key"]: t["Value"] for t in user.get("Tags", [])}
        missing = {k: v for k, v in principal.tags.items() if current.get(k) != v}
        if not missing:
            return
        if self._dry_run:
            logger.info("[dry-run] Would tag %s with %s", principal.name, sorted(missing))
            return
        logger.info("Tagging %s with %s", principal.name, sorted(missing))
        self._backoff.call(self._iam.tag_user, principal.name, missing)
