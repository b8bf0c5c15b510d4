"""Preflight validation: read-only checks run before any mutation."""

from __future__ import annotations

import logging
from collections.abc import Callable

from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient
from cco_rotate.errors import NotFoundError, RotationError
from cco_rotate.models import PreflightCheck, PreflightResult

logger = logging.getLogger(__name__)

# CCO modes in which it holds and uses the root credential
MINT_MODES = frozenset({"", "Mint"})

ROOT_SECRET_KEYS = ("aws_access_key_id", "aws_secret_access_key")


class PreflightValidator:
    """Checks both systems are reachable and the cluster is in mint mode.

    Every check runs even when an earlier one fails so the operator sees
    all problems at once.
    """

    def __init__(
        self,
        iam: IamClient,
        cluster: ClusterClient,
        root_secret_namespace: str = "kube-system",
        root_secret_name: str = "aws-creds",
    ) -> None:
        self._iam = iam
        self._cluster = cluster
        self._secret_ns = root_secret_namespace
        self._secret_name = root_secret_name
        self._caller_arn = ""

    def validate(self) -> PreflightResult:
        self._caller_arn = ""
        checks = [
            self._run("cluster-reachable", self._check_cluster_admin),
            self._run("iam-reachable", self._check_iam_caller),
            self._run("mint-mode", self._check_mint_mode),
            self._run("root-secret-present", self._check_root_secret),
        ]
        result = PreflightResult(checks=checks, caller_arn=self._caller_arn)
        for reason in result.reasons:
            logger.warning("Preflight check failed: %s", reason)
        return result

    def _run(self, name: str, check: Callable[[], str]) -> PreflightCheck:
        try:
            message = check()
        except RotationError as exc:
            return PreflightCheck(name=name, passed=False, message=str(exc))
        logger.debug("Preflight check %s passed: %s", name, message)
        return PreflightCheck(name=name, passed=True, message=message)

    def _check_cluster_admin(self) -> str:
        if not self._cluster.can_i("*", "*", "*"):
            raise RotationError("caller does not have cluster-admin scope")
        return "control plane reachable with cluster-admin scope"

    def _check_iam_caller(self) -> str:
        caller = self._iam.get_caller_identity()
        if not caller.arn:
            raise RotationError("caller identity has no ARN")
        self._caller_arn = caller.arn
        return f"authenticated as {caller.arn}"

    def _check_mint_mode(self) -> str:
        mode = self._cluster.get_credentials_mode()
        if mode not in MINT_MODES:
            raise RotationError(
                f"cloud credential operator is in {mode!r} mode; "
                "rotation requires the root credential (mint) mode"
            )
        return f"credentials mode {mode or 'default'}"

    def _check_root_secret(self) -> str:
        try:
            secret = self._cluster.get_secret(self._secret_ns, self._secret_name)
        except NotFoundError as exc:
            raise RotationError(
                f"root secret {self._secret_ns}/{self._secret_name} not found"
            ) from exc
        missing = [k for k in ROOT_SECRET_KEYS if not secret.data.get(k)]
        if missing:
            raise RotationError(
                f"root secret {self._secret_ns}/{self._secret_name} "
                f"is missing {', '.join(missing)}"
            )
        return f"root secret {self._secret_ns}/{self._secret_name} present"
