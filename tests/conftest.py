"""Shared fixtures: in-memory IAM and cluster fakes plus a fake clock.

The fakes model just enough of AWS IAM and the OpenShift control plane for
the rotation to run end to end without a real account or cluster.
"""

from __future__ import annotations

from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import pytest

from cco_rotate.errors import ConfigurationError, NotFoundError, PermissionDeniedError
from cco_rotate.models import (
    AccessKey,
    AccessKeyStatus,
    CallerIdentity,
    ClusterIdentity,
    ClusterSecret,
    CredentialsRequestRef,
    InfrastructureMetadata,
    OperatorStatus,
)

ACCOUNT_ID = "123456789012"
CLUSTER_ID = "8f3c2a1e-5b7d-4c9e-a1f2-3b4c5d6e7f80"
INFRA_NAME = "demo-x7k2p"
PRINCIPAL = f"cco-root-{CLUSTER_ID}"
ADMIN_ARN = f"arn:aws:iam::{ACCOUNT_ID}:user/admin"
T0 = datetime(2026, 1, 1, tzinfo=UTC)


# --- Clock ---


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def monotonic(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


# --- IAM ---


_IAM_MUTATIONS = frozenset({
    "create_user",
    "tag_user",
    "put_user_policy",
    "create_access_key",
    "update_access_key_status",
    "delete_access_key",
})


class FakeIam:
    """In-memory IamClient.

    ``errors`` maps a method name to exceptions raised on its next calls.
    ``confirm_failures`` makes that many authentications with a new key fail.
    """

    def __init__(self) -> None:
        self.account = ACCOUNT_ID
        self.arn = ADMIN_ARN
        self.users: dict[str, dict[str, Any]] = {}
        self.policies: dict[tuple[str, str], dict[str, Any]] = {}
        self.keys: dict[str, list[AccessKey]] = {}
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.confirm_failures = 0
        self.observers: list[Callable[[], None]] = []
        self._serial = 0

    # --- Test helpers ---

    def add_user(self, name: str = PRINCIPAL, tags: dict[str, str] | None = None) -> None:
        self.users[name] = {
            "UserName": name,
            "Arn": f"arn:aws:iam::{self.account}:user/{name}",
            "Tags": [{"Key": k, "Value": v} for k, v in (tags or {}).items()],
        }
        self.keys.setdefault(name, [])

    def add_key(
        self,
        user: str,
        key_id: str,
        status: AccessKeyStatus = AccessKeyStatus.ACTIVE,
        created_at: datetime | None = None,
    ) -> AccessKey:
        key = AccessKey(
            key_id=key_id,
            status=status,
            created_at=created_at or T0,
            secret=f"secret-{key_id}",
        )
        self.keys.setdefault(user, []).append(key)
        return key

    def key_ids(self, user: str = PRINCIPAL) -> list[str]:
        return [k.key_id for k in self.keys.get(user, [])]

    def active_ids(self, user: str = PRINCIPAL) -> list[str]:
        return [k.key_id for k in self.keys.get(user, []) if k.active]

    def status_of(self, key_id: str, user: str = PRINCIPAL) -> AccessKeyStatus | None:
        for key in self.keys.get(user, []):
            if key.key_id == key_id:
                return key.status
        return None

    @property
    def mutating_calls(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [c for c in self.calls if c[0] in _IAM_MUTATIONS]

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    def _notify(self) -> None:
        for observer in self.observers:
            observer()

    def _find(self, user: str, key_id: str) -> AccessKey:
        if user not in self.users:
            raise NotFoundError(f"NoSuchEntity: user {user}")
        for key in self.keys[user]:
            if key.key_id == key_id:
                return key
        raise NotFoundError(f"NoSuchEntity: key {key_id}")

    # --- IamClient ---

    def get_caller_identity(self) -> CallerIdentity:
        self._record("get_caller_identity")
        return CallerIdentity(account=self.account, arn=self.arn, user_id="AIDAADMIN")

    def get_user(self, name: str) -> dict[str, Any]:
        self._record("get_user", name)
        if name not in self.users:
            raise NotFoundError(f"NoSuchEntity: user {name}")
        return dict(self.users[name])

    def create_user(self, name: str, tags: dict[str, str]) -> dict[str, Any]:
        self._record("create_user", name, tags)
        self.add_user(name, tags)
        return dict(self.users[name])

    def tag_user(self, name: str, tags: dict[str, str]) -> None:
        self._record("tag_user", name, tags)
        current = {t["Key"]: t["Value"] for t in self.users[name]["Tags"]}
        current.update(tags)
        self.users[name]["Tags"] = [{"Key": k, "Value": v} for k, v in current.items()]

    def put_user_policy(self, name: str, policy_name: str, document: dict[str, Any]) -> None:
        self._record("put_user_policy", name, policy_name, document)
        self.policies[(name, policy_name)] = document

    def get_user_policy(self, name: str, policy_name: str) -> dict[str, Any]:
        self._record("get_user_policy", name, policy_name)
        if (name, policy_name) not in self.policies:
            raise NotFoundError(f"NoSuchEntity: policy {policy_name}")
        return self.policies[(name, policy_name)]

    def list_access_keys(self, name: str) -> list[AccessKey]:
        self._record("list_access_keys", name)
        if name not in self.users:
            raise NotFoundError(f"NoSuchEntity: user {name}")
        return [k.model_copy(update={"secret": None}) for k in self.keys[name]]

    def create_access_key(self, name: str) -> AccessKey:
        self._record("create_access_key", name)
        if len(self.keys[name]) >= 2:
            raise ConfigurationError("LimitExceeded: access key quota reached")
        self._serial += 1
        key = self.add_key(
            name,
            f"AKIANEW{self._serial:09d}",
            created_at=T0 + timedelta(days=self._serial),
        )
        self._notify()
        return key.model_copy()

    def update_access_key_status(
        self, name: str, key_id: str, status: AccessKeyStatus,
    ) -> None:
        self._record("update_access_key_status", name, key_id, status)
        self._find(name, key_id).status = status
        self._notify()

    def delete_access_key(self, name: str, key_id: str) -> None:
        self._record("delete_access_key", name, key_id)
        key = self._find(name, key_id)
        self.keys[name].remove(key)
        self._notify()

    def with_access_key(self, key: AccessKey) -> _KeyAuthenticatedIam:
        return _KeyAuthenticatedIam(self, key)


class _KeyAuthenticatedIam:
    """What a client holding only *key* can see: its own identity."""

    def __init__(self, parent: FakeIam, key: AccessKey) -> None:
        self._parent = parent
        self._key = key

    def get_caller_identity(self) -> CallerIdentity:
        parent = self._parent
        parent.calls.append(("confirm", (self._key.key_id,)))
        if parent.confirm_failures > 0:
            parent.confirm_failures -= 1
            raise PermissionDeniedError("InvalidClientTokenId: key not yet valid")
        for user, keys in parent.keys.items():
            for key in keys:
                if key.key_id == self._key.key_id and key.active:
                    return CallerIdentity(
                        account=parent.account,
                        arn=f"arn:aws:iam::{parent.account}:user/{user}",
                    )
        raise PermissionDeniedError(f"InvalidClientTokenId: {self._key.key_id}")


# --- Cluster ---


_CLUSTER_MUTATIONS = frozenset({"update_secret", "delete_secret"})


class FakeCluster:
    """In-memory ClusterClient.

    Deleting a component secret recreates it at once unless its name is in
    ``never_remint``, mimicking the cloud credential operator.
    """

    def __init__(self) -> None:
        self.infrastructure = InfrastructureMetadata(
            cluster_id=CLUSTER_ID,
            infrastructure_name=INFRA_NAME,
            platform="AWS",
            region="us-east-1",
        )
        self.credentials_mode = ""
        self.admin = True
        self.secrets: dict[tuple[str, str], ClusterSecret] = {}
        self.credentials_requests: list[CredentialsRequestRef] = []
        self.operators: list[OperatorStatus] = [
            OperatorStatus(name="cloud-credential"),
            OperatorStatus(name="ingress"),
        ]
        self.operator_script: list[list[OperatorStatus]] = []
        self.never_remint: set[str] = set()
        self.calls: list[tuple[str, tuple[Any, ...]]] = []
        self.errors: dict[str, list[Exception]] = {}
        self.observers: list[Callable[[], None]] = []
        self.now: Callable[[], datetime] = lambda: datetime.now(tz=UTC)

    # --- Test helpers ---

    def set_root_secret(
        self,
        key_id: str,
        secret: str | None = None,
        annotations: dict[str, str] | None = None,
    ) -> None:
        self.secrets[("kube-system", "aws-creds")] = ClusterSecret(
            namespace="kube-system",
            name="aws-creds",
            data={
                "aws_access_key_id": key_id,
                "aws_secret_access_key": secret or f"secret-{key_id}",
            },
            annotations=annotations or {},
            created_at=T0,
        )

    @property
    def root_key_id(self) -> str:
        return self.secrets[("kube-system", "aws-creds")].data["aws_access_key_id"]

    def add_component(self, name: str, provider_kind: str = "AWSProviderSpec") -> None:
        namespace = f"openshift-{name}"
        self.credentials_requests.append(CredentialsRequestRef(
            name=name,
            namespace="openshift-cloud-credential-operator",
            secret_name=f"{name}-credentials",
            secret_namespace=namespace,
            provider_kind=provider_kind,
        ))
        self.secrets[(namespace, f"{name}-credentials")] = ClusterSecret(
            namespace=namespace,
            name=f"{name}-credentials",
            data={"aws_access_key_id": f"AKIA{name.upper()}"},
            created_at=T0,
        )

    @property
    def mutating_calls(self) -> list[tuple[str, tuple[Any, ...]]]:
        return [c for c in self.calls if c[0] in _CLUSTER_MUTATIONS]

    def called(self, method: str) -> list[tuple[Any, ...]]:
        return [args for name, args in self.calls if name == method]

    def _record(self, method: str, *args: Any) -> None:
        self.calls.append((method, args))
        queue = self.errors.get(method)
        if queue:
            raise queue.pop(0)

    # --- ClusterClient ---

    def get_infrastructure(self) -> InfrastructureMetadata:
        self._record("get_infrastructure")
        return self.infrastructure

    def get_credentials_mode(self) -> str:
        self._record("get_credentials_mode")
        return self.credentials_mode

    def can_i(self, verb: str, resource: str, group: str = "") -> bool:
        self._record("can_i", verb, resource, group)
        return self.admin

    def get_secret(self, namespace: str, name: str) -> ClusterSecret:
        self._record("get_secret", namespace, name)
        if (namespace, name) not in self.secrets:
            raise NotFoundError(f"secret {namespace}/{name} not found")
        return self.secrets[(namespace, name)].model_copy(deep=True)

    def update_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        annotations: dict[str, str] | None = None,
    ) -> None:
        self._record("update_secret", namespace, name, data, annotations)
        if (namespace, name) not in self.secrets:
            raise NotFoundError(f"secret {namespace}/{name} not found")
        current = self.secrets[(namespace, name)]
        current.data.update(data)
        current.annotations.update(annotations or {})
        for observer in self.observers:
            observer()

    def delete_secret(self, namespace: str, name: str) -> None:
        self._record("delete_secret", namespace, name)
        if (namespace, name) not in self.secrets:
            raise NotFoundError(f"secret {namespace}/{name} not found")
        old = self.secrets.pop((namespace, name))
        if name not in self.never_remint:
            self.secrets[(namespace, name)] = old.model_copy(update={"created_at": self.now()})

    def list_credentials_requests(self) -> list[CredentialsRequestRef]:
        self._record("list_credentials_requests")
        return list(self.credentials_requests)

    def get_operator_statuses(self) -> list[OperatorStatus]:
        self._record("get_operator_statuses")
        if self.operator_script:
            self.operators = self.operator_script.pop(0)
        return list(self.operators)


# --- Fixtures ---


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def iam() -> FakeIam:
    return FakeIam()


@pytest.fixture()
def cluster() -> FakeCluster:
    return FakeCluster()


@pytest.fixture()
def identity() -> ClusterIdentity:
    return ClusterIdentity(
        cluster_id=CLUSTER_ID,
        cluster_name=INFRA_NAME,
        account_id=ACCOUNT_ID,
        region="us-east-1",
    )


@pytest.fixture()
def seeded(iam: FakeIam, cluster: FakeCluster) -> tuple[FakeIam, FakeCluster]:
    """A steady-state cluster: principal with one Active key K1 installed."""
    from cco_rotate.principal import required_policy_document

    iam.add_user(PRINCIPAL)
    iam.policies[(PRINCIPAL, "cco-root-policy")] = required_policy_document()
    iam.add_key(PRINCIPAL, "AKIAK1", created_at=T0)
    cluster.set_root_secret("AKIAK1")
    for name in ("ingress", "image-registry", "machine-api", "cluster-csi-drivers"):
        cluster.add_component(name)
    return iam, cluster


@pytest.fixture()
def lockout_watch(iam: FakeIam, cluster: FakeCluster) -> list[str]:
    """Records every moment the cluster's root secret was not a usable key.

    A root key that does not live on the managed principal is outside what
    this run can break, so it is not checked.
    """
    violations: list[str] = []

    def check() -> None:
        if ("kube-system", "aws-creds") not in cluster.secrets:
            return
        root = cluster.root_key_id
        if root not in iam.key_ids(PRINCIPAL):
            return
        if root not in iam.active_ids(PRINCIPAL):
            violations.append(f"root secret references inactive {root}")
        if not iam.active_ids(PRINCIPAL):
            violations.append("principal has zero active keys")

    iam.observers.append(check)
    cluster.observers.append(check)
    return violations
