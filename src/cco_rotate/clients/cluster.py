"""Cluster client: the OpenShift control-plane side of the rotation.

Uses the official ``kubernetes`` Python client.  Core objects (Secrets,
access reviews) go through ``CoreV1Api``/``AuthorizationV1Api``; OpenShift
resources (Infrastructure, ClusterVersion, CloudCredential,
CredentialsRequest, ClusterOperator) go through ``CustomObjectsApi``.

Supports kubeconfig file/context or in-cluster config.
"""

from __future__ import annotations

import base64
import logging
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from cco_rotate.errors import (
    NotFoundError,
    PermissionDeniedError,
    RotationError,
    TransientError,
)
from cco_rotate.models import (
    ClusterSecret,
    CredentialsRequestRef,
    InfrastructureMetadata,
    OperatorStatus,
)

logger = logging.getLogger(__name__)

CCO_NAMESPACE = "openshift-cloud-credential-operator"

_TRANSIENT_STATUS = frozenset({409, 429, 500, 502, 503, 504})

_TRANSIENT_EXC_NAMES = frozenset({
    "MaxRetryError",
    "NewConnectionError",
    "ProtocolError",
    "ReadTimeoutError",
    "ConnectTimeoutError",
})


def _check_kubernetes_available() -> None:
    """Raise ImportError with helpful message if kubernetes is not installed."""
    try:
        import kubernetes  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'kubernetes' package is required for KubernetesClusterClient. "
            "Install it with: pip install cco-rotate"
        ) from None


def translate_k8s_error(exc: Exception, operation: str) -> RotationError:
    """Map a kubernetes ApiException (or urllib3 failure) onto the taxonomy."""
    exc_type = type(exc).__name__
    # Detect kubernetes ApiException by class name to avoid import
    if exc_type == "ApiException":
        status = getattr(exc, "status", 0) or 0
        detail = f"{operation}: K8s API error ({status}): {getattr(exc, 'reason', exc)}"
        if status == 404:
            return NotFoundError(detail)
        if status in (401, 403):
            return PermissionDeniedError(detail)
        if status in _TRANSIENT_STATUS:
            return TransientError(detail)
        return RotationError(detail)
    if exc_type in _TRANSIENT_EXC_NAMES:
        return TransientError(f"{operation}: {exc}")
    return RotationError(f"{operation}: {exc}")


@runtime_checkable
class ClusterClient(Protocol):
    """Protocol for the control-plane operations the rotation needs."""

    def get_infrastructure(self) -> InfrastructureMetadata: ...

    def get_credentials_mode(self) -> str: ...

    def can_i(self, verb: str, resource: str, group: str = "") -> bool: ...

    def get_secret(self, namespace: str, name: str) -> ClusterSecret: ...

    def update_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        annotations: dict[str, str] | None = None,
    ) -> None: ...

    def delete_secret(self, namespace: str, name: str) -> None: ...

    def list_credentials_requests(self) -> list[CredentialsRequestRef]: ...

    def get_operator_statuses(self) -> list[OperatorStatus]: ...


class KubernetesClusterClient:
    """ClusterClient backed by the kubernetes Python client."""

    def __init__(
        self,
        kubeconfig: str | None = None,
        context: str | None = None,
        in_cluster: bool = False,
    ) -> None:
        _check_kubernetes_available()
        self._kubeconfig = kubeconfig
        self._context = context
        self._in_cluster = in_cluster
        self._api_client: Any = None

    # --- ClusterClient ---

    def get_infrastructure(self) -> InfrastructureMetadata:
        infra = self._custom("get_cluster_custom_object",
                             group="config.openshift.io", version="v1",
                             plural="infrastructures", name="cluster")
        version = self._custom("get_cluster_custom_object",
                               group="config.openshift.io", version="v1",
                               plural="clusterversions", name="version")
        status = infra.get("status", {})
        platform_status = status.get("platformStatus", {})
        platform = platform_status.get("type") or status.get("platform", "")
        region = platform_status.get("aws", {}).get("region", "")
        return InfrastructureMetadata(
            cluster_id=version.get("spec", {}).get("clusterID", ""),
            infrastructure_name=status.get("infrastructureName", ""),
            platform=platform,
            region=region,
        )

    def get_credentials_mode(self) -> str:
        cco = self._custom("get_cluster_custom_object",
                           group="operator.openshift.io", version="v1",
                           plural="cloudcredentials", name="cluster")
        return cco.get("spec", {}).get("credentialsMode", "")

    def can_i(self, verb: str, resource: str, group: str = "") -> bool:
        from kubernetes import client

        body = client.V1SelfSubjectAccessReview(
            spec=client.V1SelfSubjectAccessReviewSpec(
                resource_attributes=client.V1ResourceAttributes(
                    verb=verb, resource=resource, group=group,
                ),
            ),
        )
        api = self._api("AuthorizationV1Api")
        review = self._invoke(
            "create_self_subject_access_review",
            api.create_self_subject_access_review, body=body,
        )
        return bool(review.status and review.status.allowed)

    def get_secret(self, namespace: str, name: str) -> ClusterSecret:
        api = self._api("CoreV1Api")
        secret = self._invoke(
            f"read secret {namespace}/{name}",
            api.read_namespaced_secret, name=name, namespace=namespace,
        )
        metadata = secret.metadata
        return ClusterSecret(
            namespace=namespace,
            name=name,
            data={k: self._decode(v) for k, v in (secret.data or {}).items()},
            annotations=dict(metadata.annotations or {}),
            created_at=self._as_utc(metadata.creation_timestamp),
        )

    def update_secret(
        self,
        namespace: str,
        name: str,
        data: dict[str, str],
        annotations: dict[str, str] | None = None,
    ) -> None:
        body: dict[str, Any] = {
            "data": {k: self._encode(v) for k, v in data.items()},
        }
        if annotations:
            body["metadata"] = {"annotations": annotations}
        api = self._api("CoreV1Api")
        self._invoke(
            f"patch secret {namespace}/{name}",
            api.patch_namespaced_secret, name=name, namespace=namespace, body=body,
        )

    def delete_secret(self, namespace: str, name: str) -> None:
        api = self._api("CoreV1Api")
        self._invoke(
            f"delete secret {namespace}/{name}",
            api.delete_namespaced_secret, name=name, namespace=namespace,
        )

    def list_credentials_requests(self) -> list[CredentialsRequestRef]:
        resp = self._custom("list_namespaced_custom_object",
                            group="cloudcredential.openshift.io", version="v1",
                            namespace=CCO_NAMESPACE, plural="credentialsrequests")
        refs: list[CredentialsRequestRef] = []
        for item in resp.get("items", []):
            metadata = item.get("metadata", {})
            spec = item.get("spec", {})
            secret_ref = spec.get("secretRef", {})
            if not secret_ref.get("name"):
                continue
            refs.append(CredentialsRequestRef(
                name=metadata.get("name", ""),
                namespace=metadata.get("namespace", CCO_NAMESPACE),
                secret_name=secret_ref["name"],
                secret_namespace=secret_ref.get("namespace", ""),
                provider_kind=spec.get("providerSpec", {}).get("kind", ""),
            ))
        return refs

    def get_operator_statuses(self) -> list[OperatorStatus]:
        resp = self._custom("list_cluster_custom_object",
                            group="config.openshift.io", version="v1",
                            plural="clusteroperators")
        statuses: list[OperatorStatus] = []
        for item in resp.get("items", []):
            conditions = {
                c.get("type"): c for c in item.get("status", {}).get("conditions", [])
            }
            messages = [
                conditions[k].get("message", "")
                for k in ("Degraded", "Progressing")
                if self._is_true(conditions, k) and conditions[k].get("message")
            ]
            statuses.append(OperatorStatus(
                name=item.get("metadata", {}).get("name", ""),
                available=self._is_true(conditions, "Available"),
                degraded=self._is_true(conditions, "Degraded"),
                progressing=self._is_true(conditions, "Progressing"),
                message="; ".join(messages),
            ))
        return statuses

    # --- Private: client setup ---

    def _get_api_client(self) -> Any:
        """Build (once) a kubernetes ApiClient from constructor config."""
        if self._api_client is not None:
            return self._api_client

        from kubernetes import client, config

        if self._in_cluster:
            config.load_incluster_config()
        else:
            kwargs: dict[str, Any] = {}
            if self._kubeconfig:
                kwargs["config_file"] = self._kubeconfig
            if self._context:
                kwargs["context"] = self._context
            config.load_kube_config(**kwargs)
        self._api_client = client.ApiClient()
        return self._api_client

    def _api(self, api_class_name: str) -> Any:
        """Instantiate the appropriate API class."""
        from kubernetes import client

        try:
            api_client = self._get_api_client()
        except Exception as exc:
            raise translate_k8s_error(exc, "load kubeconfig") from exc
        return getattr(client, api_class_name)(api_client)

    def _custom(self, method: str, **kwargs: Any) -> dict[str, Any]:
        api = self._api("CustomObjectsApi")
        operation = f"{method} {kwargs.get('plural')}/{kwargs.get('name', '')}".rstrip("/")
        return self._invoke(operation, getattr(api, method), **kwargs)

    def _invoke(self, operation: str, fn: Any, **kwargs: Any) -> Any:
        try:
            return fn(**kwargs)
        except Exception as exc:
            raise translate_k8s_error(exc, operation) from exc

    # --- Private: helpers ---

    @staticmethod
    def _is_true(conditions: dict[str, Any], kind: str) -> bool:
        return conditions.get(kind, {}).get("status") == "True"

    @staticmethod
    def _decode(value: str) -> str:
        return base64.b64decode(value).decode("utf-8")

    @staticmethod
    def _encode(value: str) -> str:
        return base64.b64encode(value.encode("utf-8")).decode("ascii")

    @staticmethod
    def _as_utc(value: datetime | None) -> datetime | None:
        if value is None:
            return None
        return value if value.tzinfo else value.replace(tzinfo=UTC)
