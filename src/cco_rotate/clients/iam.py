"""IAM client: the AWS side of the rotation, via boto3.

``IamClient`` is the contract the rotation core consumes.  ``Boto3IamClient``
implements it on top of boto3 and translates ``ClientError`` codes into the
rotation error taxonomy so callers can tell "not found" from "transient"
from "permission denied".

Credential handling mirrors boto3's own: an explicit access key pair, a
named profile, or the default credential chain.
"""

from __future__ import annotations

import json
import urllib.parse
from datetime import UTC, datetime
from typing import Any, Protocol, runtime_checkable

from cco_rotate.errors import (
    NotFoundError,
    PermissionDeniedError,
    RotationError,
    TransientError,
)
from cco_rotate.models import AccessKey, AccessKeyStatus, CallerIdentity

NOT_FOUND_CODES = frozenset({"NoSuchEntity", "NoSuchEntityException"})

PERMISSION_CODES = frozenset({
    "AccessDenied",
    "AccessDeniedException",
    "UnauthorizedOperation",
    "InvalidClientTokenId",
    "SignatureDoesNotMatch",
    "ExpiredToken",
})

TRANSIENT_CODES = frozenset({
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServiceUnavailable",
    "ServiceFailure",
    "InternalFailure",
    "ConcurrentModification",
})

# botocore exceptions raised before a response exists
_TRANSIENT_EXC_NAMES = frozenset({
    "EndpointConnectionError",
    "ConnectTimeoutError",
    "ReadTimeoutError",
    "ConnectionClosedError",
})


def _check_boto3_available() -> None:
    """Raise ImportError with helpful message if boto3 is not installed."""
    try:
        import boto3  # noqa: F401
    except ImportError:
        raise ImportError(
            "The 'boto3' package is required for Boto3IamClient. "
            "Install it with: pip install cco-rotate"
        ) from None


def translate_aws_error(exc: Exception, operation: str) -> RotationError:
    """Map a boto3/botocore exception onto the rotation error taxonomy."""
    exc_type = type(exc).__name__
    if exc_type == "ClientError":
        error = getattr(exc, "response", {}).get("Error", {})
        code = error.get("Code", "")
        message = error.get("Message", str(exc))
        detail = f"{operation}: {code}: {message}"
        if code in NOT_FOUND_CODES:
            return NotFoundError(detail)
        if code in PERMISSION_CODES:
            return PermissionDeniedError(detail)
        if code in TRANSIENT_CODES:
            return TransientError(detail)
        return RotationError(detail)
    if exc_type in _TRANSIENT_EXC_NAMES:
        return TransientError(f"{operation}: {exc}")
    return RotationError(f"{operation}: {exc}")


@runtime_checkable
class IamClient(Protocol):
    """Protocol for the IAM/STS operations the rotation needs."""

    def get_caller_identity(self) -> CallerIdentity: ...

    def get_user(self, name: str) -> dict[str, Any]: ...

    def create_user(self, name: str, tags: dict[str, str]) -> dict[str, Any]: ...

    def tag_user(self, name: str, tags: dict[str, str]) -> None: ...

    def put_user_policy(
        self, name: str, policy_name: str, document: dict[str, Any],
    ) -> None: ...

    def get_user_policy(self, name: str, policy_name: str) -> dict[str, Any]: ...

    def list_access_keys(self, name: str) -> list[AccessKey]: ...

    def create_access_key(self, name: str) -> AccessKey: ...

    def update_access_key_status(
        self, name: str, key_id: str, status: AccessKeyStatus,
    ) -> None: ...

    def delete_access_key(self, name: str, key_id: str) -> None: ...

    def with_access_key(self, key: AccessKey) -> IamClient:
        """A client of the same kind authenticated with *key*."""
        ...


class Boto3IamClient:
    """IamClient backed by boto3.

    Credential resolution:
    - ``access_key_id`` / ``secret_access_key`` if given
    - otherwise ``profile`` if given
    - otherwise boto3's default credential chain
    """

    def __init__(
        self,
        profile: str | None = None,
        region: str | None = None,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
    ) -> None:
        _check_boto3_available()
        self._profile = profile
        self._region = region
        self._endpoint_url = endpoint_url
        self._access_key_id = access_key_id
        self._secret_access_key = secret_access_key
        self._clients: dict[str, Any] = {}

    # --- IamClient ---

    def get_caller_identity(self) -> CallerIdentity:
        resp = self._call("sts", "get_caller_identity")
        return CallerIdentity(
            account=resp["Account"], arn=resp["Arn"], user_id=resp.get("UserId", ""),
        )

    def get_user(self, name: str) -> dict[str, Any]:
        return self._call("iam", "get_user", UserName=name)["User"]

    def create_user(self, name: str, tags: dict[str, str]) -> dict[str, Any]:
        resp = self._call(
            "iam", "create_user", UserName=name, Tags=self._tag_list(tags),
        )
        return resp["User"]

    def tag_user(self, name: str, tags: dict[str, str]) -> None:
        self._call("iam", "tag_user", UserName=name, Tags=self._tag_list(tags))

    def put_user_policy(
        self, name: str, policy_name: str, document: dict[str, Any],
    ) -> None:
        self._call(
            "iam", "put_user_policy",
            UserName=name,
            PolicyName=policy_name,
            PolicyDocument=json.dumps(document, sort_keys=True),
        )

    def get_user_policy(self, name: str, policy_name: str) -> dict[str, Any]:
        resp = self._call(
            "iam", "get_user_policy", UserName=name, PolicyName=policy_name,
        )
        document = resp["PolicyDocument"]
        # boto3 decodes the document, but older botocore returns it URL-encoded
        if isinstance(document, str):
            document = json.loads(urllib.parse.unquote(document))
        return document

    def list_access_keys(self, name: str) -> list[AccessKey]:
        resp = self._call("iam", "list_access_keys", UserName=name)
        return [
            AccessKey(
                key_id=meta["AccessKeyId"],
                status=AccessKeyStatus(meta["Status"]),
                created_at=self._as_datetime(meta["CreateDate"]),
            )
            for meta in resp.get("AccessKeyMetadata", [])
        ]

    def create_access_key(self, name: str) -> AccessKey:
        key = self._call("iam", "create_access_key", UserName=name)["AccessKey"]
        return AccessKey(
            key_id=key["AccessKeyId"],
            status=AccessKeyStatus(key["Status"]),
            created_at=self._as_datetime(key["CreateDate"]),
            secret=key["SecretAccessKey"],
        )

    def update_access_key_status(
        self, name: str, key_id: str, status: AccessKeyStatus,
    ) -> None:
        self._call(
            "iam", "update_access_key",
            UserName=name, AccessKeyId=key_id, Status=str(status),
        )

    def delete_access_key(self, name: str, key_id: str) -> None:
        self._call("iam", "delete_access_key", UserName=name, AccessKeyId=key_id)

    def with_access_key(self, key: AccessKey) -> Boto3IamClient:
        if key.secret is None:
            raise RotationError(f"Access key {key.key_id} has no secret available")
        return Boto3IamClient(
            region=self._region,
            endpoint_url=self._endpoint_url,
            access_key_id=key.key_id,
            secret_access_key=key.secret.get_secret_value(),
        )

    # --- Private: session/client setup ---

    def _get_boto3_session(self) -> Any:
        """Build a boto3 Session from explicit keys, profile, or the default chain."""
        import boto3

        kwargs: dict[str, Any] = {}
        if self._region:
            kwargs["region_name"] = self._region
        if self._access_key_id:
            kwargs["aws_access_key_id"] = self._access_key_id
            kwargs["aws_secret_access_key"] = self._secret_access_key
        elif self._profile:
            kwargs["profile_name"] = self._profile
        return boto3.Session(**kwargs)

    def _get_client(self, service: str) -> Any:
        """Get (and cache) a boto3 service client."""
        if service not in self._clients:
            session = self._get_boto3_session()
            kwargs: dict[str, Any] = {}
            if self._endpoint_url:
                kwargs["endpoint_url"] = self._endpoint_url
            self._clients[service] = session.client(service, **kwargs)
        return self._clients[service]

    def _call(self, service: str, method: str, **kwargs: Any) -> dict[str, Any]:
        try:
            client = self._get_client(service)
            return getattr(client, method)(**kwargs)
        except RotationError:
            raise
        except Exception as exc:
            raise translate_aws_error(exc, f"{service}:{method}") from exc

    # --- Private: helpers ---

    @staticmethod
    def _tag_list(tags: dict[str, str]) -> list[dict[str, str]]:
        return [{"Key": k, "Value": v} for k, v in sorted(tags.items())]

    @staticmethod
    def _as_datetime(value: Any) -> datetime:
        if isinstance(value, datetime):
            return value if value.tzinfo else value.replace(tzinfo=UTC)
        return datetime.fromisoformat(str(value))
