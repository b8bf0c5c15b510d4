"""Tests for cluster identity resolution and principal naming."""

from __future__ import annotations

import pytest

from cco_rotate.errors import ConfigurationError
from cco_rotate.identity import (
    MAX_PRINCIPAL_NAME,
    IdentityResolver,
    derive_principal_name,
)
from cco_rotate.models import ClusterIdentity, InfrastructureMetadata
from conftest import ACCOUNT_ID, CLUSTER_ID, INFRA_NAME


class TestDerivePrincipalName:
    def test_prefix_plus_cluster_id(self, identity) -> None:
        assert derive_principal_name(identity) == f"cco-root-{CLUSTER_ID}"

    def test_pure_function_of_cluster_id(self, identity) -> None:
        renamed = identity.model_copy(update={"cluster_name": "other", "region": "eu-west-1"})
        assert derive_principal_name(renamed) == derive_principal_name(identity)

    def test_custom_prefix(self, identity) -> None:
        assert derive_principal_name(identity, "rotor-").startswith("rotor-")

    def test_sanitizes_invalid_characters(self) -> None:
        ident = ClusterIdentity(
            cluster_id="abc/def ghi", cluster_name="x", account_id="1", region="r",
        )
        assert derive_principal_name(ident) == "cco-root-abc-def-ghi"

    def test_truncates_long_ids_with_digest(self) -> None:
        long_a = ClusterIdentity(
            cluster_id="a" * 80 + "1", cluster_name="x", account_id="1", region="r",
        )
        long_b = long_a.model_copy(update={"cluster_id": "a" * 80 + "2"})
        name_a = derive_principal_name(long_a)
        name_b = derive_principal_name(long_b)
        assert len(name_a) == MAX_PRINCIPAL_NAME
        assert name_a != name_b
        assert derive_principal_name(long_a) == name_a

    def test_empty_cluster_id_rejected(self) -> None:
        ident = ClusterIdentity(cluster_id="", cluster_name="x", account_id="1", region="r")
        with pytest.raises(ConfigurationError):
            derive_principal_name(ident)


class TestIdentityResolver:
    def test_resolves(self, iam, cluster) -> None:
        identity = IdentityResolver(cluster, iam).resolve()
        assert identity.cluster_id == CLUSTER_ID
        assert identity.cluster_name == INFRA_NAME
        assert identity.account_id == ACCOUNT_ID
        assert identity.region == "us-east-1"
        assert identity.platform == "AWS"

    def test_cluster_name_override(self, iam, cluster) -> None:
        identity = IdentityResolver(cluster, iam, cluster_name="prod").resolve()
        assert identity.cluster_name == "prod"
        assert identity.cluster_id == CLUSTER_ID

    def test_wrong_platform_fails_fast(self, iam, cluster) -> None:
        cluster.infrastructure = InfrastructureMetadata(
            cluster_id=CLUSTER_ID, infrastructure_name=INFRA_NAME, platform="GCP",
        )
        with pytest.raises(ConfigurationError, match="GCP"):
            IdentityResolver(cluster, iam).resolve()
        assert len(cluster.called("get_infrastructure")) == 1
        assert iam.called("get_caller_identity") == []

    def test_missing_cluster_id(self, iam, cluster) -> None:
        cluster.infrastructure = InfrastructureMetadata(
            cluster_id="", infrastructure_name=INFRA_NAME, platform="AWS",
        )
        with pytest.raises(ConfigurationError, match="cluster ID"):
            IdentityResolver(cluster, iam).resolve()

    def test_identity_is_immutable(self, iam, cluster) -> None:
        identity = IdentityResolver(cluster, iam).resolve()
        with pytest.raises(ValueError):
            identity.cluster_id = "other"
