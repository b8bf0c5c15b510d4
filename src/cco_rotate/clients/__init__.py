"""Clients for the two systems a rotation coordinates: AWS IAM and the cluster."""

from cco_rotate.clients.cluster import ClusterClient
from cco_rotate.clients.iam import IamClient

__all__ = [
    "ClusterClient",
    "IamClient",
]
