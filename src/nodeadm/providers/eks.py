"""EKS ``DescribeCluster`` access for hybrid nodes.

Only the fields hybrid nodes consume are kept: endpoint, CA data, service
CIDR, Kubernetes version, status and the remote node networks.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from typing import Any

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from ..validation.remediation import with_remediation

LOGGER = logging.getLogger(__name__)

CLUSTER_STATUS_ACTIVE = "ACTIVE"
DESCRIBE_CLUSTER_REMEDIATION = (
    "Ensure the node has access and permissions to call DescribeCluster EKS API. "
    "Check AWS credentials and IAM permissions."
)


class ClusterError(RuntimeError):
    """Raised when cluster metadata is unavailable or unusable."""


@dataclass(frozen=True)
class Cluster:
    """The subset of ``DescribeCluster`` output nodeadm uses."""

    name: str
    status: str = ""
    endpoint: str = ""
    certificate_authority_data: str = ""
    service_ipv4_cidr: str = ""
    kubernetes_version: str = ""
    has_remote_network_config: bool = False
    remote_node_networks: tuple[tuple[str, ...], ...] = ()

    @property
    def remote_node_cidrs(self) -> list[str]:
        """Every remote node CIDR, flattened in declaration order."""
        return [cidr for network in self.remote_node_networks for cidr in network]

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]) -> Cluster:
        """Build from the ``cluster`` member of a DescribeCluster response."""
        remote = raw.get("remoteNetworkConfig")
        networks: list[tuple[str, ...]] = []
        if isinstance(remote, Mapping):
            for network in remote.get("remoteNodeNetworks") or []:
                cidrs = tuple(str(cidr) for cidr in network.get("cidrs") or [] if cidr)
                networks.append(cidrs)
        return cls(
            name=str(raw.get("name", "")),
            status=str(raw.get("status", "")),
            endpoint=str(raw.get("endpoint") or ""),
            certificate_authority_data=str((raw.get("certificateAuthority") or {}).get("data") or ""),
            service_ipv4_cidr=str((raw.get("kubernetesNetworkConfig") or {}).get("serviceIpv4Cidr") or ""),
            kubernetes_version=str(raw.get("version") or ""),
            has_remote_network_config=isinstance(remote, Mapping),
            remote_node_networks=tuple(networks),
        )


def eks_client(region: str, *, max_attempts: int = 5) -> Any:
    """Return a boto3 EKS client for *region* with standard retries."""
    return boto3.client(
        "eks",
        region_name=region,
        config=BotoConfig(retries={"mode": "standard", "max_attempts": max_attempts}),
    )


def describe_cluster(client: Any, name: str) -> Cluster:
    """Call ``DescribeCluster`` for *name*."""
    try:
        response = client.describe_cluster(name=name)
    except (BotoCoreError, ClientError) as exc:
        raise ClusterError(f"EKS DescribeCluster call failed: {exc}") from exc
    return Cluster.from_api(response.get("cluster") or {})


def validate_remote_network_config(cluster: Cluster) -> None:
    """Require a remote network configuration on the cluster."""
    if not cluster.has_remote_network_config:
        raise ClusterError(
            "eks cluster does not have remoteNetworkConfig enabled, which is required for Hybrid Nodes"
        )


@dataclass
class ClusterReader:
    """Memoised cluster lookup; ``DescribeCluster`` runs at most once."""

    region: str
    client_factory: Callable[[str], Any] = eks_client
    _cache: dict[str, Cluster] = field(default_factory=dict, repr=False)

    def read(self, name: str) -> Cluster:
        """Return the hybrid-enabled cluster *name*."""
        if name in self._cache:
            return self._cache[name]
        LOGGER.debug("Describing EKS cluster %s in %s", name, self.region)
        try:
            cluster = describe_cluster(self.client_factory(self.region), name)
        except ClusterError as exc:
            raise with_remediation(exc, DESCRIBE_CLUSTER_REMEDIATION) from exc
        validate_remote_network_config(cluster)
        self._cache[name] = cluster
        return cluster


__all__ = [
    "CLUSTER_STATUS_ACTIVE",
    "Cluster",
    "ClusterError",
    "ClusterReader",
    "DESCRIBE_CLUSTER_REMEDIATION",
    "describe_cluster",
    "eks_client",
    "validate_remote_network_config",
]
