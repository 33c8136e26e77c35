"""Fill missing cluster details in a NodeConfig from ``DescribeCluster``."""
from __future__ import annotations

import base64
import binascii
import logging

from ..nodeconfig import NodeConfig
from ..providers.eks import CLUSTER_STATUS_ACTIVE, Cluster, ClusterError, ClusterReader

LOGGER = logging.getLogger(__name__)


def needs_cluster_details(cfg: NodeConfig) -> bool:
    cluster = cfg.cluster
    return not cluster.api_server_endpoint or not cluster.certificate_authority or not cluster.cidr


def apply_cluster_details(cfg: NodeConfig, cluster: Cluster) -> None:
    """Copy each empty field of ``cfg.cluster`` from *cluster*."""
    if cluster.status != CLUSTER_STATUS_ACTIVE:
        raise ClusterError("eks cluster is not active")
    target = cfg.cluster
    if not target.api_server_endpoint:
        target.api_server_endpoint = cluster.endpoint
    if not target.certificate_authority:
        try:
            target.certificate_authority = base64.b64decode(cluster.certificate_authority_data, validate=True)
        except (binascii.Error, ValueError) as exc:
            raise ClusterError(f"decoding cluster certificate authority: {exc}") from exc
    if not target.cidr:
        target.cidr = cluster.service_ipv4_cidr


def enrich(cfg: NodeConfig, reader: ClusterReader) -> None:
    """Populate endpoint, CA and service CIDR when any of them is missing."""
    LOGGER.info("Enriching configuration...")
    if not needs_cluster_details(cfg):
        return
    apply_cluster_details(cfg, reader.read(cfg.cluster.name))
    LOGGER.info(
        "Cluster details populated: endpoint=%s cidr=%s",
        cfg.cluster.api_server_endpoint,
        cfg.cluster.cidr,
    )


__all__ = ["apply_cluster_details", "enrich", "needs_cluster_details"]
