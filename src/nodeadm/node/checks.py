"""Environment checks run before and after a hybrid node is configured.

Every check raises a :class:`~nodeadm.validation.remediation.RemediableError`
on failure so the runner and the ``debug`` command can show the fix.
"""
from __future__ import annotations

import logging
import re
import socket
from collections.abc import Callable, Mapping
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

import boto3
import botocore.session
from botocore.exceptions import BotoCoreError, ClientError
from kubernetes.client.rest import ApiException

from ..artifact import retry_with_delay
from ..nodeconfig import NodeConfig
from ..providers.eks import Cluster, validate_remote_network_config
from ..system.network import Network, validate_interface_mtu
from ..validation.remediation import new_remediable_error, with_remediation
from .ip import get_node_ip, validate_ip_in_remote_networks

LOGGER = logging.getLogger(__name__)

HTTPS_PORT = 443
CONNECT_TIMEOUT = 5.0
MAX_KUBELET_SKEW = 3
SSM_CREDENTIALS_FILE = Path("/root/.aws/credentials")

TROUBLESHOOTING_URL = "https://docs.aws.amazon.com/eks/latest/userguide/hybrid-nodes-troubleshooting.html"
VERSION_SKEW_REMEDIATION = (
    "Ensure the hybrid node's Kubernetes version follows the version skew policy of the EKS cluster. "
    "Update the node's Kubernetes components using 'nodeadm upgrade' or reinstall with a compatible "
    "version. https://kubernetes.io/releases/version-skew-policy/#kubelet"
)

Connector = Callable[..., Any]
Resolver = Callable[..., list]

_MINOR = re.compile(r"v?(\d+)\.(\d+)")


# ----------------------------------------------------------------------
# Endpoints and reachability
# ----------------------------------------------------------------------
def endpoint_host(endpoint: str) -> str:
    """Return the host part of an API server endpoint URL."""
    parsed = urlparse(endpoint if "://" in endpoint else f"https://{endpoint}")
    return parsed.hostname or ""


def ssm_endpoint(region: str) -> str:
    return f"ssm.{region}.amazonaws.com"


def rolesanywhere_endpoint(region: str) -> str:
    return f"rolesanywhere.{region}.amazonaws.com"


def validate_endpoint_resolution(endpoint: str, *, resolver: Resolver = socket.getaddrinfo) -> None:
    """Require the API server hostname to resolve through DNS."""
    host = endpoint_host(endpoint)
    if not host:
        raise new_remediable_error(
            f"invalid kubernetes API server endpoint {endpoint!r}",
            "Set spec.cluster.apiServerEndpoint to the https URL of the EKS cluster endpoint.",
        )
    try:
        resolver(host, HTTPS_PORT)
    except (OSError, UnicodeError) as exc:
        raise new_remediable_error(
            f"resolving kubernetes API server endpoint {host}: {exc}",
            "Ensure the node's DNS servers can resolve the EKS cluster endpoint. For private "
            "endpoints, forward the cluster's Route 53 zone to the on-premises resolvers.",
        ) from exc


def check_tcp_connection(
    host: str,
    port: int = HTTPS_PORT,
    *,
    timeout: float = CONNECT_TIMEOUT,
    connect: Connector = socket.create_connection,
) -> None:
    """Open and close a TCP connection to ``host:port``."""
    LOGGER.debug("Checking TCP connectivity to %s:%s", host, port)
    try:
        conn = connect((host, port), timeout=timeout)
    except OSError as exc:
        raise new_remediable_error(
            f"connecting to {host}:{port}: {exc}",
            f"Ensure the node can reach {host} on port {port}. Check routes, firewalls and proxy "
            f"settings between the node and the endpoint. See {TROUBLESHOOTING_URL}",
        ) from exc
    conn.close()


def validate_k8s_endpoint_network(cfg: NodeConfig, *, connect: Connector = socket.create_connection) -> None:
    check_tcp_connection(endpoint_host(cfg.cluster.api_server_endpoint), connect=connect)


def validate_ssm_api_network(cfg: NodeConfig, *, connect: Connector = socket.create_connection) -> None:
    if cfg.is_ssm():
        check_tcp_connection(ssm_endpoint(cfg.cluster.region), connect=connect)


def validate_iam_ra_api_network(cfg: NodeConfig, *, connect: Connector = socket.create_connection) -> None:
    if cfg.is_iam_roles_anywhere():
        check_tcp_connection(rolesanywhere_endpoint(cfg.cluster.region), connect=connect)


_PROXY_VARS = ("HTTPS_PROXY", "https_proxy", "HTTP_PROXY", "http_proxy")


def validate_proxy(env: Mapping[str, str], *, connect: Connector = socket.create_connection) -> None:
    """Check that a configured HTTP(S) proxy parses and accepts connections."""
    for name in _PROXY_VARS:
        value = env.get(name, "")
        if not value:
            continue
        parsed = urlparse(value if "://" in value else f"http://{value}")
        if not parsed.hostname:
            raise new_remediable_error(
                f"invalid proxy URL in {name}: {value!r}",
                f"Set {name} to a URL such as http://proxy.example.com:3128.",
            )
        try:
            port = parsed.port or (443 if parsed.scheme == "https" else 80)
        except ValueError as exc:
            raise new_remediable_error(
                f"invalid proxy port in {name}: {value!r}",
                f"Set {name} to a URL such as http://proxy.example.com:3128.",
            ) from exc
        check_tcp_connection(parsed.hostname, port, connect=connect)
        return


# ----------------------------------------------------------------------
# AWS credentials
# ----------------------------------------------------------------------
def aws_session(cfg: NodeConfig) -> boto3.Session:
    """Return a session using the node's hybrid credentials."""
    core = botocore.session.get_session()
    iam_ra = cfg.hybrid.iam_roles_anywhere
    if iam_ra is not None:
        core.set_config_variable("config_file", iam_ra.aws_config_path)
    else:
        core.set_config_variable("credentials_file", str(SSM_CREDENTIALS_FILE))
    return boto3.Session(botocore_session=core, profile_name="default", region_name=cfg.cluster.region)


def wait_for_credentials(path: Path = SSM_CREDENTIALS_FILE, *, timeout: float = 60.0, delay: float = 2.0) -> None:
    """Block until the SSM agent has written the shared credentials file."""

    def _exists() -> None:
        if not path.exists():
            raise FileNotFoundError(f"aws credentials file {path} not found")

    try:
        retry_with_delay(_exists, delay=delay, timeout=timeout)
    except FileNotFoundError as exc:
        raise new_remediable_error(
            str(exc),
            "Ensure the SSM agent is running and the node registered with the hybrid activation. "
            "Check `journalctl -u amazon-ssm-agent` for registration errors.",
        ) from exc


def validate_aws_credentials(cfg: NodeConfig, *, session_factory: Callable[[NodeConfig], Any] = aws_session) -> str:
    """Call STS ``GetCallerIdentity`` and return the caller ARN."""
    try:
        identity = session_factory(cfg).client("sts").get_caller_identity()
    except (BotoCoreError, ClientError) as exc:
        raise new_remediable_error(
            f"validating aws credentials: {exc}",
            "Ensure the node's credential provider is configured correctly and can reach the AWS "
            f"STS endpoint. See {TROUBLESHOOTING_URL}",
        ) from exc
    arn = str(identity.get("Arn", ""))
    LOGGER.info("AWS credentials resolve to %s", arn)
    return arn


# ----------------------------------------------------------------------
# Kubernetes
# ----------------------------------------------------------------------
def validate_k8s_authentication(api: Any) -> None:
    """Check the kubelet identity is accepted by the API server."""
    try:
        api.list_node(limit=1)
    except ApiException as exc:
        if exc.status in (401, 403):
            raise new_remediable_error(
                f"kubelet credentials rejected by the API server (HTTP {exc.status})",
                "Ensure the node's IAM role has an EKS access entry of type HYBRID_LINUX, or is "
                "mapped in the aws-auth ConfigMap.",
            ) from exc
        raise with_remediation(
            exc, f"Ensure the node can reach the Kubernetes API server. See {TROUBLESHOOTING_URL}"
        ) from exc


def node_is_ready(node: Any) -> bool:
    for condition in getattr(node.status, "conditions", None) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def validate_node_inactive(api: Any, node_name: str) -> None:
    """Refuse to join when a Ready node with the same name already exists."""
    if not node_name:
        return
    try:
        node = api.read_node(node_name)
    except ApiException as exc:
        if exc.status == 404:
            return
        raise
    if node_is_ready(node):
        raise new_remediable_error(
            f"node {node_name} is already registered and active in the cluster",
            "Another host is using this node name. Remove the stale node with "
            f"`kubectl delete node {node_name}` or choose a different node name.",
        )


def minor_version(version: str) -> tuple[int, int]:
    match = _MINOR.search(version)
    if match is None:
        raise ValueError(f"cannot parse kubernetes version {version!r}")
    return int(match.group(1)), int(match.group(2))


def validate_kubelet_version_skew(kubelet_version: str, server_version: str) -> None:
    """Kubelet may trail the API server by up to three minors and never lead it."""
    try:
        kubelet = minor_version(kubelet_version)
        server = minor_version(server_version)
    except ValueError as exc:
        raise with_remediation(exc, VERSION_SKEW_REMEDIATION) from exc
    if kubelet[0] != server[0] or not server[1] - MAX_KUBELET_SKEW <= kubelet[1] <= server[1]:
        raise new_remediable_error(
            f"kubelet version {kubelet_version} is not compatible with API server version "
            f"{server_version}",
            VERSION_SKEW_REMEDIATION,
        )


# ----------------------------------------------------------------------
# Network interface
# ----------------------------------------------------------------------
def validate_network_interface(cfg: NodeConfig, cluster: Cluster, network: Network) -> str:
    """Validate the node IP against the remote networks and its interface MTU.

    Returns the resolved node IP.
    """
    try:
        validate_remote_network_config(cluster)
        if not cluster.remote_node_cidrs:
            raise ValueError("eks cluster has no remote node networks configured")
    except (ValueError, RuntimeError) as exc:
        raise with_remediation(
            exc,
            "Ensure the EKS cluster has remote network configuration set up properly. The cluster "
            "must have remote node networks configured to validate hybrid node connectivity.",
        ) from exc

    iam_node_name = cfg.status.node_name if cfg.is_iam_roles_anywhere() else ""
    try:
        node_ip = get_node_ip(cfg.kubelet.flags, iam_node_name, network)
    except RuntimeError as exc:
        raise with_remediation(
            exc,
            "Ensure the node has a valid network interface configuration. Check that the node can "
            f"resolve its hostname or has a valid --node-ip flag set. See {TROUBLESHOOTING_URL}",
        ) from exc

    try:
        validate_ip_in_remote_networks(node_ip, cluster.remote_node_networks)
    except RuntimeError as exc:
        raise with_remediation(
            exc,
            "Ensure the node IP is within the configured remote network CIDR blocks. Update the "
            "remote network configuration in the EKS cluster or adjust the node's network "
            f"configuration. See {TROUBLESHOOTING_URL}",
        ) from exc

    try:
        validate_interface_mtu(network.interfaces(), node_ip)
    except RuntimeError as exc:
        raise with_remediation(
            exc,
            "Ensure the network interface with the node IP has a valid MTU value. MTU should be "
            "<= 1500 (standard Ethernet) or between 8000-9001 (jumbo frames). Update the network "
            "interface configuration to use acceptable MTU values. See "
            "https://docs.aws.amazon.com/vpc/latest/tgw/transit-gateway-quotas.html#mtu-quotas",
        ) from exc
    return node_ip


__all__ = [
    "aws_session",
    "check_tcp_connection",
    "endpoint_host",
    "minor_version",
    "node_is_ready",
    "rolesanywhere_endpoint",
    "ssm_endpoint",
    "validate_aws_credentials",
    "validate_endpoint_resolution",
    "validate_iam_ra_api_network",
    "validate_k8s_authentication",
    "validate_k8s_endpoint_network",
    "validate_kubelet_version_skew",
    "validate_network_interface",
    "validate_node_inactive",
    "validate_proxy",
    "validate_ssm_api_network",
    "wait_for_credentials",
]
