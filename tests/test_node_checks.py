"""Tests for hybrid node environment checks, cluster lookup and enrichment."""
from __future__ import annotations

import base64

import pytest
from botocore.exceptions import ClientError
from kubernetes.client import V1Node, V1NodeCondition, V1NodeStatus
from kubernetes.client.rest import ApiException

from nodeadm.node import checks
from nodeadm.node.enricher import enrich, needs_cluster_details
from nodeadm.nodeconfig import HybridOptions, NodeConfig, SSMOptions
from nodeadm.providers.eks import Cluster, ClusterError, ClusterReader
from nodeadm.system.network import Interface
from nodeadm.validation.remediation import RemediableError, remediation

DESCRIBE_CLUSTER = {
    "cluster": {
        "name": "hybrid",
        "status": "ACTIVE",
        "endpoint": "https://ABC.gr7.us-west-2.eks.amazonaws.com",
        "certificateAuthority": {"data": base64.b64encode(b"ca-pem").decode()},
        "kubernetesNetworkConfig": {"serviceIpv4Cidr": "172.20.0.0/16"},
        "version": "1.31",
        "remoteNetworkConfig": {"remoteNodeNetworks": [{"cidrs": ["10.0.0.0/24"]}]},
    }
}


class FakeEks:
    def __init__(self, response: dict | None = None, error: Exception | None = None) -> None:
        self.response = response or DESCRIBE_CLUSTER
        self.error = error
        self.calls = 0

    def describe_cluster(self, name: str) -> dict:
        self.calls += 1
        if self.error is not None:
            raise self.error
        return self.response


class FakeConnection:
    closed = False

    def close(self) -> None:
        self.closed = True


def _config(*flags: str) -> NodeConfig:
    cfg = NodeConfig()
    cfg.kubelet.flags = list(flags)
    cfg.cluster.name = "hybrid"
    cfg.cluster.region = "us-west-2"
    cfg.hybrid = HybridOptions(ssm=SSMOptions("code", "id"))
    return cfg


class FakeNetwork:
    def __init__(self, interfaces: list[Interface], dns: dict[str, list[str]] | None = None) -> None:
        self._interfaces = interfaces
        self._dns = dns or {}

    def interfaces(self) -> list[Interface]:
        return self._interfaces

    def default_route_ipv4(self) -> str:
        return self._interfaces[0].addresses[0]

    def lookup_ip(self, name: str) -> list[str]:
        return self._dns.get(name, [])


# ----------------------------------------------------------------------
# Cluster lookup and enrichment
# ----------------------------------------------------------------------
def test_cluster_reader_memoises_describe_cluster() -> None:
    client = FakeEks()
    reader = ClusterReader("us-west-2", client_factory=lambda region: client)

    first = reader.read("hybrid")
    second = reader.read("hybrid")

    assert first is second
    assert client.calls == 1
    assert first.remote_node_cidrs == ["10.0.0.0/24"]


def test_cluster_reader_adds_remediation_on_api_error() -> None:
    error = ClientError({"Error": {"Code": "AccessDeniedException", "Message": "denied"}}, "DescribeCluster")
    reader = ClusterReader("us-west-2", client_factory=lambda region: FakeEks(error=error))

    with pytest.raises(RemediableError) as excinfo:
        reader.read("hybrid")

    assert "DescribeCluster" in remediation(excinfo.value)


def test_cluster_without_remote_network_config_is_rejected() -> None:
    response = {"cluster": {**DESCRIBE_CLUSTER["cluster"], "remoteNetworkConfig": None}}
    reader = ClusterReader("us-west-2", client_factory=lambda region: FakeEks(response))

    with pytest.raises(ClusterError, match="remoteNetworkConfig"):
        reader.read("hybrid")


def test_enrich_fills_only_missing_fields() -> None:
    cfg = _config()
    cfg.cluster.cidr = "10.100.0.0/16"
    reader = ClusterReader("us-west-2", client_factory=lambda region: FakeEks())

    assert needs_cluster_details(cfg)
    enrich(cfg, reader)

    assert cfg.cluster.api_server_endpoint == "https://ABC.gr7.us-west-2.eks.amazonaws.com"
    assert cfg.cluster.certificate_authority == b"ca-pem"
    assert cfg.cluster.cidr == "10.100.0.0/16"
    assert not needs_cluster_details(cfg)


def test_enrich_skips_describe_when_complete() -> None:
    cfg = _config()
    cfg.cluster.api_server_endpoint = "https://example"
    cfg.cluster.certificate_authority = b"ca"
    cfg.cluster.cidr = "172.20.0.0/16"
    client = FakeEks()

    enrich(cfg, ClusterReader("us-west-2", client_factory=lambda region: client))

    assert client.calls == 0


def test_enrich_requires_active_cluster() -> None:
    response = {"cluster": {**DESCRIBE_CLUSTER["cluster"], "status": "CREATING"}}

    with pytest.raises(ClusterError, match="not active"):
        enrich(_config(), ClusterReader("us-west-2", client_factory=lambda region: FakeEks(response)))


# ----------------------------------------------------------------------
# Connectivity
# ----------------------------------------------------------------------
def test_endpoint_host() -> None:
    assert checks.endpoint_host("https://abc.eks.amazonaws.com:443/") == "abc.eks.amazonaws.com"
    assert checks.endpoint_host("abc.eks.amazonaws.com") == "abc.eks.amazonaws.com"


def test_tcp_connection_success_closes_socket() -> None:
    conn = FakeConnection()
    seen: list[tuple[str, int]] = []

    def connect(address: tuple[str, int], timeout: float) -> FakeConnection:
        seen.append(address)
        return conn

    checks.check_tcp_connection("ssm.us-west-2.amazonaws.com", connect=connect)

    assert seen == [("ssm.us-west-2.amazonaws.com", 443)]
    assert conn.closed


def test_tcp_connection_failure_is_remediable() -> None:
    def refuse(address: tuple[str, int], timeout: float) -> FakeConnection:
        raise ConnectionRefusedError("connection refused")

    with pytest.raises(RemediableError, match="connecting to rolesanywhere.us-west-2.amazonaws.com:443"):
        checks.check_tcp_connection(checks.rolesanywhere_endpoint("us-west-2"), connect=refuse)


def test_provider_specific_network_checks() -> None:
    """Only the configured credential provider's endpoint is probed."""
    hosts: list[str] = []

    def connect(address: tuple[str, int], timeout: float) -> FakeConnection:
        hosts.append(address[0])
        return FakeConnection()

    cfg = _config()
    checks.validate_ssm_api_network(cfg, connect=connect)
    checks.validate_iam_ra_api_network(cfg, connect=connect)

    assert hosts == ["ssm.us-west-2.amazonaws.com"]


def test_endpoint_resolution_failure() -> None:
    def fail(host: str, port: int) -> list:
        raise OSError("Name or service not known")

    with pytest.raises(RemediableError, match="resolving kubernetes API server endpoint"):
        checks.validate_endpoint_resolution("https://abc.eks.amazonaws.com", resolver=fail)


def test_proxy_check_uses_first_configured_proxy() -> None:
    hosts: list[tuple[str, int]] = []

    def connect(address: tuple[str, int], timeout: float) -> FakeConnection:
        hosts.append(address)
        return FakeConnection()

    checks.validate_proxy({"HTTPS_PROXY": "http://proxy.corp:3128", "HTTP_PROXY": "other:80"}, connect=connect)
    checks.validate_proxy({}, connect=connect)

    assert hosts == [("proxy.corp", 3128)]


def test_proxy_with_bad_port() -> None:
    with pytest.raises(RemediableError, match="invalid proxy port"):
        checks.validate_proxy({"https_proxy": "http://proxy.corp:notaport"})


# ----------------------------------------------------------------------
# Credentials and Kubernetes
# ----------------------------------------------------------------------
class FakeSts:
    def __init__(self, error: Exception | None = None) -> None:
        self.error = error

    def get_caller_identity(self) -> dict:
        if self.error is not None:
            raise self.error
        return {"Arn": "arn:aws:sts::123456789012:assumed-role/hybrid/mi-0abc"}


class FakeSession:
    def __init__(self, sts: FakeSts) -> None:
        self.sts = sts

    def client(self, service: str, **kwargs: object) -> FakeSts:
        assert service == "sts"
        return self.sts


def test_validate_aws_credentials_returns_arn() -> None:
    arn = checks.validate_aws_credentials(_config(), session_factory=lambda cfg: FakeSession(FakeSts()))

    assert arn.endswith("mi-0abc")


def test_validate_aws_credentials_failure() -> None:
    error = ClientError({"Error": {"Code": "ExpiredToken", "Message": "expired"}}, "GetCallerIdentity")

    with pytest.raises(RemediableError, match="validating aws credentials"):
        checks.validate_aws_credentials(_config(), session_factory=lambda cfg: FakeSession(FakeSts(error)))


def test_wait_for_credentials(tmp_path) -> None:
    path = tmp_path / "credentials"

    with pytest.raises(RemediableError, match="not found"):
        checks.wait_for_credentials(path, timeout=0, delay=0)

    path.write_text("[default]\n", encoding="utf-8")
    checks.wait_for_credentials(path, timeout=0, delay=0)


class FakeCoreV1:
    def __init__(self, *, error: ApiException | None = None, node: V1Node | None = None) -> None:
        self.error = error
        self.node = node

    def list_node(self, limit: int) -> None:
        if self.error is not None:
            raise self.error

    def read_node(self, name: str) -> V1Node:
        if self.error is not None:
            raise self.error
        assert self.node is not None
        return self.node


def test_k8s_authentication_rejected() -> None:
    with pytest.raises(RemediableError, match="HTTP 401"):
        checks.validate_k8s_authentication(FakeCoreV1(error=ApiException(status=401, reason="Unauthorized")))
    checks.validate_k8s_authentication(FakeCoreV1())


def _node(ready: bool) -> V1Node:
    status = "True" if ready else "False"
    return V1Node(status=V1NodeStatus(conditions=[V1NodeCondition(type="Ready", status=status)]))


def test_node_inactive_check() -> None:
    checks.validate_node_inactive(FakeCoreV1(error=ApiException(status=404, reason="Not Found")), "mi-0abc")
    checks.validate_node_inactive(FakeCoreV1(node=_node(ready=False)), "mi-0abc")

    with pytest.raises(RemediableError, match="already registered and active"):
        checks.validate_node_inactive(FakeCoreV1(node=_node(ready=True)), "mi-0abc")


@pytest.mark.parametrize(
    ("kubelet", "server", "ok"),
    [
        ("1.31.2", "1.31", True),
        ("1.28.0", "v1.31.4-eks-1234", True),
        ("1.27.9", "1.31", False),
        ("1.32.0", "1.31", False),
        ("garbage", "1.31", False),
    ],
)
def test_kubelet_version_skew(kubelet: str, server: str, ok: bool) -> None:
    if ok:
        checks.validate_kubelet_version_skew(kubelet, server)
        return
    with pytest.raises(RemediableError) as excinfo:
        checks.validate_kubelet_version_skew(kubelet, server)
    assert "version skew policy" in remediation(excinfo.value)


# ----------------------------------------------------------------------
# Network interface
# ----------------------------------------------------------------------
def _cluster(networks: tuple[tuple[str, ...], ...] = (("10.0.0.0/24",),), *, remote: bool = True) -> Cluster:
    return Cluster(name="hybrid", has_remote_network_config=remote, remote_node_networks=networks)


def test_network_interface_returns_node_ip() -> None:
    network = FakeNetwork([Interface("eth0", 1500, ("10.0.0.3",))])

    assert checks.validate_network_interface(_config("--node-ip=10.0.0.3"), _cluster(), network) == "10.0.0.3"


def test_network_interface_rejects_jumbo_mismatch() -> None:
    network = FakeNetwork([Interface("eth0", 4000, ("10.0.0.3",))])

    with pytest.raises(RemediableError) as excinfo:
        checks.validate_network_interface(_config("--node-ip=10.0.0.3"), _cluster(), network)

    assert "MTU" in remediation(excinfo.value)


def test_network_interface_requires_remote_networks() -> None:
    network = FakeNetwork([Interface("eth0", 1500, ("10.0.0.3",))])

    with pytest.raises(RemediableError, match="no remote node networks"):
        checks.validate_network_interface(_config(), _cluster(()), network)
    with pytest.raises(RemediableError, match="remoteNetworkConfig"):
        checks.validate_network_interface(_config(), _cluster(remote=False), network)


def test_network_interface_outside_remote_cidrs() -> None:
    network = FakeNetwork([Interface("eth0", 1500, ("192.1.0.20",))])

    with pytest.raises(RemediableError, match="not in any of the remote network CIDR blocks"):
        checks.validate_network_interface(_config("--node-ip=192.1.0.20"), _cluster(), network)
