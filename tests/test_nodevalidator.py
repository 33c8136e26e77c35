"""Tests for post-init node validation: registration, CNI detection and readiness."""
from __future__ import annotations

import threading
from pathlib import Path

import pytest
from kubernetes.client import (
    V1Node,
    V1NodeAddress,
    V1NodeCondition,
    V1NodeSpec,
    V1NodeStatus,
    V1ObjectMeta,
    V1Taint,
)
from kubernetes.client.rest import ApiException

from nodeadm.nodevalidator import (
    CniDetector,
    CniType,
    Deadline,
    NodeValidationError,
    ValidationTimeoutError,
    execute_active_node_validator,
    poll,
)
from nodeadm.nodevalidator.cni import detect_from_node_condition, detect_from_taints
from nodeadm.nodevalidator.readiness import is_node_ready
from nodeadm.nodevalidator.registration import get_and_wait, kubelet_node_name


def _node(
    name: str = "mi-0123456789",
    *,
    ready: bool = True,
    internal_ip: str | None = "10.0.0.3",
    network_reason: str | None = "CiliumIsUp",
    taints: list[str] | None = None,
) -> V1Node:
    conditions = [V1NodeCondition(type="Ready", status="True" if ready else "False")]
    if network_reason is not None:
        conditions.append(V1NodeCondition(type="NetworkUnavailable", status="False", reason=network_reason))
    addresses = [V1NodeAddress(type="InternalIP", address=internal_ip)] if internal_ip else []
    return V1Node(
        metadata=V1ObjectMeta(name=name, uid="uid-1"),
        spec=V1NodeSpec(taints=[V1Taint(key=key, effect="NoSchedule") for key in taints or []]),
        status=V1NodeStatus(conditions=conditions, addresses=addresses),
    )


class FakeCoreV1:
    """Returns 404 for the first ``missing`` reads, then the queued nodes."""

    def __init__(self, nodes: list[V1Node], *, missing: int = 0) -> None:
        self.nodes = nodes
        self.missing = missing
        self.reads = 0

    def read_node(self, name: str) -> V1Node:
        self.reads += 1
        if self.reads <= self.missing:
            raise ApiException(status=404, reason="Not Found")
        index = min(self.reads - self.missing - 1, len(self.nodes) - 1)
        return self.nodes[index]


# ----------------------------------------------------------------------
# CNI detection
# ----------------------------------------------------------------------
def _dirs(tmp_path: Path) -> tuple[Path, Path]:
    bin_dir = tmp_path / "opt" / "cni" / "bin"
    conf_dir = tmp_path / "etc" / "cni" / "net.d"
    bin_dir.mkdir(parents=True)
    conf_dir.mkdir(parents=True)
    return bin_dir, conf_dir


def test_binaries_tier_prefers_cilium(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    (bin_dir / "calico").write_text("", encoding="utf-8")
    (bin_dir / "cilium-cni").write_text("", encoding="utf-8")
    api = FakeCoreV1([_node()])

    assert CniDetector(api, bin_dir=bin_dir, config_dir=conf_dir).detect("node") is CniType.CILIUM
    assert api.reads == 0


def test_config_tier_used_when_no_binaries(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    (conf_dir / "10-calico.conflist").write_text("{}", encoding="utf-8")

    detector = CniDetector(FakeCoreV1([_node()]), bin_dir=bin_dir, config_dir=conf_dir)

    assert detector.detect("node") is CniType.CALICO


def test_node_condition_then_taints(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    by_condition = FakeCoreV1([_node(network_reason="CalicoIsUp")])
    by_taint = FakeCoreV1([_node(network_reason=None, taints=["node.cilium.io/agent-not-ready"])])

    assert CniDetector(by_condition, bin_dir=bin_dir, config_dir=conf_dir).detect("n") is CniType.CALICO
    assert CniDetector(by_taint, bin_dir=bin_dir, config_dir=conf_dir).detect("n") is CniType.CILIUM


def test_no_cni_detected(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    api = FakeCoreV1([_node(network_reason="RouteCreated")])

    with pytest.raises(NodeValidationError, match="cni not detected"):
        CniDetector(api, bin_dir=bin_dir, config_dir=conf_dir).detect("n")


def test_cilium_wins_ties_within_a_tier(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    (conf_dir / "10-calico.conflist").write_text("{}", encoding="utf-8")
    (conf_dir / "05-cilium.conflist").write_text("{}", encoding="utf-8")
    both_taints = _node(taints=["projectcalico.org/not-ready", "node.cilium.io/agent-not-ready"])

    assert CniDetector(FakeCoreV1([_node()]), bin_dir=bin_dir, config_dir=conf_dir).detect("n") is CniType.CILIUM
    assert detect_from_taints(both_taints) is CniType.CILIUM


def test_condition_still_unavailable_is_not_detected() -> None:
    node = _node(network_reason=None)
    node.status.conditions.append(V1NodeCondition(type="NetworkUnavailable", status="True", reason="CiliumIsUp"))

    assert detect_from_node_condition(node) is CniType.NONE
    assert detect_from_taints(_node(taints=["projectcalico.org/not-ready"])) is CniType.CALICO


# ----------------------------------------------------------------------
# Readiness and registration
# ----------------------------------------------------------------------
@pytest.mark.parametrize(
    ("node", "ready"),
    [
        (_node(), True),
        (_node(internal_ip=None), False),
        (_node(ready=False), False),
        (_node(network_reason=None), True),
    ],
)
def test_is_node_ready(node: V1Node, ready: bool) -> None:
    assert is_node_ready(node) is ready


def test_get_and_wait_retries_until_ready() -> None:
    api = FakeCoreV1([_node(ready=False), _node(ready=True)], missing=1)

    node = get_and_wait(api, "n", is_node_ready, timeout=5, cancel=threading.Event(), interval=0)

    assert node.metadata.name == "mi-0123456789"
    assert api.reads == 3


def test_get_and_wait_raises_last_api_error_on_timeout() -> None:
    ticks = iter([0.0, 10.0])
    api = FakeCoreV1([_node()], missing=5)

    with pytest.raises(ApiException):
        get_and_wait(
            api, "n", is_node_ready, timeout=1, cancel=threading.Event(), interval=0, clock=lambda: next(ticks)
        )


def test_kubelet_node_name_prefers_hostname_override(tmp_path: Path) -> None:
    env = tmp_path / "environment"
    env.write_text("NODEADM_KUBELET_ARGS='--v=2 --hostname-override=mi-0abc'\n", encoding="utf-8")

    assert kubelet_node_name(env, hostname=lambda: "ignored") == "mi-0abc"
    assert kubelet_node_name(tmp_path / "missing", hostname=lambda: "My-Host") == "my-host"


# ----------------------------------------------------------------------
# Polling
# ----------------------------------------------------------------------
def test_deadline_counts_down() -> None:
    now = [100.0]
    deadline = Deadline(10.0, clock=lambda: now[0])

    now[0] = 104.0
    assert deadline.remaining() == pytest.approx(6.0)
    now[0] = 111.0
    assert deadline.expired()


def test_poll_gives_up_after_max_failures() -> None:
    attempts: list[int] = []

    def action(cancel: threading.Event) -> None:
        attempts.append(1)
        raise RuntimeError("connection refused")

    with pytest.raises(NodeValidationError, match="failed after multiple attempts: connection refused"):
        poll("node registration validation", action, Deadline(5.0), max_failures=2, interval=0)

    assert len(attempts) == 3


def test_poll_times_out_and_cancels_worker() -> None:
    """The worker sees the cancellation event once the deadline passes."""
    observed = threading.Event()

    def action(cancel: threading.Event) -> None:
        cancel.wait(5)
        observed.set()
        raise RuntimeError("cancelled")

    with pytest.raises(ValidationTimeoutError, match="timeout occurred"):
        poll("node readiness validation", action, Deadline(0.05), max_failures=1, interval=0)

    assert observed.wait(2)


# ----------------------------------------------------------------------
# End to end
# ----------------------------------------------------------------------
def test_active_node_validator_succeeds(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    api = FakeCoreV1([_node(ready=False), _node()], missing=2)

    cni = execute_active_node_validator(
        10.0,
        api_factory=lambda: api,
        node_name=lambda: "mi-0123456789",
        detector_factory=lambda client: CniDetector(client, bin_dir=bin_dir, config_dir=conf_dir),
        api_wait_timeout=5.0,
        poll_interval=0.01,
    )

    assert cni is CniType.CILIUM


def test_active_node_validator_reports_stage(tmp_path: Path) -> None:
    bin_dir, conf_dir = _dirs(tmp_path)
    api = FakeCoreV1([_node(network_reason=None)])

    with pytest.raises(NodeValidationError, match="CNI detection validation failed"):
        execute_active_node_validator(
            10.0,
            api_factory=lambda: api,
            node_name=lambda: "n",
            detector_factory=lambda client: CniDetector(client, bin_dir=bin_dir, config_dir=conf_dir),
            api_wait_timeout=1.0,
            poll_interval=0.01,
        )


def test_active_node_validator_without_client() -> None:
    def broken() -> object:
        raise RuntimeError("kubeconfig /var/lib/kubelet/kubeconfig not found")

    with pytest.raises(NodeValidationError, match="failed to create Kubernetes hybrid node client"):
        execute_active_node_validator(1.0, api_factory=broken, node_name=lambda: "n")
