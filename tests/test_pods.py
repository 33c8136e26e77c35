"""Tests for the pre-uninstall pod check."""
from __future__ import annotations

import pytest
from kubernetes.client import V1ObjectMeta, V1OwnerReference, V1Pod, V1PodList, V1PodStatus
from kubernetes.client.rest import ApiException

from nodeadm.pods import PodValidationError, blocking_pods, validate_running_pods_for_uninstall


def _pod(name: str, *, owner: str | None = None, mirror: bool = False, phase: str = "Running") -> V1Pod:
    owners = None
    if owner:
        owners = [V1OwnerReference(api_version="apps/v1", kind=owner, name="owner", uid="uid")]
    annotations = {"kubernetes.io/config.mirror": "hash"} if mirror else None
    return V1Pod(
        metadata=V1ObjectMeta(name=name, namespace="kube-system", owner_references=owners, annotations=annotations),
        status=V1PodStatus(phase=phase),
    )


class FakeCoreV1:
    def __init__(self, pods: list[V1Pod], *, error: ApiException | None = None) -> None:
        self.pods = pods
        self.error = error
        self.selectors: list[str] = []

    def list_pod_for_all_namespaces(self, field_selector: str) -> V1PodList:
        self.selectors.append(field_selector)
        if self.error is not None:
            raise self.error
        return V1PodList(items=self.pods)


def test_system_pods_do_not_block() -> None:
    pods = [
        _pod("kube-proxy", owner="DaemonSet"),
        _pod("etcd", mirror=True),
        _pod("job-abc", owner="Job", phase="Succeeded"),
    ]

    assert blocking_pods(pods) == []


def test_uninstall_allowed_with_only_daemonset_pods() -> None:
    api = FakeCoreV1([_pod("cilium-xyz", owner="DaemonSet")])

    validate_running_pods_for_uninstall(api_factory=lambda: api, node_name=lambda: "mi-0abc")

    assert api.selectors == ["spec.nodeName=mi-0abc"]


def test_workload_pods_block_uninstall() -> None:
    api = FakeCoreV1([_pod("web-1", owner="ReplicaSet"), _pod("cilium-xyz", owner="DaemonSet")])

    with pytest.raises(PodValidationError, match="--skip pod-validation"):
        validate_running_pods_for_uninstall(api_factory=lambda: api, node_name=lambda: "mi-0abc")


def test_list_failure_is_reported() -> None:
    api = FakeCoreV1([], error=ApiException(status=403, reason="Forbidden"))

    with pytest.raises(PodValidationError, match="failed to list all pods running on the node"):
        validate_running_pods_for_uninstall(api_factory=lambda: api, node_name=lambda: "n")


def test_missing_kubeconfig_is_reported() -> None:
    def broken() -> object:
        raise RuntimeError("kubeconfig not found")

    with pytest.raises(PodValidationError, match="failed to get pods on node"):
        validate_running_pods_for_uninstall(api_factory=broken, node_name=lambda: "n")
