"""Pre-uninstall check that no workload pods are still scheduled here."""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from typing import Any

from kubernetes.client.rest import ApiException

from .nodevalidator.registration import kubelet_node_name
from .providers import kube

LOGGER = logging.getLogger(__name__)

POD_VALIDATION = "pod-validation"
MIRROR_POD_ANNOTATION = "kubernetes.io/config.mirror"
_FINISHED_PHASES = {"Succeeded", "Failed"}


class PodValidationError(RuntimeError):
    """Raised when pods block an uninstall."""


def is_static_pod(pod: Any) -> bool:
    annotations = getattr(pod.metadata, "annotations", None) or {}
    return MIRROR_POD_ANNOTATION in annotations


def is_daemonset_pod(pod: Any) -> bool:
    owners = getattr(pod.metadata, "owner_references", None) or []
    return any(owner.kind == "DaemonSet" for owner in owners)


def is_finished(pod: Any) -> bool:
    return getattr(pod.status, "phase", None) in _FINISHED_PHASES


PodFilter = Callable[[Any], bool]
UNINSTALL_FILTERS: tuple[PodFilter, ...] = (is_static_pod, is_daemonset_pod, is_finished)


def blocking_pods(pods: Sequence[Any], filters: Sequence[PodFilter] = UNINSTALL_FILTERS) -> list[Any]:
    """Return the pods no filter excuses."""
    return [pod for pod in pods if not any(check(pod) for check in filters)]


def pods_on_node(api: Any, node_name: str) -> list[Any]:
    try:
        result = api.list_pod_for_all_namespaces(field_selector=f"spec.nodeName={node_name}")
    except ApiException as exc:
        raise PodValidationError(f"failed to list all pods running on the node: {exc}") from exc
    return list(result.items or [])


def validate_running_pods_for_uninstall(
    *,
    api_factory: Callable[[], Any] = kube.core_v1,
    node_name: Callable[[], str] = kubelet_node_name,
) -> None:
    """Refuse to uninstall while workload pods run on this node."""
    try:
        api = api_factory()
    except RuntimeError as exc:
        raise PodValidationError(f"failed to get pods on node: {exc}") from exc
    remaining = blocking_pods(pods_on_node(api, node_name()))
    if remaining:
        for pod in remaining:
            LOGGER.info("Pod %s/%s is running on the node", pod.metadata.namespace, pod.metadata.name)
        raise PodValidationError(
            "only static pods and pods controlled by daemon-sets can be running on the node. "
            f"Please move pods to different node or provide --skip {POD_VALIDATION}"
        )


__all__ = [
    "POD_VALIDATION",
    "PodValidationError",
    "blocking_pods",
    "is_daemonset_pod",
    "is_static_pod",
    "pods_on_node",
    "validate_running_pods_for_uninstall",
]
