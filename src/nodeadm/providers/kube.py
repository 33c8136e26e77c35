"""Kubernetes API clients built from the kubelet kubeconfig."""
from __future__ import annotations

from pathlib import Path
from typing import Any

from kubernetes import client, config
from kubernetes.config.config_exception import ConfigException

KUBELET_KUBECONFIG = Path("/var/lib/kubelet/kubeconfig")


class KubeClientError(RuntimeError):
    """Raised when a Kubernetes client cannot be built."""


def api_client(kubeconfig: Path = KUBELET_KUBECONFIG) -> client.ApiClient:
    """Return an :class:`ApiClient` for *kubeconfig*."""
    if not Path(kubeconfig).exists():
        raise KubeClientError(f"kubeconfig {kubeconfig} not found")
    try:
        return config.new_client_from_config(config_file=str(kubeconfig))
    except ConfigException as exc:
        raise KubeClientError(f"loading kubeconfig {kubeconfig}: {exc}") from exc


def core_v1(kubeconfig: Path = KUBELET_KUBECONFIG) -> client.CoreV1Api:
    """Return a CoreV1 client authenticated as the kubelet."""
    return client.CoreV1Api(api_client(kubeconfig))


def server_version(api: Any) -> str:
    """Return ``git_version`` (``v1.31.2-eks-...``) from the API server."""
    info = client.VersionApi(api).get_code()
    return str(info.git_version)


__all__ = ["KUBELET_KUBECONFIG", "KubeClientError", "api_client", "core_v1", "server_version"]
