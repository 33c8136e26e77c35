"""Wait for this host's Node object to appear in the cluster."""
from __future__ import annotations

import logging
import shlex
import socket
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

from kubernetes.client.rest import ApiException

from ..components.kubelet import ENVIRONMENT_PATH, KUBELET_ARGS_ENV
from .polling import CancelledError, NodeValidationError

LOGGER = logging.getLogger(__name__)

HOSTNAME_OVERRIDE = "--hostname-override="


def kubelet_node_name(
    environment_path: Path = ENVIRONMENT_PATH,
    *,
    hostname: Callable[[], str] = socket.gethostname,
) -> str:
    """Return the node name kubelet registers with.

    That is the ``--hostname-override`` written to the kubelet environment
    file, or the lower-cased host name.
    """
    try:
        text = environment_path.read_text(encoding="utf-8")
    except FileNotFoundError:
        text = ""
    for line in text.splitlines():
        key, sep, value = line.partition("=")
        if not sep or key.strip() != KUBELET_ARGS_ENV:
            continue
        for arg in shlex.split(" ".join(shlex.split(value))):
            if arg.startswith(HOSTNAME_OVERRIDE):
                return arg[len(HOSTNAME_OVERRIDE) :]
    name = hostname().strip().lower()
    if not name:
        raise NodeValidationError("failed to get node name from kubelet: empty hostname")
    return name


def get_and_wait(
    api: Any,
    name: str,
    ready: Callable[[Any], bool],
    *,
    timeout: float,
    cancel: threading.Event,
    interval: float = 2.0,
    clock: Callable[[], float] = time.monotonic,
) -> Any:
    """Poll ``read_node(name)`` until *ready* accepts it or *timeout* passes.

    The last ``ApiException`` is raised on timeout; a node that exists but
    never satisfied *ready* raises :class:`NodeValidationError`.
    """
    end = clock() + timeout
    last_error: ApiException | None = None
    while True:
        if cancel.is_set():
            raise CancelledError(f"waiting for node {name} cancelled")
        try:
            node = api.read_node(name)
        except ApiException as exc:
            last_error = exc
        else:
            last_error = None
            if ready(node):
                return node
        if clock() >= end:
            if last_error is not None:
                raise last_error
            raise NodeValidationError(f"node {name} did not reach the expected state within {timeout:g}s")
        cancel.wait(interval)


def wait_for_registration(
    api: Any,
    node_name: str,
    *,
    timeout: float,
    cancel: threading.Event,
    interval: float = 2.0,
) -> str:
    """Return *node_name* once the Node exists."""
    try:
        node = get_and_wait(api, node_name, lambda item: item is not None, timeout=timeout, cancel=cancel, interval=interval)
    except ApiException as exc:
        if exc.status == 404:
            raise NodeValidationError(
                f"node '{node_name}' did not register with the cluster within timeout {timeout:g}s"
            ) from exc
        raise NodeValidationError(f"waiting for node registration: {exc}") from exc
    LOGGER.info("Node %s registered with cluster (uid %s)", node_name, getattr(node.metadata, "uid", ""))
    return node_name


__all__ = ["get_and_wait", "kubelet_node_name", "wait_for_registration"]
