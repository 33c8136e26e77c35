"""Node readiness: internal IP assigned, network available and Ready."""
from __future__ import annotations

import logging
import threading
from typing import Any

from kubernetes.client.rest import ApiException

from .polling import NodeValidationError
from .registration import get_and_wait

LOGGER = logging.getLogger(__name__)


def has_internal_ip(node: Any) -> bool:
    for address in getattr(node.status, "addresses", None) or []:
        if address.type == "InternalIP" and address.address:
            return True
    return False


def network_available(node: Any) -> bool:
    """A missing ``NetworkUnavailable`` condition counts as available."""
    for condition in getattr(node.status, "conditions", None) or []:
        if condition.type == "NetworkUnavailable":
            return condition.status == "False"
    return True


def has_ready_condition(node: Any) -> bool:
    for condition in getattr(node.status, "conditions", None) or []:
        if condition.type == "Ready":
            return condition.status == "True"
    return False


def is_node_ready(node: Any) -> bool:
    name = getattr(node.metadata, "name", "")
    if not has_internal_ip(node):
        LOGGER.info("Node %s does not have an internal IP address yet", name)
        return False
    if not network_available(node):
        LOGGER.info("Node %s network is not available yet", name)
        return False
    if not has_ready_condition(node):
        LOGGER.info("Node %s is not Ready yet", name)
        return False
    return True


def wait_for_readiness(
    api: Any,
    node_name: str,
    *,
    timeout: float,
    cancel: threading.Event,
    interval: float = 2.0,
) -> None:
    try:
        get_and_wait(api, node_name, is_node_ready, timeout=timeout, cancel=cancel, interval=interval)
    except (ApiException, NodeValidationError) as exc:
        raise NodeValidationError(
            f"node '{node_name}' did not become ready within timeout {timeout:g}s: {exc}"
        ) from exc


__all__ = ["has_internal_ip", "has_ready_condition", "is_node_ready", "network_available", "wait_for_readiness"]
