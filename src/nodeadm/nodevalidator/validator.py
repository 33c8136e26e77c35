"""Post-init active node validation: registration, CNI, readiness."""
from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any

from ..providers import kube
from .cni import CniDetector, CniType
from .polling import Deadline, NodeValidationError, poll
from .readiness import wait_for_readiness
from .registration import kubelet_node_name, wait_for_registration

LOGGER = logging.getLogger(__name__)

API_WAIT_TIMEOUT = 180.0
POLL_INTERVAL = 2.0
REGISTRATION_MAX_FAILURES = 2
CNI_MAX_FAILURES = 2
READINESS_MAX_FAILURES = 3


def execute_active_node_validator(
    timeout: float,
    *,
    api_factory: Callable[[], Any] = kube.core_v1,
    node_name: Callable[[], str] = kubelet_node_name,
    detector_factory: Callable[[Any], CniDetector] = CniDetector,
    api_wait_timeout: float = API_WAIT_TIMEOUT,
    poll_interval: float = POLL_INTERVAL,
) -> CniType:
    """Wait until this node is registered, has a CNI and is Ready.

    All three stages share one *timeout*. Returns the detected CNI.
    """
    try:
        api = api_factory()
    except RuntimeError as exc:
        raise NodeValidationError(f"failed to create Kubernetes hybrid node client: {exc}") from exc
    deadline = Deadline(timeout)

    try:
        name = node_name()
    except OSError as exc:
        raise NodeValidationError(f"failed to get node name from kubelet: {exc}") from exc
    try:
        registered = poll(
            "node registration validation",
            lambda cancel: wait_for_registration(
                api, name, timeout=api_wait_timeout, cancel=cancel, interval=poll_interval
            ),
            deadline,
            max_failures=REGISTRATION_MAX_FAILURES,
            interval=poll_interval,
        )
    except NodeValidationError as exc:
        raise NodeValidationError(f"node registration validation failed: {exc}") from exc

    detector = detector_factory(api)
    try:
        cni = poll(
            "CNI detection validation",
            lambda cancel: detector.detect(registered),
            deadline,
            max_failures=CNI_MAX_FAILURES,
            interval=poll_interval,
        )
    except NodeValidationError as exc:
        raise NodeValidationError(f"CNI detection validation failed: {exc}") from exc

    try:
        poll(
            "node readiness validation",
            lambda cancel: wait_for_readiness(
                api, registered, timeout=api_wait_timeout, cancel=cancel, interval=poll_interval
            ),
            deadline,
            max_failures=READINESS_MAX_FAILURES,
            interval=poll_interval,
        )
    except NodeValidationError as exc:
        raise NodeValidationError(f"node readiness validation failed: {exc}") from exc
    return cni


__all__ = ["execute_active_node_validator"]
