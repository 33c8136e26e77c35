"""``nodeadm init``: bootstrap this host as a hybrid node.

The command checks its preconditions (prior install, containerd unit and
open VXLAN ports), then drives a :class:`~nodeadm.node.hybrid.HybridNodeProvider`
through its stages and finally waits for the node to become active in the
cluster. The post-init wait only ever produces a warning.
"""
from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from pathlib import Path

from ..components import containerd
from ..config import parse_duration
from ..node.hybrid import (
    CNI_VALIDATION,
    CONFIG,
    INSTALL_VALIDATION,
    PREPROCESS,
    RUN,
    HybridNodeProvider,
    is_phase_skipped,
)
from ..nodevalidator import execute_active_node_validator
from ..providers.systemd import DaemonManager
from ..state.tracker import DEFAULT_TRACKER_FILE, get_installed_artifacts
from ..system.firewall import (
    CALICO_VXLAN_PORT,
    CILIUM_VXLAN_PORT,
    VXLAN_PROTOCOL,
    FirewallError,
    FirewallManager,
    validate_vxlan_ports_open,
)

LOGGER = logging.getLogger(__name__)

DEFAULT_VALIDATION_TIMEOUT = "10m"


class InitError(RuntimeError):
    """Raised when an init precondition fails."""


def check_installed(
    manager: DaemonManager,
    tracker_path: Path = DEFAULT_TRACKER_FILE,
) -> bool:
    """Return ``False`` when nodeadm has not installed anything yet.

    Raises :class:`InitError` when components are installed but systemd
    has no containerd unit.
    """
    LOGGER.info("Loading installed components")
    try:
        get_installed_artifacts(tracker_path)
    except FileNotFoundError:
        LOGGER.info("Nodeadm components are not installed. Please run `nodeadm install` before running init")
        return False
    try:
        containerd.validate_systemd_unit_file(manager)
    except containerd.ContainerdError as exc:
        raise InitError(f"a systemd unit file for containerd is required to init the node: {exc}") from exc
    return True


def check_cni_ports(firewall: FirewallManager) -> None:
    LOGGER.info("Validating firewall ports for cilium and calico")
    try:
        validate_vxlan_ports_open(firewall)
    except (FirewallError, OSError) as exc:
        raise InitError(
            f"Cilium ({CILIUM_VXLAN_PORT}/{VXLAN_PROTOCOL}) or Calico ({CALICO_VXLAN_PORT}/{VXLAN_PROTOCOL}) "
            "VxLan ports are not open on the host. If you are not using VxLan, this validation can by "
            f"bypassed with --skip {CNI_VALIDATION}"
        ) from exc


def parse_validation_timeout(value: str) -> float:
    try:
        return parse_duration(value)
    except ValueError as exc:
        raise InitError(
            f"invalid validation-timeout duration '{value}': expected format like '15m', '600s', '1h30m', "
            f"got error: {exc}"
        ) from exc


def init_daemons(provider: HybridNodeProvider) -> None:
    """Configure and start the node daemons unless those stages are skipped."""
    if not provider.is_skipped(CONFIG):
        LOGGER.info("Configuring daemons...")
        provider.configure()
        provider.validate_configured()
    if not provider.is_skipped(RUN):
        LOGGER.info("Running daemons...")
        provider.run()


@dataclass
class Initer:
    """Run the bootstrap stages of a :class:`HybridNodeProvider`."""

    provider: HybridNodeProvider

    def run(self) -> None:
        provider = self.provider
        provider.validate_config()
        if not provider.is_skipped(PREPROCESS):
            provider.pre_process()
        provider.enrich()
        provider.validate()
        init_daemons(provider)
        provider.cleanup()


@dataclass
class InitCommand:
    """The whole ``init`` sequence, preconditions and post-init wait included.

    ``run`` returns ``False`` when nothing is installed yet, in which case
    the bootstrap is not attempted.
    """

    provider_factory: Callable[[], HybridNodeProvider]
    manager: DaemonManager
    firewall: FirewallManager
    skip: Sequence[str] = ()
    validation_timeout: str = DEFAULT_VALIDATION_TIMEOUT
    tracker_path: Path = DEFAULT_TRACKER_FILE
    node_validator: Callable[[float], object] = execute_active_node_validator

    def _skipped(self, phase: str) -> bool:
        return is_phase_skipped(self.skip, phase)

    def run(self) -> bool:
        if not self._skipped(INSTALL_VALIDATION) and not check_installed(self.manager, self.tracker_path):
            return False
        if not self._skipped(CNI_VALIDATION):
            check_cni_ports(self.firewall)

        timeout = parse_validation_timeout(self.validation_timeout)
        Initer(self.provider_factory()).run()

        if timeout == 0:
            LOGGER.info(
                "Node initialization finished. Post-initialization validation to check node is active "
                "has been skipped since the validation-timeout is disabled"
            )
            return True
        LOGGER.info(
            "Node initialization finished. Running post-initialization validation to check node status "
            "in cluster (timeout %ss)",
            f"{timeout:g}",
        )
        try:
            self.node_validator(timeout)
        except RuntimeError as exc:
            LOGGER.warning(
                "Post-initialization validation encountered issues but init completed successfully: %s", exc
            )
        else:
            LOGGER.info("Post-initialization validation successful. Node is ready in the Kubernetes cluster")
        return True


__all__ = [
    "DEFAULT_VALIDATION_TIMEOUT",
    "InitCommand",
    "InitError",
    "Initer",
    "check_cni_ports",
    "check_installed",
    "init_daemons",
    "parse_validation_timeout",
]
