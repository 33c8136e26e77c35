"""``nodeadm uninstall``: remove exactly what the tracker says was installed."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..components import (
    cni_plugins,
    containerd,
    iam_authenticator,
    iamrolesanywhere,
    image_credential_provider,
    iptables,
    kubectl,
    kubelet,
    ssm,
)
from ..providers.packagemanager import DistroPackageManager
from ..providers.systemd import DaemonManager, DaemonStatus
from ..state import tracker as tracker_state
from ..state.tracker import ContainerdSourceName, InstalledArtifacts

LOGGER = logging.getLogger(__name__)

EKS_CONFIG_DIR = Path("/etc/eks")


class UninstallError(RuntimeError):
    """Raised when a tracked component cannot be removed."""


@dataclass
class Uninstaller:
    """Stop daemons, remove binaries and packages, then forget the install.

    Daemons go down in dependency order (kubelet, the credential provider,
    containerd). Every step is skipped unless the tracker recorded it.
    """

    artifacts: InstalledArtifacts
    manager: DaemonManager
    package_manager: DistroPackageManager
    ssm_daemon_name: str = ssm.DEFAULT_DAEMON_NAME
    ssm_registration: ssm.SsmRegistration = field(default_factory=ssm.SsmRegistration)
    ssm_client_factory: Callable[[str], Any] = ssm.ssm_client
    tracker_path: Path = tracker_state.DEFAULT_TRACKER_FILE
    eks_config_dir: Path = EKS_CONFIG_DIR
    cni_root: Path = cni_plugins.CNI_ROOT

    def run(self) -> None:
        self.uninstall_daemons()
        self.uninstall_binaries()
        self.cleanup()
        LOGGER.info("Finished uninstallation tasks...")
        tracker_state.clear(self.tracker_path)

    def uninstall_daemons(self) -> None:
        artifacts = self.artifacts
        if artifacts.kubelet:
            LOGGER.info("Uninstalling kubelet...")
            self.manager.stop_daemon(kubelet.DAEMON_NAME)
            kubelet.uninstall()
            LOGGER.info("Successfully uninstalled kubelet")
        if artifacts.ssm:
            LOGGER.info("Stopping SSM daemon...")
            self.manager.stop_daemon(self.ssm_daemon_name)
            self._deregister_ssm()
        if artifacts.iam_roles_anywhere:
            LOGGER.info("Removing %s daemon...", iamrolesanywhere.DAEMON_NAME)
            if self.manager.get_daemon_status(iamrolesanywhere.DAEMON_NAME) is not DaemonStatus.UNKNOWN:
                self.manager.stop_daemon(iamrolesanywhere.DAEMON_NAME)
        if artifacts.containerd is not ContainerdSourceName.NONE:
            LOGGER.info("Uninstalling containerd...")
            self.manager.stop_daemon(containerd.DAEMON_NAME)
            containerd.uninstall(self.package_manager)

    def _deregister_ssm(self) -> None:
        try:
            region = self.ssm_registration.region() if self.ssm_registration.exists() else ""
            client = self.ssm_client_factory(region)
            ssm.deregister_and_uninstall(self.ssm_registration, client, self.package_manager)
        except (OSError, ssm.SsmError) as exc:
            raise UninstallError(f"uninstalling SSM: {exc}") from exc

    def uninstall_binaries(self) -> None:
        artifacts = self.artifacts
        if artifacts.kubectl:
            LOGGER.info("Uninstalling kubectl...")
            kubectl.uninstall()
        if artifacts.cni_plugins:
            LOGGER.info("Uninstalling cni-plugins...")
            if self.cni_root.exists():
                cni_plugins.uninstall(cni_root=self.cni_root)
            else:
                LOGGER.info("CNI directory %s does not exist, skipping removal", self.cni_root)
        if artifacts.iam_authenticator:
            LOGGER.info("Uninstalling IAM authenticator...")
            iam_authenticator.uninstall()
        if artifacts.iam_roles_anywhere:
            LOGGER.info("Uninstalling AWS signing helper...")
            iamrolesanywhere.uninstall()
        if artifacts.image_credential_provider:
            LOGGER.info("Uninstalling image credential provider...")
            image_credential_provider.uninstall()
        if artifacts.iptables:
            LOGGER.info("Uninstalling iptables...")
            iptables.uninstall(self.package_manager)

    def cleanup(self) -> None:
        """Remove files no single component owns."""
        self.package_manager.cleanup()
        if not self.eks_config_dir.exists():
            LOGGER.info("EKS config directory %s does not exist, skipping removal", self.eks_config_dir)
            return
        LOGGER.info("Removing EKS config directory %s", self.eks_config_dir)
        shutil.rmtree(self.eks_config_dir)


__all__ = ["EKS_CONFIG_DIR", "UninstallError", "Uninstaller"]
