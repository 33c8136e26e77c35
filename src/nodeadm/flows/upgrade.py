"""``nodeadm upgrade``: move an initialized node to a new Kubernetes release."""
from __future__ import annotations

import logging
from dataclasses import dataclass

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
from ..creds import CredentialProvider, CredentialProviderError
from ..node.hybrid import KUBELET_CERT_VALIDATION, NODE_IP_VALIDATION, HybridNodeProvider
from ..providers.packagemanager import DistroPackageManager
from ..state.tracker import ContainerdSourceName, InstalledArtifacts
from ..validation.runner import Validation
from .init import init_daemons
from .install import ArtifactSource

LOGGER = logging.getLogger(__name__)


class UpgradeError(RuntimeError):
    """Raised when an installed component cannot be upgraded."""


@dataclass
class Upgrader:
    """Upgrade every component nodeadm installed, then restart the daemons.

    Only artifacts recorded in *artifacts* are touched; anything the host
    provided on its own stays as it is.
    """

    provider: HybridNodeProvider
    source: ArtifactSource
    package_manager: DistroPackageManager
    credential_provider: CredentialProvider
    artifacts: InstalledArtifacts
    ssm_source: ssm.Source | None = None
    ssm_region: str = ""
    retry_delay: float = 5.0
    retry_timeout: float = 300.0

    def run(self) -> None:
        provider = self.provider
        provider.validate_config()
        provider.pre_process()
        provider.enrich()
        provider.runner.run(
            provider.cfg,
            [
                Validation(NODE_IP_VALIDATION, "Validating Node IP", provider.validate_node_ip),
                Validation(KUBELET_CERT_VALIDATION, "Validating kubelet certificate", provider.check_kubelet_cert),
            ],
        )

        self.upgrade_distro_packages()
        self.upgrade_credential_provider()
        self.upgrade_eks_artifacts()

        init_daemons(provider)
        provider.cleanup()

    def upgrade_distro_packages(self) -> None:
        LOGGER.info("Refreshing package manager metadata cache...")
        self.package_manager.update_all_packages()
        if self.artifacts.containerd is not ContainerdSourceName.NONE:
            LOGGER.info("Upgrading containerd...")
            containerd.upgrade(self.package_manager, retry_delay=self.retry_delay, retry_timeout=self.retry_timeout)
        if self.artifacts.iptables:
            LOGGER.info("Upgrading iptables...")
            iptables.upgrade(self.package_manager, retry_delay=self.retry_delay, retry_timeout=self.retry_timeout)

    def upgrade_credential_provider(self) -> None:
        if self.credential_provider is CredentialProvider.IAM_ROLES_ANYWHERE:
            LOGGER.info("Upgrading AWS signing helper...")
            iamrolesanywhere.upgrade(self.source)
            return
        if self.credential_provider is CredentialProvider.SSM:
            if self.ssm_source is None:
                raise CredentialProviderError("an ssm installer source is required for the ssm credential provider")
            LOGGER.info("Upgrading SSM agent installer...")
            ssm.upgrade(
                self.ssm_source, self.ssm_region, retry_delay=self.retry_delay, retry_timeout=self.retry_timeout
            )
            return
        raise CredentialProviderError("unable to detect hybrid auth method")

    def upgrade_eks_artifacts(self) -> None:
        artifacts = self.artifacts
        if artifacts.kubelet:
            LOGGER.info("Upgrading kubelet...")
            try:
                kubelet.upgrade(self.source)
            except RuntimeError as exc:
                raise UpgradeError(f"failed to upgrade kubelet: {exc}") from exc
        if artifacts.kubectl:
            LOGGER.info("Upgrading kubectl...")
            kubectl.upgrade(self.source)
        if artifacts.image_credential_provider:
            LOGGER.info("Upgrading image credential provider...")
            image_credential_provider.upgrade(self.source)
        if artifacts.iam_authenticator:
            LOGGER.info("Upgrading IAM authenticator...")
            iam_authenticator.upgrade(self.source)
        if artifacts.cni_plugins:
            LOGGER.info("Upgrading cni-plugins...")
            cni_plugins.upgrade(self.source)


__all__ = ["UpgradeError", "Upgrader"]
