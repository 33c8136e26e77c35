"""``nodeadm install``: put every hybrid node component on the host."""
from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol

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
from ..providers.packagemanager import DistroPackageManager
from ..state.tracker import ContainerdSourceName, Tracker
from ..system.osinfo import OsInfo, setup_rhel_journal_compatibility

LOGGER = logging.getLogger(__name__)


class ArtifactSource(
    kubelet.Source,
    kubectl.Source,
    cni_plugins.Source,
    image_credential_provider.Source,
    iam_authenticator.Source,
    iamrolesanywhere.Source,
    Protocol,
):
    """Everything the release manifest serves."""


@dataclass
class Installer:
    """Install distro packages, the credential process and EKS artifacts.

    Steps run in a fixed order and the first failure aborts the install. The
    tracker is only written once every component is in place.
    """

    tracker: Tracker
    source: ArtifactSource
    package_manager: DistroPackageManager
    credential_provider: CredentialProvider
    containerd_source: ContainerdSourceName
    os_info: OsInfo = field(default_factory=OsInfo)
    ssm_source: ssm.Source | None = None
    ssm_region: str = ""
    attempts: int = 3
    retry_delay: float = 5.0
    retry_timeout: float = 300.0
    journal_setup: Callable[[OsInfo], bool] = setup_rhel_journal_compatibility

    def run(self) -> None:
        LOGGER.info("Configuring package manager. This might take a while...")
        self.package_manager.configure()

        LOGGER.info("Setting up RHEL journal compatibility...")
        self.journal_setup(self.os_info)

        self.install_distro_packages()
        self.install_credential_process()
        self.install_eks_artifacts()

        LOGGER.info("Finishing up install...")
        self.tracker.save()

    def install_distro_packages(self) -> None:
        LOGGER.info("Installing containerd...")
        containerd.install(
            self.tracker,
            self.package_manager,
            self.containerd_source,
            retry_delay=self.retry_delay,
            retry_timeout=self.retry_timeout,
        )
        LOGGER.info("Installing iptables...")
        iptables.install(
            self.tracker, self.package_manager, retry_delay=self.retry_delay, retry_timeout=self.retry_timeout
        )

    def install_credential_process(self) -> None:
        if self.credential_provider is CredentialProvider.IAM_ROLES_ANYWHERE:
            LOGGER.info("Installing AWS signing helper...")
            iamrolesanywhere.install(self.tracker, self.source, attempts=self.attempts)
            return
        if self.credential_provider is CredentialProvider.SSM:
            if self.ssm_source is None:
                raise CredentialProviderError("an ssm installer source is required for the ssm credential provider")
            LOGGER.info("Installing SSM agent installer...")
            ssm.install(
                self.tracker,
                self.ssm_source,
                self.ssm_region,
                retry_delay=self.retry_delay,
                retry_timeout=self.retry_timeout,
            )
            return
        raise CredentialProviderError("unable to detect hybrid auth method")

    def install_eks_artifacts(self) -> None:
        LOGGER.info("Installing kubelet...")
        kubelet.install(self.tracker, self.source, attempts=self.attempts)
        LOGGER.info("Installing kubectl...")
        kubectl.install(self.tracker, self.source, attempts=self.attempts)
        LOGGER.info("Installing cni-plugins...")
        cni_plugins.install(self.tracker, self.source, attempts=self.attempts)
        LOGGER.info("Installing image credential provider...")
        image_credential_provider.install(self.tracker, self.source, attempts=self.attempts)
        LOGGER.info("Installing IAM authenticator...")
        iam_authenticator.install(self.tracker, self.source, attempts=self.attempts)


__all__ = ["ArtifactSource", "Installer"]
