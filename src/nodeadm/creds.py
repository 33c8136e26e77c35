"""Selection of the hybrid credential provider (SSM or IAM Roles Anywhere)."""
from __future__ import annotations

from enum import Enum

from .nodeconfig import NodeConfig
from .state.tracker import InstalledArtifacts
from .system.osinfo import RHEL, ROCKY, OsInfo


class CredentialProviderError(RuntimeError):
    """Raised when no valid credential provider can be determined."""


class CredentialProvider(str, Enum):
    """The two mutually exclusive credential bootstrap mechanisms."""

    SSM = "ssm"
    IAM_ROLES_ANYWHERE = "iam-ra"


def get_credential_provider(value: str) -> CredentialProvider:
    """Parse the ``--credential-provider`` flag value."""
    for provider in CredentialProvider:
        if provider.value == value:
            return provider
    raise CredentialProviderError(
        "invalid credential process provided. Valid options are ssm and iam-ra"
    )


def from_node_config(cfg: NodeConfig) -> CredentialProvider:
    """Return the provider configured in *cfg*; exactly one must be set."""
    if cfg.is_ssm() and cfg.is_iam_roles_anywhere():
        raise CredentialProviderError(
            "invalid nodeConfig: only one of ssm or iamRolesAnywhere can be configured"
        )
    if cfg.is_ssm():
        return CredentialProvider.SSM
    if cfg.is_iam_roles_anywhere():
        return CredentialProvider.IAM_ROLES_ANYWHERE
    raise CredentialProviderError("no credential process provided in nodeConfig")



def from_installed_artifacts(artifacts: InstalledArtifacts) -> CredentialProvider:
    """Return the provider nodeadm previously installed."""
    if artifacts.ssm:
        return CredentialProvider.SSM
    if artifacts.iam_roles_anywhere:
        return CredentialProvider.IAM_ROLES_ANYWHERE
    raise CredentialProviderError("no credential process found in installed artifacts")


# (os name, major version) pairs whose FIPS module breaks the signing helper.
_IAM_RA_UNSUPPORTED = {(RHEL, 8), (ROCKY, 8)}


def validate_credential_provider(provider: CredentialProvider, os_info: OsInfo) -> None:
    """Reject provider/platform combinations known not to work."""
    if (
        provider is CredentialProvider.IAM_ROLES_ANYWHERE
        and (os_info.name, os_info.major_version) in _IAM_RA_UNSUPPORTED
    ):
        raise CredentialProviderError(
            f"iam-ra credential provider is not supported on {os_info.name} "
            f"{os_info.version_id} based operating systems. Please use ssm credential provider"
        )


__all__ = [
    "CredentialProvider",
    "CredentialProviderError",
    "from_installed_artifacts",
    "from_node_config",
    "get_credential_provider",
    "validate_credential_provider",
]
