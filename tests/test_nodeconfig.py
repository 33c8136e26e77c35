"""Tests for NodeConfig loading, credential provider selection and OS detection."""
from __future__ import annotations

import base64
from pathlib import Path

import pytest

from nodeadm import creds
from nodeadm.creds import CredentialProvider, CredentialProviderError
from nodeadm.nodeconfig import (
    DEFAULT_AWS_CONFIG_PATH,
    HybridOptions,
    IAMRolesAnywhereOptions,
    NodeConfig,
    NodeConfigError,
    SSMOptions,
    extract_flag_value,
    load_node_config,
    validate_node_config,
)
from nodeadm.state.tracker import InstalledArtifacts
from nodeadm.system.osinfo import OsInfo, detect_os, host_arch, setup_rhel_journal_compatibility

SSM_CONFIG = """\
apiVersion: node.eks.aws/v1alpha1
kind: NodeConfig
spec:
  cluster:
    name: hybrid
    region: us-west-2
  hybrid:
    ssm:
      activationCode: code
      activationId: id
  kubelet:
    flags:
      - --node-labels=team=infra
"""


def _ssm_config() -> NodeConfig:
    cfg = NodeConfig()
    cfg.cluster.name = "hybrid"
    cfg.cluster.region = "us-west-2"
    cfg.hybrid = HybridOptions(ssm=SSMOptions("code", "id"))
    return cfg


def _iam_ra_config(node_name: str = "node-1") -> NodeConfig:
    cfg = NodeConfig()
    cfg.cluster.name = "hybrid"
    cfg.cluster.region = "us-west-2"
    cfg.hybrid = HybridOptions(
        iam_roles_anywhere=IAMRolesAnywhereOptions(
            node_name=node_name,
            trust_anchor_arn="arn:ta",
            profile_arn="arn:profile",
            role_arn="arn:role",
            certificate_path="/etc/iam/pki/server.pem",
            private_key_path="/etc/iam/pki/server.key",
        )
    )
    return cfg


def test_load_node_config_from_file_uri(tmp_path: Path) -> None:
    path = tmp_path / "nodeConfig.yaml"
    path.write_text(SSM_CONFIG, encoding="utf-8")

    cfg = load_node_config(f"file://{path}")

    assert cfg.cluster.name == "hybrid"
    assert cfg.is_ssm()
    assert cfg.hybrid.ssm == SSMOptions("code", "id")
    assert cfg.kubelet.flags == ["--node-labels=team=infra"]


def test_load_node_config_decodes_certificate_authority(tmp_path: Path) -> None:
    path = tmp_path / "nodeConfig.json"
    ca = base64.b64encode(b"-----BEGIN CERTIFICATE-----").decode()
    path.write_text(
        '{"kind": "NodeConfig", "spec": {"cluster": {"name": "c", "certificateAuthority": "%s"}}}' % ca,
        encoding="utf-8",
    )

    cfg = load_node_config(f"file://{path}")

    assert cfg.cluster.certificate_authority == b"-----BEGIN CERTIFICATE-----"


def test_load_node_config_requires_source() -> None:
    with pytest.raises(NodeConfigError, match="--config-source is a required flag"):
        load_node_config("")


def test_load_node_config_rejects_other_schemes() -> None:
    with pytest.raises(NodeConfigError, match="unknown configuration source scheme"):
        load_node_config("imds://user-data")


def test_load_node_config_rejects_wrong_kind(tmp_path: Path) -> None:
    path = tmp_path / "cfg.yaml"
    path.write_text("kind: Pod\nspec: {}\n", encoding="utf-8")

    with pytest.raises(NodeConfigError, match="unsupported kind"):
        load_node_config(f"file://{path}")


def test_validate_accepts_ssm_config() -> None:
    validate_node_config(_ssm_config())


def test_validate_rejects_hostname_override() -> None:
    """Hybrid nodes derive their name; overriding it is refused."""
    cfg = _ssm_config()
    cfg.kubelet.flags = ["--v=2", "--hostname-override=my-node"]

    with pytest.raises(NodeConfigError, match="override: my-node"):
        validate_node_config(cfg)


@pytest.mark.parametrize(
    ("mutate", "message"),
    [
        (lambda cfg: setattr(cfg.cluster, "name", ""), "Name is missing"),
        (lambda cfg: setattr(cfg.cluster, "region", ""), "Region is missing"),
        (lambda cfg: setattr(cfg.hybrid, "ssm", None), "Either IAMRolesAnywhere or SSM"),
        (
            lambda cfg: setattr(cfg.hybrid, "iam_roles_anywhere", IAMRolesAnywhereOptions()),
            "Only one of IAMRolesAnywhere or SSM",
        ),
        (lambda cfg: setattr(cfg.hybrid.ssm, "activation_code", ""), "ActivationCode is missing"),
        (lambda cfg: setattr(cfg.hybrid.ssm, "activation_id", ""), "ActivationID is missing"),
    ],
)
def test_validate_rejects_incomplete_ssm_config(mutate, message: str) -> None:
    cfg = _ssm_config()
    mutate(cfg)

    with pytest.raises(NodeConfigError, match=message):
        validate_node_config(cfg)


def test_validate_iam_ra_checks_files_and_name_length() -> None:
    validate_node_config(_iam_ra_config(), exists=lambda path: True)

    with pytest.raises(NodeConfigError, match="certificate /etc/iam/pki/server.pem not found"):
        validate_node_config(_iam_ra_config(), exists=lambda path: False)
    with pytest.raises(NodeConfigError, match="longer than 64 characters"):
        validate_node_config(_iam_ra_config("n" * 65), exists=lambda path: True)


def test_populate_defaults_sets_aws_config_and_node_name() -> None:
    cfg = _iam_ra_config()

    cfg.populate_defaults()

    assert cfg.hybrid.iam_roles_anywhere is not None
    assert cfg.hybrid.iam_roles_anywhere.aws_config_path == DEFAULT_AWS_CONFIG_PATH
    assert cfg.status.node_name == "node-1"


def test_extract_flag_value_uses_last_occurrence() -> None:
    flags = ["--node-ip=10.0.0.1", "--v=2", "--node-ip=10.0.0.2"]

    assert extract_flag_value(flags, "node-ip") == "10.0.0.2"
    assert extract_flag_value(flags, "hostname-override") == ""


# ----------------------------------------------------------------------
# Credential providers
# ----------------------------------------------------------------------
def test_get_credential_provider_parses_flag() -> None:
    assert creds.get_credential_provider("ssm") is CredentialProvider.SSM
    assert creds.get_credential_provider("iam-ra") is CredentialProvider.IAM_ROLES_ANYWHERE
    with pytest.raises(CredentialProviderError, match="Valid options are ssm and iam-ra"):
        creds.get_credential_provider("irsa")


def test_credential_provider_from_config_and_tracker() -> None:
    assert creds.from_node_config(_ssm_config()) is CredentialProvider.SSM
    assert creds.from_node_config(_iam_ra_config()) is CredentialProvider.IAM_ROLES_ANYWHERE
    assert (
        creds.from_installed_artifacts(InstalledArtifacts(iam_roles_anywhere=True))
        is CredentialProvider.IAM_ROLES_ANYWHERE
    )
    with pytest.raises(CredentialProviderError):
        creds.from_installed_artifacts(InstalledArtifacts())


def test_credential_provider_requires_exactly_one_in_config() -> None:
    cfg = _iam_ra_config()
    cfg.hybrid.ssm = SSMOptions("code", "id")

    with pytest.raises(CredentialProviderError, match="only one of ssm or iamRolesAnywhere"):
        creds.from_node_config(cfg)
    with pytest.raises(CredentialProviderError, match="no credential process provided"):
        creds.from_node_config(NodeConfig())


@pytest.mark.parametrize("os_info", [OsInfo("rhel", "8.9"), OsInfo("rocky", "8")])
def test_iam_ra_unsupported_on_el8(os_info: OsInfo) -> None:
    with pytest.raises(CredentialProviderError, match="Please use ssm credential provider"):
        creds.validate_credential_provider(CredentialProvider.IAM_ROLES_ANYWHERE, os_info)

    creds.validate_credential_provider(CredentialProvider.SSM, os_info)


def test_iam_ra_supported_elsewhere() -> None:
    creds.validate_credential_provider(CredentialProvider.IAM_ROLES_ANYWHERE, OsInfo("rhel", "9.4"))
    creds.validate_credential_provider(CredentialProvider.IAM_ROLES_ANYWHERE, OsInfo("ubuntu", "22.04"))


# ----------------------------------------------------------------------
# OS detection
# ----------------------------------------------------------------------
def test_detect_os_parses_os_release(tmp_path: Path) -> None:
    release = tmp_path / "os-release"
    release.write_text(
        'NAME="Ubuntu"\nID=ubuntu\nVERSION_ID="22.04"\nVERSION_CODENAME=jammy\n',
        encoding="utf-8",
    )

    info = detect_os(release)

    assert info == OsInfo("ubuntu", "22.04", "jammy")
    assert info.major_version == 22


def test_detect_os_tolerates_missing_file(tmp_path: Path) -> None:
    info = detect_os(tmp_path / "missing")

    assert info == OsInfo()
    assert info.major_version is None


def test_host_arch_uses_kubernetes_names() -> None:
    assert host_arch("x86_64") == "amd64"
    assert host_arch("aarch64") == "arm64"


def test_rhel_journal_symlink_created_once(tmp_path: Path) -> None:
    symlink = tmp_path / "var" / "log" / "journal"
    target = tmp_path / "run" / "log" / "journal"

    assert setup_rhel_journal_compatibility(OsInfo("rhel", "9"), symlink=symlink, target=target)
    assert symlink.is_symlink()
    assert not setup_rhel_journal_compatibility(OsInfo("rhel", "9"), symlink=symlink, target=target)
    assert not setup_rhel_journal_compatibility(
        OsInfo("ubuntu", "22.04"), symlink=tmp_path / "other", target=target
    )
