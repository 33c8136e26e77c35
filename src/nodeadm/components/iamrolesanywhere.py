"""IAM Roles Anywhere credential provider: signing helper and its configuration.

The node authenticates with an X.509 certificate. ``aws_signing_helper`` is
wired into an AWS config file through ``credential_process`` and a small
systemd service keeps a shared credentials file refreshed.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

from .. import artifact
from ..artifact import ChecksumSource
from ..nodeconfig import DEFAULT_AWS_CONFIG_PATH, NodeConfig
from ..providers.systemd import DaemonManager, DaemonStatus
from ..state.tracker import Tracker

LOGGER = logging.getLogger(__name__)

SIGNING_HELPER_BIN_PATH = Path("/usr/local/bin/aws_signing_helper")
SIGNING_HELPER_ARTIFACT = "aws-signing-helper"
BIN_PERMS = 0o755

DAEMON_NAME = "aws_signing_helper_update"
SERVICE_FILE_PATH = Path(f"/etc/systemd/system/{DAEMON_NAME}.service")
CREDENTIALS_PATH = Path("/eks-hybrid/.aws/credentials")
AWS_CONFIG_PERMS = 0o644
AWS_PROFILE = "default"

_PROXY_VARS = ("HTTP_PROXY", "HTTPS_PROXY", "http_proxy", "https_proxy")


class IamRolesAnywhereError(RuntimeError):
    """Raised when IAM Roles Anywhere files cannot be written."""


class Source(Protocol):
    def get_signing_helper(self) -> ChecksumSource: ...


# ----------------------------------------------------------------------
# Signing helper binary
# ----------------------------------------------------------------------
def install(
    tracker: Tracker,
    source: Source,
    *,
    bin_path: Path = SIGNING_HELPER_BIN_PATH,
    attempts: int = 3,
) -> None:
    artifact.install_from_source(
        SIGNING_HELPER_ARTIFACT, bin_path, source.get_signing_helper, BIN_PERMS, attempts=attempts
    )
    tracker.add(artifact.IAM_ROLES_ANYWHERE)


def uninstall(
    *,
    bin_path: Path = SIGNING_HELPER_BIN_PATH,
    service_path: Path = SERVICE_FILE_PATH,
    credentials_path: Path = CREDENTIALS_PATH,
) -> None:
    """Remove the update service, shared credentials and the binary."""
    LOGGER.info("Uninstalling IAM Roles Anywhere components...")
    service_path.unlink(missing_ok=True)
    if credentials_path.parent.exists():
        shutil.rmtree(credentials_path.parent)
    bin_path.unlink(missing_ok=True)


def upgrade(source: Source, *, bin_path: Path = SIGNING_HELPER_BIN_PATH) -> bool:
    return artifact.upgrade_from_source(SIGNING_HELPER_ARTIFACT, bin_path, source.get_signing_helper, BIN_PERMS)


# ----------------------------------------------------------------------
# AWS config
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class AwsConfig:
    """Inputs for the ``credential_process`` AWS config file."""

    trust_anchor_arn: str
    profile_arn: str
    role_arn: str
    region: str
    node_name: str
    certificate_path: str
    private_key_path: str
    config_path: Path = Path(DEFAULT_AWS_CONFIG_PATH)
    signing_helper_bin_path: Path = SIGNING_HELPER_BIN_PATH

    @classmethod
    def from_node_config(cls, cfg: NodeConfig) -> AwsConfig:
        iam_ra = cfg.hybrid.iam_roles_anywhere
        if iam_ra is None:
            raise IamRolesAnywhereError("iam roles anywhere configuration is missing")
        return cls(
            trust_anchor_arn=iam_ra.trust_anchor_arn,
            profile_arn=iam_ra.profile_arn,
            role_arn=iam_ra.role_arn,
            region=cfg.cluster.region,
            node_name=iam_ra.node_name,
            certificate_path=iam_ra.certificate_path,
            private_key_path=iam_ra.private_key_path,
            config_path=Path(iam_ra.aws_config_path or DEFAULT_AWS_CONFIG_PATH),
        )

    def signing_helper_args(self, env: Mapping[str, str]) -> list[str]:
        args = [
            "--certificate",
            self.certificate_path,
            "--private-key",
            self.private_key_path,
            "--profile-arn",
            self.profile_arn,
            "--role-arn",
            self.role_arn,
            "--trust-anchor-arn",
            self.trust_anchor_arn,
            "--role-session-name",
            self.node_name,
        ]
        if any(env.get(name) for name in _PROXY_VARS):
            args.append("--with-proxy")
        return args


def render_aws_config(cfg: AwsConfig, env: Mapping[str, str] | None = None) -> str:
    """Return the AWS config file content for *cfg*."""
    if not cfg.certificate_path:
        raise IamRolesAnywhereError("CertificatePath cannot be empty")
    if not cfg.private_key_path:
        raise IamRolesAnywhereError("PrivateKeyPath cannot be empty")
    process = " ".join(
        [str(cfg.signing_helper_bin_path), "credential-process", *cfg.signing_helper_args(env or os.environ)]
    )
    return f"[{AWS_PROFILE}]\nregion = {cfg.region}\ncredential_process = {process}\n"


def write_aws_config(cfg: AwsConfig, env: Mapping[str, str] | None = None) -> None:
    """Write the AWS config; an existing file must already match."""
    content = render_aws_config(cfg, env)
    path = Path(cfg.config_path)
    if path.exists():
        current = path.read_text(encoding="utf-8")
        if current != content:
            raise IamRolesAnywhereError(
                f"aws config already exists at {path} with different content; "
                "remove it or update it to match the node configuration"
            )
        return
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    path.chmod(AWS_CONFIG_PERMS)


def render_update_service(cfg: AwsConfig, env: Mapping[str, str] | None = None) -> str:
    """Return the unit that keeps the shared credentials file fresh."""
    args = " ".join(cfg.signing_helper_args(env or os.environ))
    return (
        "[Unit]\n"
        "Description=Service that keeps IAM Roles Anywhere credentials updated\n\n"
        "[Service]\n"
        f"ExecStart={cfg.signing_helper_bin_path} update {args} "
        f"--region {cfg.region} --profile {AWS_PROFILE}\n"
        f"Environment=AWS_SHARED_CREDENTIALS_FILE={CREDENTIALS_PATH}\n"
        "Restart=on-failure\n\n"
        "[Install]\n"
        "WantedBy=multi-user.target\n"
    )


# ----------------------------------------------------------------------
# Daemon
# ----------------------------------------------------------------------
@dataclass
class SigningHelperDaemon:
    """``aws_signing_helper update`` running as a systemd service."""

    manager: DaemonManager
    service_path: Path = SERVICE_FILE_PATH
    env: Mapping[str, str] = field(default_factory=lambda: dict(os.environ))

    @property
    def name(self) -> str:
        return DAEMON_NAME

    def configure(self, cfg: NodeConfig) -> None:
        aws_config = AwsConfig.from_node_config(cfg)
        LOGGER.info("Writing IAM Roles Anywhere AWS config to %s", aws_config.config_path)
        write_aws_config(aws_config, self.env)
        self.service_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.service_path.write_text(render_update_service(aws_config, self.env), encoding="utf-8")
        self.service_path.chmod(0o644)

    def ensure_running(self) -> None:
        self.manager.daemon_reload()
        self.manager.enable_daemon(DAEMON_NAME)
        self.manager.start_daemon(DAEMON_NAME)

    def post_launch(self, cfg: NodeConfig) -> None:
        return None

    def stop(self) -> None:
        if self.manager.get_daemon_status(DAEMON_NAME) is not DaemonStatus.UNKNOWN:
            self.manager.stop_daemon(DAEMON_NAME)


__all__ = [
    "AwsConfig",
    "CREDENTIALS_PATH",
    "DAEMON_NAME",
    "IamRolesAnywhereError",
    "SERVICE_FILE_PATH",
    "SIGNING_HELPER_BIN_PATH",
    "SigningHelperDaemon",
    "Source",
    "install",
    "render_aws_config",
    "render_update_service",
    "uninstall",
    "upgrade",
    "write_aws_config",
]
