"""AWS Systems Manager agent used as the SSM hybrid credential provider.

The agent is installed through ``ssm-setup-cli``, whose detached GPG
signature is verified before it is written to disk. Registration with a
hybrid activation happens during ``init``; the registration file written by
the agent records the managed instance id used for deregistration.
"""
from __future__ import annotations

import json
import logging
import os
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError

from .. import artifact
from ..artifact import ArtifactError, Command, Package, retry_with_delay
from ..manifest import verify_signature
from ..nodeconfig import NodeConfig
from ..providers.systemd import DaemonManager
from ..state.tracker import Tracker
from ..system.osinfo import UBUNTU, OsInfo

LOGGER = logging.getLogger(__name__)

INSTALLER_PATH = Path("/opt/ssm/ssm-setup-cli")
CONFIG_ROOT = Path("/etc/amazon")
REGISTRATION_PATH = Path("/var/lib/amazon/ssm/registration")
DEFAULT_AWS_CONFIG_PATH = Path("/root/.aws")
SYMLINKED_AWS_CONFIG_PATH = Path("/eks-hybrid/.aws")
INSTALLER_PERMS = 0o755

DEFAULT_DAEMON_NAME = "amazon-ssm-agent"
SNAP_DAEMON_NAME = "snap.amazon-ssm-agent.amazon-ssm-agent"

GPG_CONFIG_LINE = "no-tty"
DEREGISTER_MAX_ATTEMPTS = 12
RETRY_DELAY = 5.0
RETRY_TIMEOUT = 300.0
REGISTRATION_TIMEOUT = 60.0
REGISTRATION_POLL = 2.0


class SsmError(RuntimeError):
    """Raised when the SSM agent cannot be installed, registered or removed."""


class Source(Protocol):
    """Serves the signed ``ssm-setup-cli`` installer."""

    public_key: str | None

    def get_ssm_installer(self) -> bytes: ...

    def get_ssm_installer_signature(self) -> bytes: ...


class PkgSource(Protocol):
    """Serves the ``amazon-ssm-agent`` OS package."""

    def get_ssm_package(self) -> Package: ...


def daemon_name_for(os_info: OsInfo) -> str:
    """Return the agent's systemd unit name on *os_info*."""
    if os_info.name == UBUNTU:
        return SNAP_DAEMON_NAME
    return DEFAULT_DAEMON_NAME


def write_gpg_config(home: str | None = None) -> Path:
    """Ensure ``~/.gnupg/gpg.conf`` contains ``no-tty`` exactly once."""
    home_dir = Path(home or os.environ.get("HOME") or "/root")
    path = home_dir / ".gnupg" / "gpg.conf"
    path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    existing = path.read_text(encoding="utf-8").splitlines() if path.exists() else []
    if GPG_CONFIG_LINE not in (line.strip() for line in existing):
        existing.append(GPG_CONFIG_LINE)
        path.write_text("\n".join(existing) + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


# ----------------------------------------------------------------------
# Install / upgrade
# ----------------------------------------------------------------------
def download_installer(
    source: Source,
    installer_path: Path = INSTALLER_PATH,
    *,
    verifier: Callable[[bytes, bytes, str | None], None] = verify_signature,
    attempts: int = 3,
) -> None:
    """Download ``ssm-setup-cli``, verify its signature, then install it."""

    def _attempt() -> None:
        payload = source.get_ssm_installer()
        signature = source.get_ssm_installer_signature()
        verifier(payload, signature, source.public_key)
        installer_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        installer_path.unlink(missing_ok=True)
        installer_path.write_bytes(payload)
        installer_path.chmod(INSTALLER_PERMS)

    try:
        artifact.retry_download("ssm-setup-cli", _attempt, attempts=attempts)
    except Exception as exc:
        raise SsmError(f"failed to install ssm installer: {exc}") from exc


def _install_agent(
    installer_path: Path,
    region: str,
    *,
    retry_delay: float,
    retry_timeout: float,
) -> None:
    command = Command.of(str(installer_path), "-install", "-region", region, "-version", "latest")
    try:
        retry_with_delay(command.run, delay=retry_delay, timeout=retry_timeout)
    except ArtifactError as exc:
        raise SsmError(f"failed to install ssm agent: {exc}") from exc


def install(
    tracker: Tracker,
    source: Source,
    region: str,
    *,
    installer_path: Path = INSTALLER_PATH,
    home: str | None = None,
    verifier: Callable[[bytes, bytes, str | None], None] = verify_signature,
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    """Install the SSM agent for *region* and track it."""
    write_gpg_config(home)
    download_installer(source, installer_path, verifier=verifier)
    _install_agent(installer_path, region, retry_delay=retry_delay, retry_timeout=retry_timeout)
    tracker.add(artifact.SSM)


def upgrade(
    source: Source,
    region: str,
    *,
    installer_path: Path = INSTALLER_PATH,
    home: str | None = None,
    verifier: Callable[[bytes, bytes, str | None], None] = verify_signature,
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    """Re-run the installer, which moves the agent to the latest version."""
    write_gpg_config(home)
    download_installer(source, installer_path, verifier=verifier)
    _install_agent(installer_path, region, retry_delay=retry_delay, retry_timeout=retry_timeout)
    LOGGER.info("Upgraded %s", artifact.SSM)


# ----------------------------------------------------------------------
# Registration
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class SsmRegistration:
    """The agent's on-disk registration record."""

    path: Path = REGISTRATION_PATH

    def exists(self) -> bool:
        return self.path.exists()

    def _load(self) -> dict[str, Any]:
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            raise SsmError(f"invalid ssm registration file {self.path}: {exc}") from exc
        if not isinstance(data, dict):
            raise SsmError(f"invalid ssm registration file {self.path}")
        return data

    def managed_instance_id(self) -> str:
        """Return ``ManagedInstanceID``; raises ``FileNotFoundError`` if unregistered."""
        return str(self._load().get("ManagedInstanceID", ""))

    def region(self) -> str:
        return str(self._load().get("Region", ""))


def ssm_client(region: str) -> Any:
    """Return a boto3 SSM client with adaptive retries."""
    return boto3.client(
        "ssm",
        region_name=region or None,
        config=BotoConfig(retries={"mode": "adaptive", "max_attempts": DEREGISTER_MAX_ATTEMPTS}),
    )


def deregister(registration: SsmRegistration, client: Any) -> None:
    """Deregister the managed instance; a missing registration is a no-op."""
    if not registration.exists():
        LOGGER.info("No SSM registration found, skipping deregistration")
        return
    instance_id = registration.managed_instance_id()
    if not instance_id:
        return
    LOGGER.info("Deregistering managed instance %s", instance_id)
    try:
        client.deregister_managed_instance(InstanceId=instance_id)
    except ClientError as exc:
        code = exc.response.get("Error", {}).get("Code", "")
        if code == "InvalidInstanceId":
            LOGGER.info("Managed instance %s is already deregistered", instance_id)
            return
        raise SsmError(f"deregistering ssm managed instance: {exc}") from exc
    except BotoCoreError as exc:
        raise SsmError(f"deregistering ssm managed instance: {exc}") from exc


def register_command(
    cfg: NodeConfig,
    *,
    installer_path: Path = INSTALLER_PATH,
    force: bool = False,
) -> Command:
    """Build the ``ssm-setup-cli -register`` command for *cfg*."""
    ssm = cfg.hybrid.ssm
    if ssm is None:
        raise SsmError("ssm configuration is missing")
    argv = [
        str(installer_path),
        "-register",
        "-activation-code",
        ssm.activation_code,
        "-activation-id",
        ssm.activation_id,
        "-region",
        cfg.cluster.region,
    ]
    if force:
        argv.append("-override")
    return Command.of(*argv)


# ----------------------------------------------------------------------
# Uninstall
# ----------------------------------------------------------------------
@dataclass(frozen=True)
class UninstallPaths:
    installer: Path = INSTALLER_PATH
    config_root: Path = CONFIG_ROOT
    aws_config_symlink: Path = SYMLINKED_AWS_CONFIG_PATH
    aws_config: Path = DEFAULT_AWS_CONFIG_PATH


def _remove(path: Path) -> None:
    if path.is_dir() and not path.is_symlink():
        shutil.rmtree(path)
    else:
        path.unlink(missing_ok=True)


def _run_all(actions: Sequence[tuple[str, Callable[[], None]]]) -> None:
    errors: list[str] = []
    for label, action in actions:
        try:
            action()
        except (OSError, RuntimeError) as exc:
            LOGGER.error("%s: %s", label, exc)
            errors.append(f"{label}: {exc}")
    if errors:
        raise SsmError("\n".join(errors))


def _uninstall_actions(
    pkg_source: PkgSource,
    paths: UninstallPaths,
    retry_delay: float,
    retry_timeout: float,
) -> list[tuple[str, Callable[[], None]]]:
    def _package() -> None:
        retry_with_delay(pkg_source.get_ssm_package().uninstall, delay=retry_delay, timeout=retry_timeout)
        _remove(paths.installer)

    return [
        ("uninstalling ssm", _package),
        ("uninstalling ssm config files", lambda: _remove(paths.config_root)),
        ("uninstalling ssm aws config symlink", lambda: _remove(paths.aws_config_symlink)),
        ("uninstalling ssm aws config", lambda: _remove(paths.aws_config)),
    ]


def uninstall(
    pkg_source: PkgSource,
    *,
    paths: UninstallPaths = UninstallPaths(),
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    """Remove the agent and its files without touching the fleet registration."""
    LOGGER.info("Uninstalling SSM agent...")
    _run_all(_uninstall_actions(pkg_source, paths, retry_delay, retry_timeout))


def deregister_and_uninstall(
    registration: SsmRegistration,
    client: Any,
    pkg_source: PkgSource,
    *,
    paths: UninstallPaths = UninstallPaths(),
    retry_delay: float = RETRY_DELAY,
    retry_timeout: float = RETRY_TIMEOUT,
) -> None:
    """Deregister the managed instance, then remove the agent.

    Every step runs even when an earlier one fails; failures are reported
    together.
    """
    LOGGER.info("Deregistering and uninstalling SSM agent...")
    actions: list[tuple[str, Callable[[], None]]] = [
        ("deregistering ssm managed instance", lambda: deregister(registration, client)),
        ("uninstalling ssm registration file", lambda: _remove(registration.path)),
    ]
    actions.extend(_uninstall_actions(pkg_source, paths, retry_delay, retry_timeout))
    _run_all(actions)


# ----------------------------------------------------------------------
# Daemon
# ----------------------------------------------------------------------
@dataclass
class SsmDaemon:
    """SSM agent service; ``configure`` registers the hybrid activation."""

    manager: DaemonManager
    daemon_name: str = DEFAULT_DAEMON_NAME
    installer_path: Path = INSTALLER_PATH
    registration: SsmRegistration = field(default_factory=SsmRegistration)
    registration_timeout: float = REGISTRATION_TIMEOUT
    registration_poll: float = REGISTRATION_POLL

    @property
    def name(self) -> str:
        return self.daemon_name

    def configure(self, cfg: NodeConfig) -> None:
        # Leftover registration data is overridden when the node is not registered.
        force = not self.registration.exists()
        LOGGER.info("Registering node with SSM (force=%s)...", force)
        try:
            register_command(cfg, installer_path=self.installer_path, force=force).run()
        except ArtifactError as exc:
            raise SsmError(f"registering node with ssm: {exc}") from exc

    def ensure_running(self) -> None:
        self.manager.enable_daemon(self.daemon_name)
        self.manager.start_daemon(self.daemon_name)

    def post_launch(self, cfg: NodeConfig) -> None:
        """Wait for registration and name the node after the managed instance."""

        def _registered() -> str:
            instance_id = self.registration.managed_instance_id()
            if not instance_id:
                raise SsmError(f"no managed instance id in {self.registration.path}")
            return instance_id

        LOGGER.info("Waiting for SSM registration...")
        try:
            instance_id = retry_with_delay(
                _registered, delay=self.registration_poll, timeout=self.registration_timeout
            )
        except (OSError, SsmError) as exc:
            raise SsmError(f"reading ssm registration: {exc}") from exc
        cfg.status.node_name = instance_id
        LOGGER.info("Node registered as managed instance %s", instance_id)

    def stop(self) -> None:
        self.manager.stop_daemon(self.daemon_name)


__all__ = [
    "DEFAULT_DAEMON_NAME",
    "INSTALLER_PATH",
    "PkgSource",
    "REGISTRATION_PATH",
    "SNAP_DAEMON_NAME",
    "Source",
    "SsmDaemon",
    "SsmError",
    "SsmRegistration",
    "UninstallPaths",
    "daemon_name_for",
    "deregister",
    "deregister_and_uninstall",
    "download_installer",
    "install",
    "register_command",
    "ssm_client",
    "uninstall",
    "upgrade",
    "write_gpg_config",
]
