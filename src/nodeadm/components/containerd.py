"""containerd: OS package install and daemon configuration."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

from ..artifact import ArtifactError, Package, retry_with_delay
from ..nodeconfig import NodeConfig
from ..providers.systemd import DaemonError, DaemonManager, DaemonStatus
from ..state.tracker import ContainerdSourceName, Tracker
from ..system.osinfo import AMAZON, RHEL, OsInfo

LOGGER = logging.getLogger(__name__)

DAEMON_NAME = "containerd"
CONTAINERD_VERSION = "1.*"
CONFIG_DIR = Path("/etc/containerd")
CONFIG_PATH = CONFIG_DIR / "config.toml"
CONFIG_PERMS = 0o644
PACKAGE_RETRY_DELAY = 5.0
PACKAGE_RETRY_TIMEOUT = 300.0

BASE_CONFIG = """version = 2
root = "/var/lib/containerd"
state = "/run/containerd"

[grpc]
address = "/run/containerd/containerd.sock"

[plugins."io.containerd.grpc.v1.cri".containerd]
default_runtime_name = "runc"
discard_unpacked_layers = true

[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc]
runtime_type = "io.containerd.runc.v2"

[plugins."io.containerd.grpc.v1.cri".containerd.runtimes.runc.options]
SystemdCgroup = true

[plugins."io.containerd.grpc.v1.cri".cni]
bin_dir = "/opt/cni/bin"
conf_dir = "/etc/cni/net.d"
"""

Which = Callable[[str], "str | None"]


class ContainerdError(RuntimeError):
    """Raised when containerd cannot be installed, validated or configured."""


class Source(Protocol):
    """Serves the containerd OS package."""

    def get_containerd(self, version: str = "") -> Package: ...


def validate_containerd_source(source: ContainerdSourceName, os_info: OsInfo) -> None:
    """Reject source/OS combinations that have no package available."""
    if source is ContainerdSourceName.DOCKER and os_info.name == AMAZON:
        raise ContainerdError(
            "docker source for containerd is not supported on AL2023. "
            "Please provide `none` or `distro` to the --containerd-source flag"
        )
    if source is ContainerdSourceName.DISTRO and os_info.name == RHEL:
        raise ContainerdError(
            "distro source for containerd is not supported on RHEL. "
            "Please provide `none` or `docker` to the --containerd-source flag"
        )


def containerd_and_runc_installed(which: Which = shutil.which) -> bool:
    return bool(which("containerd")) and bool(which("runc"))


def install(
    tracker: Tracker,
    source: Source,
    containerd_source: ContainerdSourceName,
    *,
    which: Which = shutil.which,
    retry_delay: float = PACKAGE_RETRY_DELAY,
    retry_timeout: float = PACKAGE_RETRY_TIMEOUT,
) -> None:
    """Install containerd unless it is unmanaged or already on the host.

    A pre-existing containerd/runc pair is recorded as source ``none`` so that
    upgrade and uninstall leave it alone.
    """
    if containerd_source is ContainerdSourceName.NONE or containerd_and_runc_installed(which):
        LOGGER.info("containerd is not managed by nodeadm on this host")
        tracker.artifacts.containerd = ContainerdSourceName.NONE
        return
    package = source.get_containerd(CONTAINERD_VERSION)
    LOGGER.info("Installing containerd from %s...", containerd_source.value)
    try:
        retry_with_delay(package.install, delay=retry_delay, timeout=retry_timeout)
    except ArtifactError as exc:
        raise ContainerdError(f"installing containerd: {exc}") from exc
    tracker.artifacts.containerd = containerd_source


def uninstall(
    source: Source,
    *,
    which: Which = shutil.which,
    config_dir: Path = CONFIG_DIR,
    retry_delay: float = PACKAGE_RETRY_DELAY,
    retry_timeout: float = PACKAGE_RETRY_TIMEOUT,
) -> None:
    """Remove the containerd package and its configuration directory."""
    if not which("containerd"):
        LOGGER.info("Containerd is not installed, skipping uninstall")
        return
    package = source.get_containerd(CONTAINERD_VERSION)
    try:
        retry_with_delay(package.uninstall, delay=retry_delay, timeout=retry_timeout)
    except ArtifactError as exc:
        raise ContainerdError(f"uninstalling containerd: {exc}") from exc
    LOGGER.info("Removing containerd config directory %s", config_dir)
    if config_dir.exists():
        shutil.rmtree(config_dir)


def upgrade(
    source: Source,
    *,
    retry_delay: float = PACKAGE_RETRY_DELAY,
    retry_timeout: float = PACKAGE_RETRY_TIMEOUT,
) -> None:
    """Upgrade the containerd package in place."""
    package = source.get_containerd(CONTAINERD_VERSION)
    try:
        retry_with_delay(package.upgrade, delay=retry_delay, timeout=retry_timeout)
    except ArtifactError as exc:
        raise ContainerdError(f"upgrading containerd: {exc}") from exc


def validate_systemd_unit_file(manager: DaemonManager) -> None:
    """Fail when systemd has no containerd unit."""
    try:
        manager.daemon_reload()
        status = manager.get_daemon_status(DAEMON_NAME)
    except DaemonError as exc:
        raise ContainerdError("containerd daemon not found") from exc
    if status is DaemonStatus.UNKNOWN:
        raise ContainerdError("containerd daemon not found")


def render_config(cfg: NodeConfig) -> str:
    """Return the containerd config, with any user supplied TOML appended."""
    extra = cfg.containerd.config.strip()
    if not extra:
        return BASE_CONFIG
    return f"{BASE_CONFIG}\n{extra}\n"


@dataclass
class ContainerdDaemon:
    """containerd service managed through the daemon manager."""

    manager: DaemonManager
    config_path: Path = CONFIG_PATH

    @property
    def name(self) -> str:
        return DAEMON_NAME

    def configure(self, cfg: NodeConfig) -> None:
        LOGGER.info("Writing containerd config to %s", self.config_path)
        self.config_path.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
        self.config_path.write_text(render_config(cfg), encoding="utf-8")
        self.config_path.chmod(CONFIG_PERMS)

    def ensure_running(self) -> None:
        self.manager.enable_daemon(DAEMON_NAME)
        self.manager.restart_daemon(DAEMON_NAME)

    def post_launch(self, cfg: NodeConfig) -> None:
        return None

    def stop(self) -> None:
        self.manager.stop_daemon(DAEMON_NAME)


__all__ = [
    "CONFIG_PATH",
    "ContainerdDaemon",
    "ContainerdError",
    "DAEMON_NAME",
    "Source",
    "containerd_and_runc_installed",
    "install",
    "render_config",
    "uninstall",
    "upgrade",
    "validate_containerd_source",
    "validate_systemd_unit_file",
]
