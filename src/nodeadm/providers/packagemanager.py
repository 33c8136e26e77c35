"""Distro package manager (apt or yum) used for OS-packaged components."""
from __future__ import annotations

import logging
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path

import requests
from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from ..artifact import Command, Package, PackageError, install_file
from ..state.tracker import ContainerdSourceName
from ..system.osinfo import OsInfo, host_arch

LOGGER = logging.getLogger(__name__)

APT = "apt"
YUM = "yum"
SNAP = "snap"

YUM_UTILS_MANAGER = "yum-config-manager"
YUM_UTILS_PACKAGE = "yum-utils"
CENTOS_DOCKER_REPO = "https://download.docker.com/linux/centos/docker-ce.repo"
UBUNTU_DOCKER_REPO = "https://download.docker.com/linux/ubuntu"
UBUNTU_DOCKER_GPG_KEY = "https://download.docker.com/linux/ubuntu/gpg"
UBUNTU_DOCKER_GPG_KEY_PATH = Path("/etc/apt/keyrings/docker.asc")
APT_DOCKER_SOURCE_PATH = Path("/etc/apt/sources.list.d/docker.list")
YUM_DOCKER_REPO_PATH = Path("/etc/yum.repos.d/docker-ce.repo")
DOCKER_REPO_FILE_MODE = 0o755

CONTAINERD_DISTRO_PACKAGE = "containerd"
CONTAINERD_DOCKER_PACKAGE = "containerd.io"
RUNC_PACKAGE = "runc"
IPTABLES_PACKAGE = "iptables"
SSM_PACKAGE = "amazon-ssm-agent"

_INSTALL_VERB = {APT: "install", YUM: "install"}
_UPDATE_VERB = {APT: "update", YUM: "update"}
_DELETE_VERB = {APT: "autoremove", YUM: "remove"}
_DOCKER_REPO = {YUM: CENTOS_DOCKER_REPO, APT: UBUNTU_DOCKER_REPO}

Which = Callable[[str], "str | None"]


class PackageManagerError(RuntimeError):
    """Raised when the package manager cannot be detected or configured."""


def detect_package_manager(which: Which = shutil.which) -> str:
    """Return ``yum`` or ``apt``, preferring yum when both exist."""
    for manager in (YUM, APT):
        if which(manager):
            return manager
    raise PackageManagerError(
        "unsupported package manager encountered. Please run nodeadm from a supported os"
    )


def apt_docker_repo_config(arch: str, codename: str) -> str:
    """Return the ``docker.list`` line for an apt host."""
    return (
        f"deb [arch={arch} signed-by={UBUNTU_DOCKER_GPG_KEY_PATH}] "
        f"{UBUNTU_DOCKER_REPO} {codename} stable\n"
    )


@dataclass
class DistroPackageManager:
    """Install, upgrade and remove OS packages via apt or yum."""

    manager: str
    containerd_source: ContainerdSourceName = ContainerdSourceName.NONE
    os_info: OsInfo = field(default_factory=OsInfo)
    which: Which = shutil.which
    update_attempts: int = 5
    http_timeout: float = 60.0
    gpg_key_path: Path = UBUNTU_DOCKER_GPG_KEY_PATH
    apt_source_path: Path = APT_DOCKER_SOURCE_PATH
    yum_repo_path: Path = YUM_DOCKER_REPO_PATH

    @classmethod
    def detect(
        cls,
        containerd_source: ContainerdSourceName,
        os_info: OsInfo,
        *,
        which: Which = shutil.which,
    ) -> DistroPackageManager:
        """Build a manager for the first supported tool found on PATH."""
        return cls(
            manager=detect_package_manager(which),
            containerd_source=containerd_source,
            os_info=os_info,
            which=which,
        )

    @property
    def install_verb(self) -> str:
        return _INSTALL_VERB[self.manager]

    @property
    def update_verb(self) -> str:
        return _UPDATE_VERB[self.manager]

    @property
    def delete_verb(self) -> str:
        return _DELETE_VERB[self.manager]

    @property
    def docker_repo(self) -> str:
        """Return the docker repo URL when containerd comes from docker."""
        if self.containerd_source is ContainerdSourceName.DOCKER:
            return _DOCKER_REPO[self.manager]
        return ""

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------
    def configure(self) -> None:
        """Refresh metadata and add the docker repository when required."""
        if self.docker_repo:
            if self.manager == YUM:
                self._configure_yum_docker_repo()
                return
            if self.manager == APT:
                self._configure_apt_docker_repo()
                return
        LOGGER.info("Updating packages to refresh package manager repo metadata...")
        try:
            self.update_all_packages()
        except PackageError as exc:
            raise PackageManagerError(
                f"failed to run update using package manager: {exc}"
            ) from exc

    def _configure_yum_docker_repo(self) -> None:
        LOGGER.info("Updating packages to refresh repo metadata...")
        self.update_all_packages()

        if self.which(RUNC_PACKAGE):
            LOGGER.info("Removing runc to avoid package conflicts from docker repos...")
            self._command(self.delete_verb, RUNC_PACKAGE).run()

        self._command(self.install_verb, YUM_UTILS_PACKAGE).run()

        config_manager = self.which(YUM_UTILS_MANAGER)
        if not config_manager:
            raise PackageManagerError("failed to locate yum utils manager in $PATH")
        LOGGER.info("Adding docker repo to package manager...")
        Command.of(config_manager, "--add-repo", CENTOS_DOCKER_REPO).run()

    def _configure_apt_docker_repo(self) -> None:
        self.update_all_packages()
        self._command(self.install_verb, "ca-certificates").run()

        response = requests.get(UBUNTU_DOCKER_GPG_KEY, stream=True, timeout=self.http_timeout)
        try:
            response.raise_for_status()
            install_file(self.gpg_key_path, response.raw, DOCKER_REPO_FILE_MODE)
        finally:
            response.close()

        config = apt_docker_repo_config(host_arch(), self.os_info.codename)
        self.apt_source_path.parent.mkdir(parents=True, exist_ok=True)
        self.apt_source_path.write_text(config, encoding="utf-8")
        self.apt_source_path.chmod(DOCKER_REPO_FILE_MODE)

    def update_all_packages(self) -> None:
        """Refresh repository metadata with exponential backoff."""
        retrying = Retrying(
            stop=stop_after_attempt(self.update_attempts),
            wait=wait_exponential(multiplier=1, max=30),
            before_sleep=before_sleep_log(LOGGER, logging.WARNING),
            reraise=True,
        )
        retrying(self._command(self.update_verb).run)

    def cleanup(self) -> None:
        """Remove docker repository files added by :meth:`configure`."""
        if not self.docker_repo:
            return
        paths: Sequence[Path]
        if self.manager == APT:
            paths = (self.apt_source_path, self.gpg_key_path)
        else:
            paths = (self.yum_repo_path,)
        for path in paths:
            LOGGER.debug("Removing %s", path)
            path.unlink(missing_ok=True)

    # ------------------------------------------------------------------
    # Package sources
    # ------------------------------------------------------------------
    def get_containerd(self, version: str = "") -> Package:
        """Return the containerd package for the configured source."""
        name = CONTAINERD_DOCKER_PACKAGE if self.docker_repo else CONTAINERD_DISTRO_PACKAGE
        return self._package(name)

    def get_iptables(self) -> Package:
        """Return the iptables package."""
        return self._package(IPTABLES_PACKAGE)

    def get_ssm_package(self) -> Package:
        """Return the SSM agent package (snap-managed on apt hosts)."""
        if self.manager == APT:
            remove = Command.of(SNAP, "remove", SSM_PACKAGE)
            return Package(name=SSM_PACKAGE, install_cmd=remove, uninstall_cmd=remove)
        return self._package(SSM_PACKAGE)

    def _package(self, name: str) -> Package:
        install = self._command(self.install_verb, name)
        return Package(
            name=name,
            install_cmd=install,
            uninstall_cmd=self._command(self.delete_verb, name),
            upgrade_cmd=install,
        )

    def _command(self, verb: str, *packages: str) -> Command:
        env: tuple[tuple[str, str], ...] = ()
        if self.manager == APT:
            env = (("DEBIAN_FRONTEND", "noninteractive"),)
        return Command(argv=(self.manager, verb, *packages, "-y"), env=env)


__all__ = [
    "APT",
    "DistroPackageManager",
    "PackageManagerError",
    "YUM",
    "apt_docker_repo_config",
    "detect_package_manager",
]
