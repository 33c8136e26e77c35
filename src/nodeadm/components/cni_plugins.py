"""Reference CNI plugins, shipped as a tarball extracted into ``/opt/cni/bin``."""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

from .. import artifact
from ..artifact import ArtifactError, ChecksumSource
from ..state.tracker import Tracker

LOGGER = logging.getLogger(__name__)

CNI_ROOT = Path("/opt/cni")
BIN_DIR = CNI_ROOT / "bin"
CONFIG_DIR = Path("/etc/cni/net.d")


class Source(Protocol):
    def get_cni_plugins(self) -> ChecksumSource: ...


def _extract(source: Source, bin_dir: Path) -> None:
    with source.get_cni_plugins() as stream:
        artifact.install_tar_gz_stream(bin_dir, stream)


def install(tracker: Tracker, source: Source, *, bin_dir: Path = BIN_DIR, attempts: int = 3) -> None:
    """Download, verify and extract the plugins, then track them."""
    try:
        artifact.retry_download(artifact.CNI_PLUGINS, lambda: _extract(source, bin_dir), attempts=attempts)
    except Exception as exc:
        raise ArtifactError(f"installing cni-plugins: {exc}") from exc
    tracker.add(artifact.CNI_PLUGINS)


def uninstall(*, cni_root: Path = CNI_ROOT) -> None:
    if cni_root.exists():
        LOGGER.info("Removing CNI plugins from %s", cni_root)
        shutil.rmtree(cni_root)


def upgrade(source: Source, *, bin_dir: Path = BIN_DIR) -> None:
    """Re-extract the plugin tarball over the existing binaries.

    The tarball digest cannot be compared with the extracted files, so the
    plugins are always replaced.
    """
    LOGGER.info("Upgrading cni-plugins...")
    _extract(source, bin_dir)


__all__ = ["BIN_DIR", "CNI_ROOT", "CONFIG_DIR", "Source", "install", "uninstall", "upgrade"]
