"""ECR image credential provider plugin for the kubelet."""
from __future__ import annotations

import logging
import shutil
from pathlib import Path
from typing import Protocol

from .. import artifact
from ..artifact import ChecksumSource
from ..state.tracker import Tracker

LOGGER = logging.getLogger(__name__)

BIN_PATH = Path("/etc/eks/image-credential-provider/ecr-credential-provider")
PERMS = 0o755


class Source(Protocol):
    def get_image_credential_provider(self) -> ChecksumSource: ...


def install(tracker: Tracker, source: Source, *, bin_path: Path = BIN_PATH, attempts: int = 3) -> None:
    """Download, verify and track the credential provider binary."""
    artifact.install_from_source(
        artifact.IMAGE_CREDENTIAL_PROVIDER,
        bin_path,
        source.get_image_credential_provider,
        PERMS,
        attempts=attempts,
    )
    tracker.add(artifact.IMAGE_CREDENTIAL_PROVIDER)


def uninstall(*, bin_path: Path = BIN_PATH) -> None:
    """Remove the plugin directory, including the generated config."""
    LOGGER.info("Uninstalling image credential provider %s", bin_path.parent)
    if bin_path.parent.exists():
        shutil.rmtree(bin_path.parent)


def upgrade(source: Source, *, bin_path: Path = BIN_PATH) -> bool:
    return artifact.upgrade_from_source(
        artifact.IMAGE_CREDENTIAL_PROVIDER, bin_path, source.get_image_credential_provider, PERMS
    )


__all__ = ["BIN_PATH", "Source", "install", "uninstall", "upgrade"]
