"""aws-iam-authenticator binary used by the kubelet kubeconfig."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Protocol

from .. import artifact
from ..artifact import ChecksumSource
from ..state.tracker import Tracker

LOGGER = logging.getLogger(__name__)

BIN_PATH = Path("/usr/local/bin/aws-iam-authenticator")
PERMS = 0o755


class Source(Protocol):
    def get_iam_authenticator(self) -> ChecksumSource: ...


def install(tracker: Tracker, source: Source, *, bin_path: Path = BIN_PATH, attempts: int = 3) -> None:
    """Download, verify and track aws-iam-authenticator."""
    artifact.install_from_source(
        artifact.IAM_AUTHENTICATOR, bin_path, source.get_iam_authenticator, PERMS, attempts=attempts
    )
    tracker.add(artifact.IAM_AUTHENTICATOR)


def uninstall(*, bin_path: Path = BIN_PATH) -> None:
    LOGGER.info("Uninstalling IAM authenticator %s", bin_path)
    bin_path.unlink(missing_ok=True)


def upgrade(source: Source, *, bin_path: Path = BIN_PATH) -> bool:
    return artifact.upgrade_from_source(
        artifact.IAM_AUTHENTICATOR, bin_path, source.get_iam_authenticator, PERMS
    )


__all__ = ["BIN_PATH", "Source", "install", "uninstall", "upgrade"]
