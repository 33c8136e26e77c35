"""kubectl binary."""
from __future__ import annotations

from pathlib import Path
from typing import Protocol

from .. import artifact
from ..artifact import ChecksumSource
from ..state.tracker import Tracker

BIN_PATH = Path("/usr/local/bin/kubectl")
PERMS = 0o755


class Source(Protocol):
    def get_kubectl(self) -> ChecksumSource: ...


def install(tracker: Tracker, source: Source, *, bin_path: Path = BIN_PATH, attempts: int = 3) -> None:
    artifact.install_from_source(artifact.KUBECTL, bin_path, source.get_kubectl, PERMS, attempts=attempts)
    tracker.add(artifact.KUBECTL)


def uninstall(*, bin_path: Path = BIN_PATH) -> None:
    bin_path.unlink(missing_ok=True)


def upgrade(source: Source, *, bin_path: Path = BIN_PATH) -> bool:
    return artifact.upgrade_from_source(artifact.KUBECTL, bin_path, source.get_kubectl, PERMS)


__all__ = ["BIN_PATH", "Source", "install", "uninstall", "upgrade"]
