"""Forced removal of kubelet and CNI state left behind by an uninstall."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path

from ..system.safe_remove import SafeRemover

LOGGER = logging.getLogger(__name__)

CLEANUP_DIRS = (
    Path("/var/lib/kubelet"),
    Path("/var/lib/cni"),
    Path("/etc/cni/net.d"),
)


class CleanupError(RuntimeError):
    """Raised when a leftover directory cannot be removed."""


@dataclass
class ForceCleanup:
    """Remove :data:`CLEANUP_DIRS` below *root_dir*, unmounting as needed."""

    root_dir: Path = Path("/")
    remover: SafeRemover = field(default_factory=SafeRemover)

    def targets(self) -> list[Path]:
        return [self.root_dir / directory.relative_to("/") for directory in CLEANUP_DIRS]

    def run(self) -> None:
        for target in self.targets():
            if not target.exists():
                LOGGER.info("Directory %s does not exist, skipping removal", target)
                continue
            LOGGER.info("Removing directory %s (force cleanup)", target)
            try:
                self.remover.safe_remove_all(target, allow_unmount=True)
            except (OSError, RuntimeError) as exc:
                raise CleanupError(f"removing directory {target}: {exc}") from exc


__all__ = ["CLEANUP_DIRS", "CleanupError", "ForceCleanup"]
