"""Mount-aware recursive directory removal.

Kubelet and CNI state directories frequently contain bind mounts (pod
volumes, projected secrets). Deleting through a live mount would destroy
data on the mounted filesystem, so :class:`SafeRemover` finds every mount
point below the target first and either refuses to delete or unmounts them,
deepest first, and verifies they are gone before removing anything.
"""
from __future__ import annotations

import logging
import os
import shutil
import subprocess
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol

LOGGER = logging.getLogger(__name__)

MOUNTINFO_PATH = Path("/proc/self/mountinfo")
UNMOUNT_ATTEMPTS = 3
SETTLE_DELAY = 0.2


class SafeRemoveError(RuntimeError):
    """Raised when a directory cannot be removed safely."""


class Mounter(Protocol):
    """Mount table queries and unmount operations."""

    def is_mount_point(self, path: str) -> bool: ...

    def unmount(self, path: str) -> None: ...

    def force_unmount(self, path: str) -> None: ...


def _decode_mountinfo_path(value: str) -> str:
    # mountinfo escapes space, tab, newline and backslash as octal sequences.
    return (
        value.replace("\\040", " ")
        .replace("\\011", "\t")
        .replace("\\012", "\n")
        .replace("\\134", "\\")
    )


def read_mount_points(mountinfo: Path = MOUNTINFO_PATH) -> set[str]:
    """Return the mount point column of ``/proc/self/mountinfo``."""
    points: set[str] = set()
    for line in mountinfo.read_text(encoding="utf-8").splitlines():
        fields = line.split()
        if len(fields) > 4:
            points.add(os.path.normpath(_decode_mountinfo_path(fields[4])))
    return points


@dataclass
class HostMounter:
    """Mounter backed by ``/proc/self/mountinfo`` and ``umount``."""

    mountinfo: Path = MOUNTINFO_PATH
    umount_bin: str = "umount"

    def is_mount_point(self, path: str) -> bool:
        try:
            return os.path.normpath(path) in read_mount_points(self.mountinfo)
        except OSError:
            return os.path.ismount(path)

    def unmount(self, path: str) -> None:
        self._umount(path)

    def force_unmount(self, path: str) -> None:
        """Try lazy, forced, then forced lazy unmounts."""
        errors: list[str] = []
        for flags in (("-l",), ("-f",), ("-f", "-l")):
            try:
                self._umount(path, *flags)
                return
            except SafeRemoveError as exc:
                errors.append(str(exc))
        raise SafeRemoveError(f"all unmount methods failed: {'; '.join(errors)}")

    def _umount(self, path: str, *flags: str) -> None:
        argv = [self.umount_bin, *flags, path]
        try:
            result = subprocess.run(argv, capture_output=True, text=True, check=False)  # noqa: S603
        except FileNotFoundError as exc:
            raise SafeRemoveError(f"{self.umount_bin} not found: {exc}") from exc
        if result.returncode != 0:
            message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
            raise SafeRemoveError(f"{' '.join(argv)} failed (exit {result.returncode}): {message}")


def _depth(path: str) -> int:
    return path.count(os.sep)


@dataclass
class SafeRemover:
    """Remove directory trees without deleting through live mounts."""

    mounter: Mounter = field(default_factory=HostMounter)
    sleep: Callable[[float], None] = time.sleep

    def safe_remove_all(self, path: str | Path, *, allow_unmount: bool, force_unmount: bool = False) -> None:
        """Remove *path* recursively.

        With ``allow_unmount`` false any mount point below *path* aborts the
        removal. Otherwise mount points are unmounted first.
        """
        target = os.path.abspath(os.fspath(path))
        mount_points = self.find_mount_points(target)
        if not mount_points:
            _remove_all(target)
            return
        if not allow_unmount:
            raise SafeRemoveError(
                f"cannot delete {target}: contains {len(mount_points)} mount points "
                f"{mount_points} (mount points detected)"
            )
        self._unmount_and_remove(target, mount_points, force_unmount)

    def find_mount_points(self, target: str) -> list[str]:
        """Walk *target* and return every mount point at or below it."""
        if not os.path.lexists(target):
            return []
        found: list[str] = []
        if self._check(target):
            found.append(target)
        if not os.path.isdir(target) or os.path.islink(target):
            return found
        for root, dirs, files in os.walk(target, onerror=lambda _err: None):
            kept: list[str] = []
            for name in dirs:
                candidate = os.path.join(root, name)
                if self._check(candidate):
                    found.append(candidate)
                    continue
                kept.append(name)
            dirs[:] = kept
            for name in files:
                candidate = os.path.join(root, name)
                if self._check(candidate):
                    found.append(candidate)
        return found

    def _check(self, path: str) -> bool:
        try:
            return self.mounter.is_mount_point(path)
        except OSError:
            return False

    def _unmount_and_remove(self, target: str, mount_points: Sequence[str], force: bool) -> None:
        for mount_point in sorted(mount_points, key=_depth, reverse=True):
            try:
                self._unmount_with_retry(mount_point, force)
            except SafeRemoveError as exc:
                raise SafeRemoveError(f"failed to unmount {mount_point}: {exc}") from exc

        self.sleep(SETTLE_DELAY)

        for mount_point in mount_points:
            if self._check(mount_point):
                raise SafeRemoveError(
                    f"verification failed: mount point {mount_point} is still mounted "
                    "after unmount attempt"
                )
        _remove_all(target)

    def _unmount_with_retry(self, mount_point: str, force: bool) -> None:
        for attempt in range(1, UNMOUNT_ATTEMPTS + 1):
            try:
                self.mounter.unmount(mount_point)
                return
            except (OSError, SafeRemoveError) as exc:
                LOGGER.debug("Unmount of %s failed (attempt %d): %s", mount_point, attempt, exc)
            if force:
                try:
                    self.mounter.force_unmount(mount_point)
                    return
                except (OSError, SafeRemoveError) as exc:
                    LOGGER.debug("Force unmount of %s failed: %s", mount_point, exc)
            if attempt < UNMOUNT_ATTEMPTS:
                self.sleep(float(attempt))
        raise SafeRemoveError(f"failed to unmount after {UNMOUNT_ATTEMPTS} attempts")


def _remove_all(path: str) -> None:
    if os.path.isdir(path) and not os.path.islink(path):
        shutil.rmtree(path)
    elif os.path.lexists(path):
        os.unlink(path)


def safe_remove_all(path: str | Path, *, allow_unmount: bool, force_unmount: bool = False) -> None:
    """Module-level convenience wrapper around :class:`SafeRemover`."""
    SafeRemover().safe_remove_all(path, allow_unmount=allow_unmount, force_unmount=force_unmount)


__all__ = [
    "HostMounter",
    "Mounter",
    "SafeRemoveError",
    "SafeRemover",
    "read_mount_points",
    "safe_remove_all",
]
