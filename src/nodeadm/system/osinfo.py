"""Operating system detection from ``/etc/os-release``."""
from __future__ import annotations

import logging
import os
import platform
import shlex
from dataclasses import dataclass
from pathlib import Path

from packaging.version import InvalidVersion, Version

LOGGER = logging.getLogger(__name__)

UBUNTU = "ubuntu"
RHEL = "rhel"
ROCKY = "rocky"
AMAZON = "amzn"

OS_RELEASE_PATH = Path("/etc/os-release")
JOURNAL_SYMLINK = Path("/var/log/journal")
JOURNAL_TARGET = Path("/run/log/journal")


@dataclass(frozen=True)
class OsInfo:
    """Identity of the host distribution."""

    name: str = ""
    version_id: str = ""
    codename: str = ""

    @property
    def major_version(self) -> int | None:
        """Return the major component of ``VERSION_ID`` when parseable."""
        try:
            return Version(self.version_id).major
        except InvalidVersion:
            return None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {"name": self.name, "version_id": self.version_id, "codename": self.codename}


def parse_os_release(text: str) -> dict[str, str]:
    """Parse ``KEY=value`` lines, unquoting values the way a shell would."""
    values: dict[str, str] = {}
    for raw_line in text.splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        try:
            parts = shlex.split(value)
        except ValueError:
            parts = [value.strip("\"'")]
        values[key.strip()] = parts[0] if parts else ""
    return values


def detect_os(path: Path = OS_RELEASE_PATH) -> OsInfo:
    """Return the host :class:`OsInfo`; an unreadable file yields empty fields."""
    try:
        text = Path(path).read_text(encoding="utf-8")
    except OSError as exc:
        LOGGER.debug("Unable to read %s: %s", path, exc)
        return OsInfo()
    values = parse_os_release(text)
    return OsInfo(
        name=values.get("ID", ""),
        version_id=values.get("VERSION_ID", ""),
        codename=values.get("VERSION_CODENAME", ""),
    )


_ARCH_ALIASES = {
    "x86_64": "amd64",
    "amd64": "amd64",
    "aarch64": "arm64",
    "arm64": "arm64",
}


def host_arch(machine: str | None = None) -> str:
    """Return the host architecture using Go/Kubernetes naming (``amd64``)."""
    value = (machine or platform.machine()).lower()
    return _ARCH_ALIASES.get(value, value)


def setup_rhel_journal_compatibility(
    os_info: OsInfo,
    *,
    symlink: Path = JOURNAL_SYMLINK,
    target: Path = JOURNAL_TARGET,
) -> bool:
    """Link ``/var/log/journal`` to ``/run/log/journal`` on RHEL when absent.

    Returns ``True`` when the link was created.
    """
    if os_info.name != RHEL:
        return False
    if os.path.lexists(symlink):
        return False
    symlink.parent.mkdir(mode=0o755, parents=True, exist_ok=True)
    os.symlink(target, symlink)
    LOGGER.info("Created RHEL journal compatibility symlink %s -> %s", symlink, target)
    return True


__all__ = [
    "AMAZON",
    "OsInfo",
    "RHEL",
    "ROCKY",
    "UBUNTU",
    "detect_os",
    "host_arch",
    "parse_os_release",
    "setup_rhel_journal_compatibility",
]
