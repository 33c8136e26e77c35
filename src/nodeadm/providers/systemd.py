"""Daemon manager backed by ``systemctl``.

Daemons are addressed by their short name (``kubelet``, ``containerd``);
the unit name is always ``<name>.service``.
"""
from __future__ import annotations

import subprocess
from collections.abc import Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Protocol


class DaemonError(RuntimeError):
    """Raised when systemd operations fail."""


class DaemonStatus(str, Enum):
    """Observed state of a daemon unit."""

    RUNNING = "running"
    STOPPED = "stopped"
    UNKNOWN = "unknown"


class DaemonManager(Protocol):
    """Capability interface for controlling OS service units."""

    def daemon_reload(self) -> None: ...

    def start_daemon(self, name: str) -> None: ...

    def stop_daemon(self, name: str) -> None: ...

    def restart_daemon(self, name: str) -> None: ...

    def enable_daemon(self, name: str) -> None: ...

    def disable_daemon(self, name: str) -> None: ...

    def get_daemon_status(self, name: str) -> DaemonStatus: ...


def unit_name(name: str) -> str:
    """Return the systemd unit name for daemon *name*."""
    return f"{name}.service"


@dataclass(slots=True)
class SystemdDaemonManager:
    """Manage systemd service units through ``systemctl``."""

    systemctl_bin: str = "systemctl"

    def daemon_reload(self) -> None:
        """Ask systemd to rescan unit files."""
        self._systemctl("daemon-reload")

    def start_daemon(self, name: str) -> None:
        """Start the unit for *name*."""
        self._systemctl("start", unit_name(name))

    def stop_daemon(self, name: str) -> None:
        """Stop the unit for *name* if it is running."""
        if self.get_daemon_status(name) is DaemonStatus.RUNNING:
            self._systemctl("stop", unit_name(name))

    def restart_daemon(self, name: str) -> None:
        """Restart the unit for *name*."""
        self._systemctl("restart", unit_name(name))

    def enable_daemon(self, name: str) -> None:
        """Enable the unit; enabling an enabled unit succeeds."""
        self._systemctl("enable", unit_name(name))

    def disable_daemon(self, name: str) -> None:
        """Disable the unit for *name*."""
        self._systemctl("disable", unit_name(name))

    def get_daemon_status(self, name: str) -> DaemonStatus:
        """Map the unit's ``ActiveState`` onto :class:`DaemonStatus`."""
        result = self._systemctl(
            "show",
            unit_name(name),
            "--property=LoadState,ActiveState",
            check=False,
        )
        if result.returncode != 0:
            return DaemonStatus.UNKNOWN
        properties = _parse_properties(result.stdout or "")
        if properties.get("LoadState") == "not-found":
            return DaemonStatus.UNKNOWN
        state = properties.get("ActiveState", "")
        if state == "active":
            return DaemonStatus.RUNNING
        if state == "inactive":
            return DaemonStatus.STOPPED
        return DaemonStatus.UNKNOWN

    # ------------------------------------------------------------------
    def _systemctl(
        self,
        command: str,
        *args: str,
        check: bool = True,
    ) -> subprocess.CompletedProcess[str]:
        argv = [self.systemctl_bin, command, *args]
        return _run_command(argv, check=check, error_prefix=f"{self.systemctl_bin} {command}")


def _parse_properties(output: str) -> dict[str, str]:
    properties: dict[str, str] = {}
    for line in output.splitlines():
        key, sep, value = line.partition("=")
        if sep:
            properties[key.strip()] = value.strip()
    return properties


def _run_command(
    args: Sequence[str],
    *,
    check: bool,
    error_prefix: str,
) -> subprocess.CompletedProcess[str]:
    try:
        result = subprocess.run(  # noqa: S603, S607
            list(args),
            capture_output=True,
            text=True,
            check=False,
        )
    except FileNotFoundError as exc:
        raise DaemonError(f"{args[0]} not found: {exc}") from exc
    if check and result.returncode != 0:
        stdout = getattr(result, "stdout", "") or ""
        stderr = getattr(result, "stderr", "") or ""
        message = stderr.strip() or stdout.strip() or "no output"
        raise DaemonError(f"{error_prefix} failed (exit {result.returncode}): {message}")
    return result


__all__ = [
    "DaemonError",
    "DaemonManager",
    "DaemonStatus",
    "SystemdDaemonManager",
    "unit_name",
]
