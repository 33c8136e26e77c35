"""Host firewall probes for the CNI VXLAN port check.

Ubuntu hosts use ``ufw``; RHEL-family and Amazon Linux hosts use
``firewalld``. A firewall that is not installed or not active is treated as
allowing all traffic.
"""
from __future__ import annotations

import logging
import shutil
import subprocess
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Protocol

from .osinfo import UBUNTU, OsInfo

LOGGER = logging.getLogger(__name__)

CILIUM_VXLAN_PORT = "8472"
CALICO_VXLAN_PORT = "4789"
VXLAN_PROTOCOL = "udp"


class FirewallError(RuntimeError):
    """Raised when firewall state cannot be determined."""


class FirewallManager(Protocol):
    def is_enabled(self) -> bool: ...

    def flush_rules(self) -> None: ...

    def is_port_open(self, port: str, protocol: str) -> bool: ...


def _run(argv: Sequence[str]) -> subprocess.CompletedProcess[str]:
    try:
        return subprocess.run(list(argv), capture_output=True, text=True, check=False)  # noqa: S603
    except FileNotFoundError as exc:
        raise FirewallError(f"{argv[0]} not found: {exc}") from exc


def _check(result: subprocess.CompletedProcess[str], label: str) -> str:
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise FirewallError(f"{label} failed (exit {result.returncode}): {message}")
    return result.stdout or ""


@dataclass
class UfwManager:
    """``ufw`` backed firewall manager."""

    ufw_bin: str = "ufw"
    which: Callable[[str], str | None] = shutil.which

    def is_enabled(self) -> bool:
        if not self.which(self.ufw_bin):
            return False
        output = _check(_run([self.ufw_bin, "status"]), "ufw status")
        return "Status: active" in output

    def flush_rules(self) -> None:
        # ufw applies rules immediately.
        return None

    def is_port_open(self, port: str, protocol: str) -> bool:
        output = _check(_run([self.ufw_bin, "status"]), "ufw status")
        wanted = {f"{port}/{protocol}", port}
        for line in output.splitlines():
            fields = line.split()
            if fields and fields[0] in wanted and "ALLOW" in fields:
                return True
        return False


@dataclass
class FirewalldManager:
    """``firewalld`` backed firewall manager."""

    firewall_cmd: str = "firewall-cmd"
    which: Callable[[str], str | None] = shutil.which

    def is_enabled(self) -> bool:
        if not self.which(self.firewall_cmd):
            return False
        result = _run([self.firewall_cmd, "--state"])
        return result.returncode == 0 and (result.stdout or "").strip() == "running"

    def flush_rules(self) -> None:
        _check(_run([self.firewall_cmd, "--reload"]), "firewall-cmd --reload")

    def is_port_open(self, port: str, protocol: str) -> bool:
        result = _run([self.firewall_cmd, f"--query-port={port}/{protocol}"])
        return result.returncode == 0 and (result.stdout or "").strip() == "yes"


def firewall_manager_for(os_info: OsInfo) -> FirewallManager:
    """Return the firewall manager native to *os_info*."""
    if os_info.name == UBUNTU:
        return UfwManager()
    return FirewalldManager()


def validate_vxlan_ports_open(manager: FirewallManager) -> None:
    """Raise unless the Cilium or Calico VXLAN port is open (or no firewall runs)."""
    if not manager.is_enabled():
        LOGGER.debug("Host firewall is not active")
        return
    manager.flush_rules()
    cilium = manager.is_port_open(CILIUM_VXLAN_PORT, VXLAN_PROTOCOL)
    calico = manager.is_port_open(CALICO_VXLAN_PORT, VXLAN_PROTOCOL)
    if not cilium and not calico:
        raise FirewallError("both cilium and calico vxlan ports are closed")


__all__ = [
    "CALICO_VXLAN_PORT",
    "CILIUM_VXLAN_PORT",
    "FirewallError",
    "FirewallManager",
    "FirewalldManager",
    "UfwManager",
    "VXLAN_PROTOCOL",
    "firewall_manager_for",
    "validate_vxlan_ports_open",
]
